import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from gemsite.codec import GeminiURL
from gemsite.config import Redirect as RedirectRule
from gemsite.config import ServerConfig
from gemsite.resolver import (
    CertRequired,
    Content,
    Forbidden,
    NotFound,
    Redirect,
    Resolver,
)
from gemsite.tls import ClientIdentity


def replace_root(root):
    return ServerConfig(root=str(root))


def url(path, host="example", port=None):
    return GeminiURL(host=host, path=path, port=port)


def body(result):
    assert isinstance(result, Content), result
    return result.artifact.body.decode("utf-8")


def test_root_serves_transformed_index(resolver):
    result = resolver.resolve(url("/"))
    assert result.response()[:2] == (20, "text/gemini")
    assert result.artifact.path == "/index.html"
    assert body(result) == "# Title\nHello About\n=> gemini://example/about About\n"


def test_html_file_is_transformed(resolver):
    result = resolver.resolve(url("/about.html"))
    assert result.artifact.mime == "text/gemini"
    assert body(result) == "# About\nWho we are.\n"


@pytest.mark.parametrize("path", ["/blog", "/blog/", "/blog/index.html"])
def test_directory_with_index_is_not_listed(resolver, path):
    result = resolver.resolve(url(path))
    assert result.response()[0] == 20
    assert body(result) == "## Posts\n=> gemini://example/blog/post.html First post\n"


def test_links_carry_request_port(resolver):
    result = resolver.resolve(url("/blog/", port=1966))
    assert "=> gemini://example:1966/blog/post.html" in body(result)


def test_preformatted_survives_resolution(resolver):
    assert body(resolver.resolve(url("/blog/post.html"))) == "# First post\n```\n  a == b;\n```\n"


def test_missing_path_is_not_found(resolver):
    result = resolver.resolve(url("/nope.html"))
    assert isinstance(result, NotFound)
    assert result.response() == (51, "Not found", None)


@pytest.mark.parametrize(
    "path",
    ["/../outside.txt", "/blog/../../outside.txt", "/%2e%2e/outside.txt", "/notes/..", "/a\x00b"],
)
def test_traversal_is_forbidden(resolver, path):
    result = resolver.resolve(url(path))
    assert isinstance(result, Forbidden)
    assert result.response()[0] == 53
    assert result.response()[2] is None


def test_symlink_out_of_root_is_forbidden(resolver, site):
    os.symlink(site.parent / "outside.txt", site / "escape.txt")
    assert isinstance(resolver.resolve(url("/escape.txt")), Forbidden)

    (site / "leak").mkdir()
    os.symlink(site.parent / "outside.txt", site / "leak" / "index.gmi")
    for path in ("/leak", "/leak/"):
        result = resolver.resolve(url(path))
        assert isinstance(result, Forbidden), result


def test_symlink_inside_root_is_served(resolver, site):
    os.symlink(site / "notes" / "a.txt", site / "alias.txt")
    assert body(resolver.resolve(url("/alias.txt"))) == "plain text\n"


def test_directory_listing(resolver):
    result = resolver.resolve(url("/notes"))
    assert result.artifact.mime == "text/gemini"
    assert body(result).splitlines() == [
        "# Index of /notes/",
        "=> gemini://example/ ..",
        "=> gemini://example/notes/a.txt a.txt",
        "=> gemini://example/notes/b.gmi b.gmi",
        "=> gemini://example/notes/sub/ sub/",
    ]


def test_root_listing_has_no_parent_link(tmp_path):
    (tmp_path / "file name.txt").write_text("x")
    result = Resolver(replace_root(tmp_path)).resolve(url("/"))
    assert body(result).splitlines() == [
        "# Index of /",
        "=> gemini://example/file%20name.txt file name.txt",
    ]


def test_listing_can_be_disabled(config):
    resolver = Resolver(replace(config, directory_listing=False))
    assert isinstance(resolver.resolve(url("/notes/")), NotFound)


def test_assets_pass_through(resolver, site):
    png = resolver.resolve(url("/img/cat.png"))
    assert png.response() == (20, "image/png", (site / "img" / "cat.png").read_bytes())

    txt = resolver.resolve(url("/notes/a.txt"))
    assert txt.artifact.mime == "text/plain"

    gmi = resolver.resolve(url("/notes/b.gmi"))
    assert gmi.artifact.mime == "text/gemini"
    assert body(gmi) == "# Native gemtext\n"


def test_unknown_type_is_octet_stream(resolver, site):
    (site / "blob.zzqx").write_bytes(b"\x00\x01")
    assert resolver.resolve(url("/blob.zzqx")).artifact.mime == "application/octet-stream"


def test_percent_encoded_path(resolver, site):
    (site / "my post.html").write_text("<p>spaced</p>")
    assert body(resolver.resolve(url("/my%20post.html"))) == "spaced\n"


def test_meta_refresh_page_redirects(resolver):
    result = resolver.resolve(url("/old/"))
    assert result == Redirect("gemini://example/blog/", permanent=True)
    assert result.response() == (31, "gemini://example/blog/", None)


def test_configured_redirect(config):
    rules = {"/feed": RedirectRule("/blog/"), "/gone": RedirectRule("gemini://elsewhere/", permanent=True)}
    resolver = Resolver(replace(config, redirects=rules))
    assert resolver.resolve(url("/feed")).response() == (30, "gemini://example/blog/", None)
    assert resolver.resolve(url("/gone")).response() == (31, "gemini://elsewhere/", None)


def test_client_certificate_policy(resolver):
    result = resolver.resolve(url("/private/"))
    assert isinstance(result, CertRequired)
    assert result.response() == (60, "Client certificate required", None)

    who = ClientIdentity(fingerprint="ab" * 32, common_name="reader")
    assert body(resolver.resolve(url("/private/"), who)) == "# Members\n"
    # prefix matching is per path segment
    assert isinstance(resolver.resolve(url("/privateer")), NotFound)


def test_cert_required_even_for_missing_paths(resolver):
    assert isinstance(resolver.resolve(url("/private/unknown")), CertRequired)


def test_host_policy(config):
    resolver = Resolver(replace(config, hostnames=("example",)))
    assert isinstance(resolver.resolve(url("/", host="example")), Content)
    assert isinstance(resolver.resolve(url("/", host="other.org")), Forbidden)


def test_missing_root_fails_fast(tmp_path):
    with pytest.raises(FileNotFoundError):
        Resolver(replace_root(tmp_path / "missing"))


def test_concurrent_resolution_does_not_mix_output(resolver):
    paths = ["/", "/about.html", "/blog/", "/blog/post.html", "/notes/"] * 20
    expected = {p: resolver.resolve(url(p)).artifact.body for p in set(paths)}
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda p: (p, resolver.resolve(url(p))), paths))
    for path, result in results:
        assert result.artifact.body == expected[path]


def test_overlong_path_component_is_not_found(resolver):
    assert isinstance(resolver.resolve(url("/" + "a" * 300)), NotFound)
    assert isinstance(resolver.resolve(url("/notes/" + "b" * 300 + "/c")), NotFound)


def test_redirect_that_does_not_fit_a_header(resolver, site):
    target = "/" + "x" * 1100
    (site / "alias").mkdir()
    (site / "alias" / "index.html").write_text(f'<meta http-equiv="refresh" content="0; url={target}">')
    assert isinstance(resolver.resolve(url("/alias/")), NotFound)


def test_same_site_redirect_targets_are_encoded(config):
    resolver = Resolver(replace(config, redirects={"/feed": RedirectRule("/all posts/")}))
    assert resolver.resolve(url("/feed")).response() == (30, "gemini://example/all%20posts/", None)
