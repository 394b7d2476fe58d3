import pytest

from gemsite.config import ServerConfig
from gemsite.resolver import Resolver
from gemsite.tls import ServerIdentity, generate_certificate

INDEX_HTML = '<h1>Title</h1><p>Hello <a href="/about">About</a></p>'


class FakeStream:
    """In-memory stand-in for a TLS stream."""

    def __init__(self, data: bytes = b"", chunk: int = 0, recv_error=None, send_error=None):
        self.incoming = data
        self.chunk = chunk
        self.recv_error = recv_error
        self.send_error = send_error
        self.sent = b""
        self.read_total = 0
        self.requested = []
        self.timeouts = []
        self.closed = False

    def recv(self, n: int) -> bytes:
        if self.recv_error is not None and not self.incoming:
            raise self.recv_error
        self.requested.append(n)
        size = min(n, self.chunk) if self.chunk else n
        out, self.incoming = self.incoming[:size], self.incoming[size:]
        self.read_total += len(out)
        return out

    def sendall(self, data: bytes):
        if self.send_error is not None:
            raise self.send_error
        self.sent += data

    def settimeout(self, seconds):
        self.timeouts.append(seconds)

    def close(self):
        self.closed = True


def write(root, rel: str, content):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def site(tmp_path):
    root = tmp_path / "public"
    root.mkdir()
    write(root, "index.html", INDEX_HTML)
    write(root, "about.html", "<h1>About</h1><p>Who we are.</p>")
    write(root, "blog/index.html", '<h2>Posts</h2><ul><li><a href="post.html">First post</a></li></ul>')
    write(root, "blog/post.html", "<h1>First post</h1><pre>  a == b;\n</pre>")
    write(root, "notes/a.txt", "plain text\n")
    write(root, "notes/b.gmi", "# Native gemtext\n")
    write(root, "notes/.hidden", "secret")
    (root / "notes" / "sub").mkdir()
    write(root, "img/cat.png", b"\x89PNG\r\n\x1a\n\x00\x01\x02")
    write(
        root,
        "old/index.html",
        '<html><head><meta http-equiv="refresh" content="0; url=/blog/"></head></html>',
    )
    write(root, "private/index.html", "<h1>Members</h1>")
    write(tmp_path, "outside.txt", "not for you")
    return root


@pytest.fixture
def config(site):
    return ServerConfig(root=str(site), cert_required=("/private",))


@pytest.fixture
def resolver(config):
    return Resolver(config)


@pytest.fixture(scope="session")
def pem_pair():
    return generate_certificate("localhost", days=30)


@pytest.fixture(scope="session")
def identity(pem_pair):
    cert_pem, key_pem = pem_pair
    return ServerIdentity(cert_pem, key_pem)


@pytest.fixture
def make_stream():
    return FakeStream
