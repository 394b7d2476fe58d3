import logging
import mimetypes
import pathlib
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import quote, unquote

from . import gemtext
from .codec import MAX_META, GeminiURL, Status
from .config import ServerConfig
from .gemtext import GemtextDocument, Heading, Link, LinkRewriteContext
from .tls import ClientIdentity

log = logging.getLogger(__name__)

HTML_TYPES = ("text/html", "application/xhtml+xml")
DEFAULT_TYPE = "application/octet-stream"

Response = Tuple[int, str, Optional[bytes]]


@dataclass(frozen=True)
class ContentArtifact:
    mime: str
    body: bytes
    path: str   # site-relative, e.g. /blog/index.html


class ResolutionResult:
    def response(self) -> Response:
        raise NotImplementedError


@dataclass(frozen=True)
class Content(ResolutionResult):
    artifact: ContentArtifact

    def response(self) -> Response:
        return Status.SUCCESS, self.artifact.mime, self.artifact.body


@dataclass(frozen=True)
class Redirect(ResolutionResult):
    target: str
    permanent: bool = False

    def response(self) -> Response:
        code = Status.REDIRECT_PERMANENT if self.permanent else Status.REDIRECT_TEMPORARY
        return code, self.target, None


@dataclass(frozen=True)
class NotFound(ResolutionResult):
    def response(self) -> Response:
        return Status.NOT_FOUND, "Not found", None


@dataclass(frozen=True)
class Forbidden(ResolutionResult):
    reason: str = "Forbidden"

    def response(self) -> Response:
        return Status.PROXY_REQUEST_REFUSED, self.reason, None


@dataclass(frozen=True)
class CertRequired(ResolutionResult):
    def response(self) -> Response:
        return Status.CLIENT_CERTIFICATE_REQUIRED, "Client certificate required", None


def _under(path: str, prefix: str) -> bool:
    prefix = "/" + prefix.strip("/")
    if prefix == "/":
        return True
    return path == prefix or path.startswith(prefix + "/")


class Resolver:
    """
    Maps request URLs onto the content root.

    HTML files are converted to gemtext on the way out; everything else is
    served as-is. A directory serves its index file when it has one and a
    generated listing otherwise. The resolver holds no per-request state and
    can be shared by every session.
    """

    def __init__(self, cfg: ServerConfig):
        self.cfg = cfg
        self.root = pathlib.Path(cfg.root).resolve(strict=True)
        if not self.root.is_dir():
            raise NotADirectoryError(str(self.root))
        self.hostnames = {h.lower() for h in cfg.hostnames}
        self.mimetypes = mimetypes.MimeTypes()
        self.mimetypes.add_type("text/gemini", ".gmi")
        self.mimetypes.add_type("text/gemini", ".gemini")

    def resolve(self, url: GeminiURL, client: Optional[ClientIdentity] = None) -> ResolutionResult:
        if self.hostnames and url.host.lower() not in self.hostnames:
            return Forbidden("This server does not serve that host")

        path = unquote(url.path) or "/"
        if "\x00" in path or ".." in path.split("/"):
            return Forbidden("Path traversal is not allowed")

        for prefix in self.cfg.cert_required:
            if _under(path, prefix) and client is None:
                return CertRequired()

        redirect = self.cfg.redirects.get(path)
        if redirect is not None:
            return self._redirect(url, path, redirect.target, redirect.permanent)

        filesystem_path = self.root / path.lstrip("/")
        try:
            real = filesystem_path.resolve()
        except (OSError, RuntimeError):
            # Filename too long, symlink loop, etc.
            return NotFound()
        if not self._inside(real):
            return Forbidden("Path escapes the content root")

        try:
            if real.is_dir():
                return self._directory(url, path, real)
            if real.is_file():
                return self._file(url, path, real)
        except OSError as e:
            log.debug("[REQ] cannot read %s: %s", real, e)
            return NotFound()
        return NotFound()

    def _inside(self, real: pathlib.Path) -> bool:
        return real == self.root or self.root in real.parents

    def _redirect(self, url: GeminiURL, source_path: str, target: str, permanent: bool) -> ResolutionResult:
        context = LinkRewriteContext(host=url.host, source_path=source_path, port=url.port)
        target = context.rewrite(target) or target
        if len(target.encode("utf-8")) > MAX_META:
            log.warning("[REQ] redirect from %s does not fit in a response header", source_path)
            return NotFound()
        return Redirect(target, permanent)

    def _directory(self, url: GeminiURL, path: str, real: pathlib.Path) -> ResolutionResult:
        base = path if path.endswith("/") else path + "/"
        for name in self.cfg.index_files:
            index = real / name
            if not index.is_file():
                continue
            index = index.resolve()
            if not self._inside(index):
                return Forbidden("Path escapes the content root")
            return self._file(url, base + name, index)
        if not self.cfg.directory_listing:
            return NotFound()
        document = self.list_directory(url, base, real)
        return Content(ContentArtifact(gemtext.MIME_TYPE, document.encode(), base))

    def _file(self, url: GeminiURL, site_path: str, real: pathlib.Path) -> ResolutionResult:
        with real.open("rb") as fp:
            data = fp.read()
        mime = self.guess_mimetype(real.name)
        if mime not in HTML_TYPES:
            return Content(ContentArtifact(mime, data, site_path))

        target = gemtext.refresh_target(data)
        if target:
            return self._redirect(url, site_path, target, permanent=True)

        document = gemtext.transform(data, site_path, host=url.host, port=url.port)
        return Content(ContentArtifact(gemtext.MIME_TYPE, document.encode(), site_path))

    def list_directory(self, url: GeminiURL, base: str, real: pathlib.Path) -> GemtextDocument:
        """Auto-generate a text/gemini listing of a directory with no index file."""
        context = LinkRewriteContext(host=url.host, source_path=base, port=url.port)
        lines = [Heading(1, f"Index of {base}")]
        if base != "/":
            lines.append(Link(context.rewrite(".."), ".."))

        for entry in sorted(real.iterdir(), key=lambda p: p.name):
            if entry.name.startswith("."):
                # Skip hidden directories/files that may contain sensitive info
                continue
            if entry.is_dir():
                lines.append(Link(context.rewrite(quote(entry.name) + "/"), entry.name + "/"))
            else:
                lines.append(Link(context.rewrite(quote(entry.name)), entry.name))
        return GemtextDocument(tuple(lines))

    def guess_mimetype(self, filename: str) -> str:
        mime, encoding = self.mimetypes.guess_type(filename, strict=False)
        if encoding or not mime:
            return DEFAULT_TYPE
        return mime
