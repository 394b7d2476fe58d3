import socket
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from . import config
from .errors import LineTooLong, MalformedRequest

DEFAULT_PORT = 1965
MAX_META = 1024


class Status:
    """
    Gemini response status codes. The first digit is the status class.
    """

    SUCCESS = 20

    REDIRECT_TEMPORARY = 30
    REDIRECT_PERMANENT = 31

    NOT_FOUND = 51
    PROXY_REQUEST_REFUSED = 53
    BAD_REQUEST = 59

    CLIENT_CERTIFICATE_REQUIRED = 60

    @staticmethod
    def category(code: int) -> int:
        return code // 10

    @staticmethod
    def is_success(code: int) -> bool:
        return code // 10 == 2


@dataclass(frozen=True)
class GeminiURL:
    host: str
    path: str = "/"
    port: Optional[int] = None
    query: Optional[str] = None
    scheme: str = "gemini"

    @property
    def netloc(self) -> str:
        if self.port is None or self.port == DEFAULT_PORT:
            return self.host
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        url = f"{self.scheme}://{self.netloc}{self.path}"
        if self.query is not None:
            url += "?" + self.query
        return url


def parse_url(text: str) -> GeminiURL:
    """Validate an absolute gemini:// URL."""
    if not text or text != text.strip() or any(ord(c) < 0x20 or c == "\x7f" for c in text):
        raise MalformedRequest("request is empty or contains whitespace/control characters")
    try:
        parts = urlsplit(text)
        port = parts.port
    except ValueError as e:
        raise MalformedRequest(f"unparseable URL: {e}") from e

    if parts.scheme.lower() != "gemini":
        raise MalformedRequest(f"unsupported scheme {parts.scheme!r}")
    if not parts.hostname:
        raise MalformedRequest("URL must be absolute with a host")
    if parts.username is not None or parts.password is not None:
        raise MalformedRequest("URL must not contain userinfo")

    # urlsplit lower-cases hostname; brackets of IPv6 literals are dropped
    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    return GeminiURL(
        host=host,
        path=parts.path or "/",
        port=port,
        query=parts.query or None,
    )


def parse_request(stream, limit: int = config.MAX_REQUEST) -> GeminiURL:
    """
    Read the single request line from ``stream`` and parse it.

    At most ``limit`` bytes (terminator included) are ever read. A bare LF
    is accepted as terminator as well as CRLF.
    """
    data = b""
    while b"\n" not in data:
        if len(data) >= limit:
            raise LineTooLong(f"request line exceeds {limit} bytes")
        try:
            chunk = stream.recv(min(config.READ_BYTES, limit - len(data)))
        except socket.timeout as e:
            raise MalformedRequest("timed out before end of request line") from e
        if not chunk:
            raise MalformedRequest("connection closed before end of request line")
        data += chunk

    line = data[: data.index(b"\n")]
    if line.endswith(b"\r"):
        line = line[:-1]
    try:
        text = line.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedRequest("request line is not valid UTF-8") from e
    return parse_url(text)


def encode_header(status: int, meta: str) -> bytes:
    if not 10 <= status <= 69:
        raise ValueError(f"invalid status code {status}")
    if "\r" in meta or "\n" in meta:
        raise ValueError("meta must be a single line")
    header = f"{status} {meta}".encode("utf-8")
    if len(header) - 3 > MAX_META:
        raise ValueError("meta exceeds 1024 bytes")
    return header + b"\r\n"


def write_response(stream, status: int, meta: str, body: Optional[bytes] = None):
    """
    Write ``<status> <meta>\\r\\n`` and, for 2x only, the raw body.
    The body has no framing: closing the stream marks its end.
    """
    header = encode_header(status, meta)
    if Status.is_success(status):
        stream.sendall(header + (body or b""))
    elif body:
        raise ValueError(f"status {status} cannot carry a body")
    else:
        stream.sendall(header)
