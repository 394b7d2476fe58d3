"""
HTML to gemtext conversion.

Static site generators emit HTML; gemini clients read gemtext, a line
oriented format with no inline markup. The conversion here is lossy and
best-effort: broken markup degrades to plain text lines, it never fails
the request.
"""
import logging
import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union
from urllib.parse import quote, urldefrag, urljoin, urlsplit

from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup
from bs4.element import NavigableString, PreformattedString, Tag

from . import config
from .codec import DEFAULT_PORT

log = logging.getLogger(__name__)

MIME_TYPE = "text/gemini"

# ---------- Document model ----------


@dataclass(frozen=True)
class Heading:
    level: int
    text: str

    def render(self) -> str:
        return "#" * self.level + " " + self.text


# Line starts that give a line its type. Text that happens to begin with one
# is written with a leading space so it stays a text line.
LINE_MARKERS = ("```", "=>", "#", "*", ">")


@dataclass(frozen=True)
class Text:
    text: str

    def render(self) -> str:
        if self.text.startswith(LINE_MARKERS):
            return " " + self.text
        return self.text


@dataclass(frozen=True)
class ListItem:
    text: str

    def render(self) -> str:
        return "* " + self.text


@dataclass(frozen=True)
class Quote:
    text: str

    def render(self) -> str:
        return "> " + self.text


@dataclass(frozen=True)
class Link:
    url: str
    label: str = ""

    def render(self) -> str:
        if self.label:
            return f"=> {self.url} {self.label}"
        return f"=> {self.url}"


@dataclass(frozen=True)
class Preformatted:
    """A fenced region. ``text`` is kept exactly as found in the source."""

    text: str
    alt: str = ""

    def render(self) -> str:
        body = self.text[:-1] if self.text.endswith("\n") else self.text
        # a fence inside the block would close it early
        body = "\n".join(" " + line if line.startswith("```") else line for line in body.split("\n"))
        return f"```{self.alt}\n{body}\n```"


Line = Union[Heading, Text, ListItem, Quote, Link, Preformatted]


@dataclass(frozen=True)
class GemtextDocument:
    lines: Tuple[Line, ...] = ()

    def __iter__(self) -> Iterator[Line]:
        return iter(self.lines)

    def __len__(self) -> int:
        return len(self.lines)

    def render(self) -> str:
        out: List[str] = []
        for i, line in enumerate(self.lines):
            if i and isinstance(line, Heading):
                out.append("")
            out.append(line.render())
        return "\n".join(out) + "\n" if out else ""

    def encode(self) -> bytes:
        return self.render().encode("utf-8")


# ---------- Link rewriting ----------

# Schemes that never lead anywhere a gemini client can follow.
DEAD_SCHEMES = {"javascript", "data", "vbscript", "blob"}

# Left alone when percent-encoding a link; spaces and non-ASCII are not.
URL_SAFE = "/%?=&;:@!$'()*+,~-._#[]"


@dataclass(frozen=True)
class LinkRewriteContext:
    """
    Where the document being converted lives: the host serving it and its
    site-relative path. Relative links resolve against ``source_path``.
    """

    host: str
    source_path: str = "/"
    port: Optional[int] = None

    @property
    def netloc(self) -> str:
        if self.port is None or self.port == DEFAULT_PORT:
            return self.host
        return f"{self.host}:{self.port}"

    def rewrite(self, href: Optional[str]) -> Optional[str]:
        """
        Map an ``href``/``src`` to something a gemini client can open, or
        None when it has no usable target.
        """
        href = (href or "").strip()
        if not href or href.startswith("#"):
            return None
        try:
            parts = urlsplit(href)
        except ValueError:
            return None
        if parts.scheme:
            if parts.scheme.lower() in DEAD_SCHEMES:
                return None
            return quote(href, safe=URL_SAFE)
        if href.startswith("//"):
            # protocol-relative, another origin
            return quote(href, safe=URL_SAFE)

        path, _ = urldefrag(urljoin(self.source_path, href))
        if not path.startswith("/"):
            path = "/" + path
        return f"gemini://{self.netloc}{quote(path, safe=URL_SAFE)}"


# ---------- HTML walk ----------

SKIP_TAGS = {
    "head", "script", "style", "template", "noscript", "svg", "math",
    "iframe", "object", "embed", "canvas", "video", "audio", "button",
    "select", "textarea", "input",
}
BLOCK_TAGS = {
    "html", "body", "main", "article", "section", "header", "footer", "nav",
    "aside", "div", "p", "figure", "figcaption", "address", "details",
    "summary", "form", "fieldset", "legend", "table", "thead", "tbody",
    "tfoot", "tr", "caption", "dl", "dt", "dd", "ul", "ol", "menu", "center",
}
HEADING_TAGS = {"h1": 1, "h2": 2, "h3": 3, "h4": 4, "h5": 5, "h6": 6}
CELL_TAGS = {"td", "th"}

LANG_CLASS = re.compile(r"^(?:language|lang)-(\S+)$")
TAG_RE = re.compile(r"<[^>]*>")
REFRESH_URL = re.compile(r"""url\s*=\s*['"]?\s*([^'"\s]+)""", re.IGNORECASE)

TEXT, LIST, QUOTE = "text", "list", "quote"

# Marks a <br> inside collected inline text. NULs never survive from the source.
BREAK = "\x00"


def _normalize(text: str) -> str:
    return " ".join(text.split())


class _Emitter:
    """
    Linear pass over the parsed tree. Inline text collects into the current
    block; a block boundary flushes it as one line followed by the links
    that were found inside it.
    """

    def __init__(self, context: LinkRewriteContext):
        self.context = context
        self.lines: List[Line] = []
        self.inline: List[str] = []
        self.links: List[Tuple[Link, bool]] = []   # (link, from an anchor)
        self.kinds: List[Union[str, int]] = [TEXT]
        self.anchors: List[Tuple[Optional[str], List[str]]] = []   # (url, label text)
        self.counters: List[Optional[int]] = []   # None for <ul>, next number for <ol>
        self.prefix = ""

    # -- flushing --

    def flush(self):
        raw = "".join(self.inline)
        links = self.links
        self.inline = []
        self.links = []
        for _, label in self.anchors:
            label.append(" ")
        kind = self.kinds[-1]

        if isinstance(kind, int):
            text = _normalize(raw.replace(BREAK, " "))
            if text:
                self.lines.append(Heading(kind, text))
        else:
            segments = [_normalize(s) for s in raw.split(BREAK)]
            segments = [s for s in segments if s]
            lone_anchor = (
                len(links) == 1
                and links[0][1]
                and len(segments) == 1
                and segments[0] == links[0][0].label
            )
            if segments and not lone_anchor:
                if self.prefix:
                    segments[0] = self.prefix + segments[0]
                for segment in segments:
                    if kind == LIST:
                        self.lines.append(ListItem(segment))
                    elif kind == QUOTE:
                        self.lines.append(Quote(segment))
                    else:
                        self.lines.append(Text(segment))
                self.prefix = ""

        self.lines.extend(link for link, _ in links)

    def text(self, s: str):
        # Anchor labels get their own copy: a block inside an anchor flushes inline.
        self.inline.append(s)
        for _, label in self.anchors:
            label.append(s)

    # -- tree events --

    def start(self, tag: Tag) -> bool:
        """Handle an opening tag. Returns False when children are skipped."""
        name = tag.name.lower()

        if name in SKIP_TAGS:
            return False

        if name in HEADING_TAGS:
            self.flush()
            self.kinds.append(min(HEADING_TAGS[name], 3))
        elif name == "li":
            self.flush()
            counter = self.counters[-1] if self.counters else None
            if counter is None:
                self.kinds.append(LIST)
                self.prefix = ""
            else:
                self.kinds.append(TEXT)
                self.prefix = f"{counter}. "
                self.counters[-1] = counter + 1
        elif name == "blockquote":
            self.flush()
            self.kinds.append(QUOTE)
        elif name == "pre":
            self.flush()
            self.lines.append(Preformatted(tag.get_text(), _language(tag)))
            return False
        elif name == "img":
            src = tag.get("src")
            url = self.context.rewrite(src)
            if url:
                label = _normalize(tag.get("alt") or "") or src.strip()
                self.links.append((Link(url, label), False))
            return False
        elif name == "br":
            self.text(BREAK)
            return False
        elif name == "hr":
            self.flush()
            return False
        elif name == "a":
            self.anchors.append((self.context.rewrite(tag.get("href")), []))
        elif name in BLOCK_TAGS:
            self.flush()
            if name == "ol":
                self.counters.append(_int(tag.get("start"), 1))
            elif name in ("ul", "menu"):
                self.counters.append(None)
        return True

    def end(self, tag: Tag):
        name = tag.name.lower()
        if name in HEADING_TAGS or name in ("li", "blockquote"):
            self.flush()
            self.kinds.pop()
            self.prefix = ""
        elif name == "a":
            url, label = self.anchors.pop()
            label = _normalize("".join(label).replace(BREAK, " "))
            if url:
                self.links.append((Link(url, label), True))
        elif name in CELL_TAGS:
            self.text(" ")
        elif name in BLOCK_TAGS:
            self.flush()
            if name in ("ol", "ul", "menu") and self.counters:
                self.counters.pop()

    def walk(self, root: Tag):
        stack: List[Tuple[object, bool]] = [(child, False) for child in reversed(root.contents)]
        while stack:
            node, leaving = stack.pop()
            if leaving:
                self.end(node)
            elif isinstance(node, PreformattedString):
                # comments, doctype, CDATA, processing instructions
                continue
            elif isinstance(node, NavigableString):
                self.text(str(node).replace(BREAK, ""))
            elif isinstance(node, Tag) and self.start(node):
                stack.append((node, True))
                stack.extend((child, False) for child in reversed(node.contents))
        self.flush()


def _language(tag: Tag) -> str:
    candidates = [tag] + tag.find_all("code", limit=1)
    for node in candidates:
        for cls in node.get("class") or ():
            m = LANG_CLASS.match(cls)
            if m:
                return m.group(1)
    return ""


def _int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse(html: Union[bytes, str]) -> BeautifulSoup:
    if isinstance(html, bytes):
        # utf-8 first; a page in another encoding falls back to detection
        return BeautifulSoup(html, "html.parser", from_encoding="utf-8")
    return BeautifulSoup(html, "html.parser")


def _fallback(html: Union[bytes, str]) -> GemtextDocument:
    if isinstance(html, bytes):
        html = html.decode("utf-8", "replace")
    text = TAG_RE.sub(" ", html)
    return GemtextDocument(tuple(Text(t) for t in map(_normalize, text.splitlines()) if t))


# ---------- Public API ----------


def transform(
    html: Union[bytes, str],
    source_path: str,
    host: str = config.HOSTNAME,
    port: Optional[int] = None,
) -> GemtextDocument:
    """
    Convert one HTML document into gemtext.

    ``source_path`` is the site-relative path of the document (e.g.
    ``/blog/index.html``); relative links resolve against it and become
    ``gemini://host[:port]/...`` links. The result only depends on the
    arguments, so converting the same input twice gives the same document.
    """
    context = LinkRewriteContext(host=host, source_path=source_path, port=port)
    try:
        soup = _parse(html)
    except ParserRejectedMarkup as e:
        log.debug("markup rejected for %s, falling back to plain text: %s", source_path, e)
        return _fallback(html)

    emitter = _Emitter(context)
    if soup.find("h1") is None and soup.title is not None:
        title = _normalize(soup.title.get_text())
        if title:
            emitter.lines.append(Heading(1, title))
    emitter.walk(soup)
    return GemtextDocument(tuple(emitter.lines))


def refresh_target(html: Union[bytes, str]) -> Optional[str]:
    """
    Target of an immediate ``<meta http-equiv="refresh">``, as emitted by
    generators for aliases and moved pages. None when the page is not a
    redirect stub.
    """
    probe = html.lower() if isinstance(html, bytes) else html.lower().encode("utf-8", "replace")
    if b"refresh" not in probe:
        return None
    try:
        soup = _parse(html)
    except ParserRejectedMarkup:
        return None
    for meta in soup.find_all("meta"):
        if (meta.get("http-equiv") or "").strip().lower() != "refresh":
            continue
        content = meta.get("content") or ""
        delay, _, rest = content.partition(";")
        try:
            if float(delay) != 0:
                continue
        except ValueError:
            continue
        m = REFRESH_URL.search(rest)
        if m:
            return m.group(1)
    return None
