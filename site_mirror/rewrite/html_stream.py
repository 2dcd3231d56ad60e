"""
Streaming HTML attribute rewriter.

The body is never parsed into a tree. A small incremental tokenizer splits
the byte stream into text, start tags and other markup; start tags of the
intercepted elements get their URL attributes rewritten, every other byte is
emitted exactly as received.

Pipeline:
    upstream chunks -> HtmlTokenizer.feed() -> tokens
                    -> rewrite_start_tag() per token -> outgoing chunks

Only an unfinished construct at the end of a chunk (half a tag, a possible
``-->`` or ``</script``) is held back until the next chunk arrives.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from site_mirror.rewrite.config import MirrorConfig, RewriteContext
from site_mirror.rewrite.url_policy import (
    UrlClass,
    classify_url,
    rewrite_url,
    rewrite_url_list,
)

logger = logging.getLogger("uvicorn.error")

# Upper bound for an unfinished construct kept between chunks
MAX_PENDING_BYTES = 256 * 1024

# Elements whose content is not markup
RAW_TEXT_ELEMENTS = {
    "script",
    "style",
    "textarea",
    "title",
    "xmp",
    "iframe",
    "noembed",
    "noframes",
}

_LT = ord("<")
_GT = ord(">")
_EQ = ord("=")
_QUOTES = (ord('"'), ord("'"))
_SPACES = b" \t\n\r\f"

_TAG_NAME_RE = re.compile(rb"<([A-Za-z][^\s/>]*)")
_TAG_STOP_RE = re.compile(rb"[>=]")
_ATTR_RE = re.compile(
    rb"""([^\s"'>/=]+)(?:\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s>]*)))?"""
)
_META_URL_RE = re.compile(
    r"""(\burl\s*=\s*['"]?)([^'"\s;]+)|(?<![\w.+-]:)((?:https?:)?//[^\s'"<>;,]+)""",
    re.IGNORECASE,
)
_NEEDS_QUOTES_RE = re.compile(r"""[\s"'=<>`]""")

# meta content values that are a URL in their own right
_WHOLE_URL_CLASSES = (UrlClass.ABSOLUTE, UrlClass.PROTOCOL_RELATIVE, UrlClass.ROOT_RELATIVE)


class TokenKind(str, Enum):
    TEXT = "text"
    START_TAG = "start_tag"
    MARKUP = "markup"


@dataclass
class HtmlToken:
    """A slice of the document. ``raw`` is the exact bytes received."""

    kind: TokenKind
    raw: bytes
    name: str = ""


class _State(Enum):
    DATA = "data"
    COMMENT = "comment"
    RAW_TEXT = "raw_text"
    PLAINTEXT = "plaintext"


def _find_tag_end(buf: bytes, pos: int) -> int:
    """
    Index of the ``>`` closing the tag that starts before ``pos``, or -1 when
    the buffer ends first. ``>`` inside quoted attribute values is skipped.
    """
    size = len(buf)
    while True:
        match = _TAG_STOP_RE.search(buf, pos)
        if not match:
            return -1
        if buf[match.start()] == _GT:
            return match.start()
        pos = match.end()
        while pos < size and buf[pos] in _SPACES:
            pos += 1
        if pos >= size:
            return -1
        if buf[pos] in _QUOTES:
            close = buf.find(buf[pos : pos + 1], pos + 1)
            if close < 0:
                return -1
            pos = close + 1


class HtmlTokenizer:
    """
    Incremental tokenizer over an HTML byte stream.

    ``feed`` returns the tokens that are complete so far; ``close`` returns
    whatever is left, unchanged.
    """

    def __init__(self, max_pending: int = MAX_PENDING_BYTES):
        self.max_pending = max_pending
        self._buffer = b""
        self._state = _State.DATA
        self._raw_end_re: Optional["re.Pattern[bytes]"] = None
        self._raw_hold = 0

    def feed(self, data: bytes) -> List[HtmlToken]:
        if data:
            self._buffer += data
        tokens: List[HtmlToken] = []
        pos = self._drain(tokens)
        self._buffer = self._buffer[pos:]

        if len(self._buffer) > self.max_pending:
            logger.debug(
                f"[HtmlRewriter] Pending markup exceeds {self.max_pending} bytes, emitting unchanged"
            )
            tokens.append(HtmlToken(TokenKind.TEXT, self._buffer))
            self._buffer = b""
        return tokens

    def close(self) -> List[HtmlToken]:
        tokens = self.feed(b"")
        if self._buffer:
            tokens.append(HtmlToken(TokenKind.TEXT, self._buffer))
            self._buffer = b""
        self._state = _State.DATA
        return tokens

    def _enter_raw_text(self, name: str) -> None:
        self._state = _State.RAW_TEXT
        self._raw_end_re = re.compile(
            rb"</" + re.escape(name.encode("ascii", "ignore")) + rb"[\s/>]",
            re.IGNORECASE,
        )
        self._raw_hold = len(name) + 2

    def _drain(self, tokens: List[HtmlToken]) -> int:
        buf = self._buffer
        size = len(buf)
        pos = 0

        while pos < size:
            if self._state is _State.PLAINTEXT:
                tokens.append(HtmlToken(TokenKind.TEXT, buf[pos:]))
                return size

            if self._state is _State.COMMENT:
                end = buf.find(b"-->", pos)
                if end < 0:
                    keep = max(pos, size - 2)
                    if keep > pos:
                        tokens.append(HtmlToken(TokenKind.MARKUP, buf[pos:keep]))
                    return keep
                tokens.append(HtmlToken(TokenKind.MARKUP, buf[pos : end + 3]))
                pos = end + 3
                self._state = _State.DATA
                continue

            if self._state is _State.RAW_TEXT:
                match = self._raw_end_re.search(buf, pos)
                if not match:
                    keep = max(pos, size - self._raw_hold)
                    if keep > pos:
                        tokens.append(HtmlToken(TokenKind.TEXT, buf[pos:keep]))
                    return keep
                if match.start() > pos:
                    tokens.append(HtmlToken(TokenKind.TEXT, buf[pos : match.start()]))
                pos = match.start()
                self._state = _State.DATA
                continue

            lt = buf.find(b"<", pos)
            if lt < 0:
                tokens.append(HtmlToken(TokenKind.TEXT, buf[pos:]))
                return size
            if lt > pos:
                tokens.append(HtmlToken(TokenKind.TEXT, buf[pos:lt]))
                pos = lt

            consumed = self._markup(buf, pos, tokens)
            if consumed < 0:
                return pos
            pos = consumed

        return pos

    def _markup(self, buf: bytes, pos: int, tokens: List[HtmlToken]) -> int:
        """Tokenize the construct starting at ``buf[pos] == '<'``; -1 if incomplete."""
        size = len(buf)
        if pos + 1 >= size:
            return -1
        nxt = buf[pos + 1 : pos + 2]

        if nxt.isalpha():
            end = _find_tag_end(buf, pos + 1)
            if end < 0:
                return -1
            raw = buf[pos : end + 1]
            name = _TAG_NAME_RE.match(raw).group(1).decode("latin-1").lower()
            tokens.append(HtmlToken(TokenKind.START_TAG, raw, name))
            if name == "plaintext":
                self._state = _State.PLAINTEXT
            elif name in RAW_TEXT_ELEMENTS:
                self._enter_raw_text(name)
            return end + 1

        if nxt == b"!":
            head = buf[pos : pos + 4]
            if len(head) < 4 and b"<!--".startswith(head):
                return -1
            if head == b"<!--":
                tokens.append(HtmlToken(TokenKind.MARKUP, b"<!"))
                self._state = _State.COMMENT
                return pos + 2

        if nxt in (b"!", b"/", b"?"):
            end = buf.find(b">", pos + 1)
            if end < 0:
                return -1
            tokens.append(HtmlToken(TokenKind.MARKUP, buf[pos : end + 1]))
            return end + 1

        tokens.append(HtmlToken(TokenKind.TEXT, buf[pos : pos + 1]))
        return pos + 1


def _decode(value: bytes) -> str:
    return value.decode("utf-8", "surrogateescape")


def _encode(value: str) -> bytes:
    return value.encode("utf-8", "surrogateescape")


def rewrite_meta_content(value: str, ctx: RewriteContext, cfg: MirrorConfig) -> str:
    """
    Rewrite a meta content value.

    A value that is itself a URL (``og:image`` and friends) goes through the
    URL policy whole; otherwise the ``url=`` target of a refresh and any
    absolute URLs inside the text are rewritten.
    """
    if classify_url(value) in _WHOLE_URL_CLASSES:
        if "," in value:
            return rewrite_url_list(value, ctx, cfg)
        return rewrite_url(value, ctx, cfg)

    def _replace(match: "re.Match[str]") -> str:
        if match.group(3):
            return rewrite_url(match.group(3), ctx, cfg)
        return match.group(1) + rewrite_url(match.group(2), ctx, cfg)

    return _META_URL_RE.sub(_replace, value)


AttributeRewrite = Callable[[str, RewriteContext, MirrorConfig], str]

# element -> ((attribute, rewrite function), ...)
ELEMENT_HANDLERS: Dict[str, Tuple[Tuple[str, AttributeRewrite], ...]] = {
    "a": (("href", rewrite_url),),
    "link": (("href", rewrite_url),),
    "img": (("src", rewrite_url), ("srcset", rewrite_url_list)),
    "script": (("src", rewrite_url),),
    "source": (("src", rewrite_url), ("srcset", rewrite_url_list)),
    "form": (("action", rewrite_url),),
    "meta": (("content", rewrite_meta_content),),
}


def _quote_value(value: str, quote: bytes) -> bytes:
    if quote == b'"':
        return _encode(value.replace('"', "&quot;"))
    if quote == b"'":
        return _encode(value.replace("'", "&#39;"))
    if _NEEDS_QUOTES_RE.search(value):
        return b'"' + _encode(value.replace('"', "&quot;")) + b'"'
    return _encode(value)


def rewrite_start_tag(token: HtmlToken, ctx: RewriteContext, cfg: MirrorConfig) -> bytes:
    """
    Return the bytes to emit for a start tag.

    Only the value of an intercepted attribute can change; the first
    occurrence of an attribute is the one that counts, as in browsers.
    """
    handlers = ELEMENT_HANDLERS.get(token.name)
    if not handlers:
        return token.raw

    raw = token.raw
    name_end = _TAG_NAME_RE.match(raw).end()
    wanted = dict(handlers)
    seen = set()
    edits: List[Tuple[int, int, bytes]] = []

    for match in _ATTR_RE.finditer(raw, name_end, len(raw) - 1):
        attr = match.group(1).decode("latin-1").lower()
        if attr in seen:
            continue
        seen.add(attr)
        if attr not in wanted:
            continue

        for group, quote in ((2, b'"'), (3, b"'"), (4, b"")):
            if match.group(group) is not None:
                break
        else:
            continue

        value = _decode(match.group(group))
        if not value:
            continue
        rewritten = wanted[attr](value, ctx, cfg)
        if rewritten != value:
            edits.append((match.start(group), match.end(group), _quote_value(rewritten, quote)))

    for start, end, replacement in reversed(edits):
        raw = raw[:start] + replacement + raw[end:]
    return raw


class StreamingHtmlRewriter:
    """Push-based rewrite stage: bytes in, rewritten bytes out, chunk by chunk."""

    def __init__(self, ctx: RewriteContext, cfg: MirrorConfig, max_pending: int = MAX_PENDING_BYTES):
        self.ctx = ctx
        self.cfg = cfg
        self.tokenizer = HtmlTokenizer(max_pending=max_pending)

    def _emit(self, tokens: List[HtmlToken]) -> bytes:
        return b"".join(
            rewrite_start_tag(token, self.ctx, self.cfg)
            if token.kind is TokenKind.START_TAG
            else token.raw
            for token in tokens
        )

    def feed(self, chunk: bytes) -> bytes:
        return self._emit(self.tokenizer.feed(chunk))

    def close(self) -> bytes:
        return self._emit(self.tokenizer.close())


async def transform_html_body(
    body: AsyncIterator[bytes], ctx: RewriteContext, cfg: MirrorConfig
) -> AsyncIterator[bytes]:
    """
    Pipe an HTML body through ``StreamingHtmlRewriter``.

    The source is pulled one chunk at a time and closed when the consumer
    stops early (client disconnect) or the stream ends.
    """
    rewriter = StreamingHtmlRewriter(ctx, cfg)
    try:
        async for chunk in body:
            out = rewriter.feed(chunk)
            if out:
                yield out
        tail = rewriter.close()
        if tail:
            yield tail
    finally:
        if hasattr(body, "aclose"):
            try:
                await body.aclose()
            except Exception as e:
                logger.debug(f"[HtmlRewriter] Error closing body source: {e}")
