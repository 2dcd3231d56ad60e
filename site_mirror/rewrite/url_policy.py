"""
URL rewriting policy.

Maps any URL string found in a response onto the public mirror:

- absolute URLs on the upstream origin become ``<request origin><local prefix><path>``
- absolute URLs on a host in ``host_map`` get their host replaced
- root-relative paths get the local prefix
- everything else is left alone

All functions are pure: they only read the ``MirrorConfig`` and ``RewriteContext``
they are given.
"""

import logging
import re
from enum import Enum
from typing import Optional
from urllib.parse import SplitResult, urlsplit

from site_mirror.rewrite.config import MirrorConfig, RewriteContext, url_host

logger = logging.getLogger("uvicorn.error")

_OPAQUE_RE = re.compile(r"^(data:|blob:|javascript:|#)", re.IGNORECASE)
_ABSOLUTE_RE = re.compile(r"^https?://", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


class UrlClass(str, Enum):
    """Classification of a candidate URL string."""

    ABSOLUTE = "absolute"
    PROTOCOL_RELATIVE = "protocol-relative"
    ROOT_RELATIVE = "root-relative"
    OPAQUE = "opaque"
    RELATIVE = "relative"


def classify_url(candidate: str) -> UrlClass:
    """Put a (trimmed) candidate into exactly one ``UrlClass``."""
    value = (candidate or "").strip()
    if _OPAQUE_RE.match(value):
        return UrlClass.OPAQUE
    if value.startswith("//"):
        return UrlClass.PROTOCOL_RELATIVE
    if _ABSOLUTE_RE.match(value):
        return UrlClass.ABSOLUTE
    if value.startswith("/"):
        return UrlClass.ROOT_RELATIVE
    return UrlClass.RELATIVE


def _host_of(parts: SplitResult) -> str:
    return url_host(parts.scheme, parts.hostname, parts.port)


def url_suffix(parts: SplitResult) -> str:
    query = f"?{parts.query}" if parts.query else ""
    fragment = f"#{parts.fragment}" if parts.fragment else ""
    return f"{query}{fragment}"


def is_same_site(parts: SplitResult, cfg: MirrorConfig) -> bool:
    """Exact host match against the upstream origin."""
    return _host_of(parts) == cfg.origin_host


def lookup_host(host: str, cfg: MirrorConfig) -> Optional[str]:
    """First ``host_map`` entry whose key equals ``host`` or is a dot-suffix of it."""
    for key, mapped in cfg.host_map:
        if host == key or host.endswith("." + key):
            return mapped
    return None


def local_url(path: str, suffix: str, ctx: RewriteContext, cfg: MirrorConfig) -> str:
    """Build the public URL for an upstream path (already stripped of ``origin_path``)."""
    return f"{ctx.request_origin}{cfg.local_prefix}{path}{suffix}"


def _rewrite_absolute(absolute: str, ctx: RewriteContext, cfg: MirrorConfig) -> Optional[str]:
    parts = urlsplit(absolute)
    host = _host_of(parts)
    path = parts.path or "/"

    if host == cfg.origin_host:
        if cfg.origin_path and path.startswith(cfg.origin_path):
            path = path[len(cfg.origin_path):]
        return local_url(path, url_suffix(parts), ctx, cfg)

    mapped = lookup_host(host, cfg)
    if mapped is not None:
        return f"{parts.scheme}://{mapped}{path}{url_suffix(parts)}"
    return None


def _rewrite_root_relative(path: str, cfg: MirrorConfig) -> str:
    if cfg.origin_path and path.startswith(cfg.origin_path):
        return f"{cfg.local_prefix}{path[len(cfg.origin_path):]}"
    return f"{cfg.local_prefix}{path}"


def rewrite_url(candidate: str, ctx: RewriteContext, cfg: MirrorConfig) -> str:
    """
    Rewrite a single URL string for the mirror.

    Returns the caller's string unchanged when it is opaque, relative,
    absolute on an unknown host, or cannot be parsed.
    """
    if not candidate:
        return candidate
    value = candidate.strip()
    kind = classify_url(value)

    if kind in (UrlClass.ABSOLUTE, UrlClass.PROTOCOL_RELATIVE):
        absolute = "https:" + value if kind is UrlClass.PROTOCOL_RELATIVE else value
        try:
            rewritten = _rewrite_absolute(absolute, ctx, cfg)
        except ValueError as e:
            logger.debug(f"[UrlPolicy] Leaving unparseable URL {value!r}: {e}")
            return candidate
        return candidate if rewritten is None else rewritten

    if kind is UrlClass.ROOT_RELATIVE:
        return _rewrite_root_relative(value, cfg)

    return candidate


def rewrite_url_list(value: str, ctx: RewriteContext, cfg: MirrorConfig) -> str:
    """
    Rewrite a ``srcset``-style list: ``url [descriptor], url [descriptor]``.

    Descriptors are reattached verbatim. URLs containing commas are not
    supported.
    """
    if not value:
        return value

    segments = []
    for segment in value.split(","):
        pieces = _WHITESPACE_RE.split(segment.strip(), maxsplit=1)
        url = rewrite_url(pieces[0], ctx, cfg)
        segments.append(f"{url} {pieces[1]}" if len(pieces) > 1 else url)
    return ", ".join(segments)
