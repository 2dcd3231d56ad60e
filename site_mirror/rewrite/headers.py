"""
Response header rewriting.

Takes the upstream response headers and produces the header set the client
sees: Location redirects point at the mirror, cookies lose or swap their
upstream domain, CSP is removed for HTML, and for non-HTML responses any
header value that is itself a URL is passed through the URL policy.
"""

import logging
import re
from typing import Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import urljoin, urlsplit

from site_mirror.rewrite.config import MirrorConfig, RewriteContext
from site_mirror.rewrite.cookies import fix_cookie_domain, split_set_cookie_values
from site_mirror.rewrite.url_policy import (
    is_same_site,
    local_url,
    rewrite_url,
    url_suffix,
)

logger = logging.getLogger("uvicorn.error")

HeaderList = List[Tuple[str, str]]

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# The HTML body is decoded and re-emitted, so these no longer describe it
DECODED_BODY_HEADERS = {"content-encoding", "content-length"}

_LINK_TARGET_RE = re.compile(r"<([^>]*)>")


def is_html_content_type(content_type: Optional[str]) -> bool:
    """Whether the body should go through the HTML rewriter."""
    return "text/html" in (content_type or "").lower()


def _pairs(headers: Union[Mapping[str, str], Iterable[Tuple[str, str]]]) -> HeaderList:
    if hasattr(headers, "multi_items"):
        return list(headers.multi_items())
    if isinstance(headers, Mapping):
        return list(headers.items())
    return list(headers or [])


def rewrite_location(location: str, ctx: RewriteContext, cfg: MirrorConfig) -> str:
    """
    Rewrite a redirect target.

    Locations on the upstream origin (relative ones included) move under the
    local prefix. The first occurrence of ``origin_path`` anywhere in the path
    is removed, not only a leading one. Other Locations only get the literal
    ``http(s)://<host>`` at the start of the string swapped via ``host_map``.
    """
    if not location:
        return location

    try:
        parts = urlsplit(urljoin(cfg.origin + "/", location))
        if is_same_site(parts, cfg):
            path = parts.path or "/"
            if cfg.origin_path:
                path = path.replace(cfg.origin_path, "", 1)
            return local_url(path, url_suffix(parts), ctx, cfg)
    except ValueError as e:
        logger.debug(f"[Headers] Keeping unparseable Location {location!r}: {e}")
        return location

    for key, mapped in cfg.host_map:
        pattern = re.compile(rf"^(https?://){re.escape(key)}", re.IGNORECASE)
        rewritten, count = pattern.subn(lambda m: m.group(1) + mapped, location, count=1)
        if count:
            return rewritten
    return location


def _rewrite_link_header(value: str, ctx: RewriteContext, cfg: MirrorConfig) -> str:
    return _LINK_TARGET_RE.sub(
        lambda m: f"<{rewrite_url(m.group(1), ctx, cfg)}>", value
    )


def rewrite_response_headers(
    headers: Union[Mapping[str, str], Iterable[Tuple[str, str]]],
    cookies: Iterable[str],
    ctx: RewriteContext,
    cfg: MirrorConfig,
    html: Optional[bool] = None,
) -> Tuple[HeaderList, List[str]]:
    """
    Build the outbound header set.

    Args:
        headers: upstream headers, as a mapping, an ``httpx.Headers`` or
            ``(name, value)`` pairs; Set-Cookie entries in it are dropped
        cookies: raw Set-Cookie values (individual or newline-folded)
        ctx: the current request's context
        cfg: the mirror configuration
        html: whether the body is HTML; derived from Content-Type when None

    Returns:
        ``(headers, cookie_lines)``: rewritten header pairs without any
        Set-Cookie, and the fixed cookie lines in their original order, to be
        appended one header per line.
    """
    pairs = _pairs(headers)
    if html is None:
        content_type = next(
            (v for k, v in pairs if k.lower() == "content-type"), ""
        )
        html = is_html_content_type(content_type)

    result: HeaderList = []
    for name, value in pairs:
        name_lower = name.lower()

        if name_lower in HOP_BY_HOP_HEADERS or name_lower == "set-cookie":
            continue
        if html and (
            name_lower == "content-security-policy"
            or name_lower in DECODED_BODY_HEADERS
        ):
            continue

        if name_lower == "location":
            value = rewrite_location(value, ctx, cfg)
        elif not html:
            if name_lower == "link":
                rewritten = _rewrite_link_header(value, ctx, cfg)
            else:
                rewritten = rewrite_url(value, ctx, cfg)
            if rewritten != value:
                logger.debug(f"[Headers] Rewrote {name}: {value!r} -> {rewritten!r}")
                value = rewritten

        result.append((name, value))

    cookie_lines = [
        fix_cookie_domain(line, cfg) for line in split_set_cookie_values(cookies)
    ]
    return result, cookie_lines
