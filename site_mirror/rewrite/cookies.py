"""
Set-Cookie domain rewriting.

Only the ``domain=`` attribute of a cookie line is touched; every other byte
of the line is kept as sent by the upstream.
"""

import logging
import re
from typing import Iterable, List, Optional

from site_mirror.rewrite.config import MirrorConfig

logger = logging.getLogger("uvicorn.error")

_DOMAIN_ATTR_RE = re.compile(r"(;\s*domain=)([^;]+)", re.IGNORECASE)
_LINE_SPLIT_RE = re.compile(r"\r?\n")


def split_set_cookie_values(values: Iterable[str]) -> List[str]:
    """
    Normalize Set-Cookie header values into one line per cookie.

    Transports either expose each header separately or fold several into
    one value separated by newlines. Commas are never used as a separator
    because ``Expires`` dates contain them.
    """
    lines: List[str] = []
    for value in values or ():
        if not value:
            continue
        for line in _LINE_SPLIT_RE.split(value):
            line = line.strip()
            if line:
                lines.append(line)
    return lines


def lookup_cookie_domain(domain: str, cfg: MirrorConfig) -> Optional[str]:
    """
    Ordered first match over ``cookie_domain_map``, then the upstream host.

    Returns ``None`` when nothing applies.
    """
    for key, mapped in cfg.cookie_domain_map:
        if domain == key or domain.endswith("." + key):
            return mapped
    for key, mapped in cfg.cookie_domain_map:
        if key == cfg.origin_host:
            return mapped
    return None


def fix_cookie_domain(cookie_line: str, cfg: MirrorConfig) -> str:
    """Rewrite or strip the ``domain`` attribute of a single Set-Cookie line."""
    match = _DOMAIN_ATTR_RE.search(cookie_line)
    if not match:
        return cookie_line

    raw_value = match.group(2)
    domain = raw_value.strip().lower()
    mapped = lookup_cookie_domain(domain, cfg)

    if not mapped:
        logger.debug(f"[Cookies] Stripping domain={domain!r} from cookie")
        return cookie_line[: match.start()] + cookie_line[match.end():]

    trailing = raw_value[len(raw_value.rstrip()):]
    return (
        cookie_line[: match.start(2)]
        + mapped
        + trailing
        + cookie_line[match.end(2):]
    )
