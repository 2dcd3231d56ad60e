"""
Immutable configuration and per-request context for the rewriting core.

``MirrorConfig`` is resolved once at startup and handed to every rewrite call.
``RewriteContext`` is built by the dispatcher for a single request/response.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Tuple, Union
from urllib.parse import urlsplit

OrderedMap = Tuple[Tuple[str, str], ...]

DEFAULT_PORTS = {"http": 80, "https": 443}


class ConfigurationError(ValueError):
    """Raised when the mirror configuration cannot be resolved."""


def url_host(scheme: str, hostname: Optional[str], port: Optional[int]) -> str:
    """Host the way a browser reports it: lowercased, default port omitted."""
    host = (hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    if port is not None and port != DEFAULT_PORTS.get(scheme.lower()):
        host = f"{host}:{port}"
    return host


def _ordered(entries: Union[Mapping[str, str], Iterable[Tuple[str, str]], None]) -> OrderedMap:
    if entries is None:
        return ()
    items = entries.items() if isinstance(entries, Mapping) else entries
    result = []
    for key, value in items:
        key = (key or "").strip().lower()
        if not key:
            raise ConfigurationError(f"Empty key in mapping entry ({key!r}, {value!r})")
        result.append((key, (value or "").strip()))
    return tuple(result)


@dataclass(frozen=True)
class MirrorConfig:
    """
    Resolved mirror configuration.

    Attributes:
        origin: scheme+host of the upstream, e.g. ``https://example.com``
        origin_path: upstream path prefix stripped from same-site URLs
        local_prefix: public path prefix that replaces ``origin_path``
        host_map: ordered ``(upstream_host, replacement_host)`` pairs
        cookie_domain_map: ordered ``(cookie_domain, replacement)`` pairs,
            an empty replacement strips the ``domain`` attribute
        timeout: upstream timeout in seconds
        drop_request_headers: lowercased request headers never forwarded
    """

    origin: str
    origin_path: str = ""
    local_prefix: str = ""
    host_map: OrderedMap = ()
    cookie_domain_map: OrderedMap = ()
    timeout: float = 300.0
    drop_request_headers: Tuple[str, ...] = ()

    @classmethod
    def create(
        cls,
        origin: str,
        origin_path: str = "",
        local_prefix: str = "",
        host_map=None,
        cookie_domain_map=None,
        timeout: float = 300.0,
        drop_request_headers: Iterable[str] = (),
    ) -> "MirrorConfig":
        """Validate and normalize raw values into a ``MirrorConfig``."""
        try:
            parts = urlsplit((origin or "").strip())
            port = parts.port
        except ValueError as e:
            raise ConfigurationError(f"Invalid ORIGIN {origin!r}: {e}") from e
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ConfigurationError(
                f"ORIGIN must be an absolute http(s) URL, got {origin!r}"
            )
        normalized_origin = f"{parts.scheme}://{url_host(parts.scheme, parts.hostname, port)}"

        return cls(
            origin=normalized_origin,
            origin_path=_normalize_prefix(origin_path),
            local_prefix=_normalize_prefix(local_prefix),
            host_map=_ordered(host_map),
            cookie_domain_map=_ordered(cookie_domain_map),
            timeout=float(timeout),
            drop_request_headers=tuple(
                h.strip().lower() for h in drop_request_headers if h and h.strip()
            ),
        )

    @property
    def origin_host(self) -> str:
        parts = urlsplit(self.origin)
        return url_host(parts.scheme, parts.hostname, parts.port)


def _normalize_prefix(prefix: str) -> str:
    prefix = (prefix or "").strip().rstrip("/")
    if prefix and not prefix.startswith("/"):
        prefix = "/" + prefix
    return prefix


@dataclass(frozen=True)
class RewriteContext:
    """Per-request values: the public origin the client used and the upstream URL."""

    request_origin: str
    target_url: str = ""
