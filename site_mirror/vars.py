import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "site-mirror")

ORIGIN = os.environ.get("ORIGIN", "").rstrip("/")
ORIGIN_PATH = os.environ.get("ORIGIN_PATH", "")
LOCAL_PREFIX = os.environ.get("LOCAL_PREFIX", "/a")
PUBLIC_URL = os.environ.get("PUBLIC_URL", "").rstrip("/")  # Public-facing origin for rewrites
PROXY_TIMEOUT = int(os.environ.get("PROXY_TIMEOUT", "300"))  # 5 minutes default

# Request headers that are never forwarded upstream
DROP_REQUEST_HEADERS = [
    h.strip().lower()
    for h in os.getenv("DROP_REQUEST_HEADERS", "cf-connecting-ip").split(",")
    if h.strip()
]

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")


def _parse_ordered_map(raw: str, allow_empty_values: bool = False) -> tuple:
    """
    Parse ``key=value,key=value`` into ordered ``(key, value)`` pairs.

    Order is kept because lookups are first-match. With ``allow_empty_values``
    an entry like ``key=`` is kept with an empty value.
    """
    mapping = []
    if not raw:
        return tuple(mapping)
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" in entry:
            key, val = entry.split("=", 1)
            key = key.strip()
            val = val.strip()
            if key and (val or allow_empty_values):
                mapping.append((key, val))
    return tuple(mapping)


HOST_MAP = _parse_ordered_map(os.getenv("HOST_MAP", ""))
COOKIE_DOMAIN_MAP = _parse_ordered_map(
    os.getenv("COOKIE_DOMAIN_MAP", ""), allow_empty_values=True
)
