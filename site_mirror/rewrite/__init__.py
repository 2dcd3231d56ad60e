from .config import (
    ConfigurationError,
    MirrorConfig,
    RewriteContext,
)
from .cookies import fix_cookie_domain, split_set_cookie_values
from .headers import (
    is_html_content_type,
    rewrite_location,
    rewrite_response_headers,
)
from .html_stream import (
    StreamingHtmlRewriter,
    transform_html_body,
)
from .url_policy import (
    UrlClass,
    classify_url,
    rewrite_url,
    rewrite_url_list,
)

__all__ = [
    "ConfigurationError",
    "MirrorConfig",
    "RewriteContext",
    "StreamingHtmlRewriter",
    "UrlClass",
    "classify_url",
    "fix_cookie_domain",
    "is_html_content_type",
    "rewrite_location",
    "rewrite_response_headers",
    "rewrite_url",
    "rewrite_url_list",
    "split_set_cookie_values",
    "transform_html_body",
]
