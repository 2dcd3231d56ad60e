import logging
from functools import lru_cache
from typing import AsyncIterator, Dict, Optional

import httpx
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask

from site_mirror.rewrite import (
    MirrorConfig,
    RewriteContext,
    is_html_content_type,
    rewrite_response_headers,
    transform_html_body,
)
from site_mirror.rewrite.headers import HOP_BY_HOP_HEADERS
from site_mirror.utils.traced_requests import traced_request
from site_mirror.vars import (
    COOKIE_DOMAIN_MAP,
    DROP_REQUEST_HEADERS,
    HOST_MAP,
    LOCAL_PREFIX,
    ORIGIN,
    ORIGIN_PATH,
    PROXY_TIMEOUT,
    PUBLIC_URL,
)

router = APIRouter()
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Methods whose inbound body is not forwarded
BODYLESS_METHODS = {"GET", "HEAD"}

# Content encodings httpx decodes without optional extras; HTML must be decoded to be rewritten
DECODABLE_CONTENT_ENCODINGS = ("gzip", "deflate")


@lru_cache(maxsize=1)
def get_config() -> MirrorConfig:
    """Resolve the mirror configuration from the environment, once per process."""
    cfg = MirrorConfig.create(
        origin=ORIGIN,
        origin_path=ORIGIN_PATH,
        local_prefix=LOCAL_PREFIX,
        host_map=HOST_MAP,
        cookie_domain_map=COOKIE_DOMAIN_MAP,
        timeout=PROXY_TIMEOUT,
        drop_request_headers=DROP_REQUEST_HEADERS,
    )
    logger.info(
        f"Mirroring {cfg.origin}{cfg.origin_path} under {cfg.local_prefix or '/'} "
        f"({len(cfg.host_map)} host mappings, {len(cfg.cookie_domain_map)} cookie domain mappings)"
    )
    return cfg


def get_request_origin(request: Request) -> str:
    """Scheme and host the client used to reach the proxy."""
    if PUBLIC_URL:
        return PUBLIC_URL
    host = request.headers.get("host") or (
        request.client.host if request.client else "localhost"
    )
    return f"{request.url.scheme}://{host}"


def get_target_url(request: Request, cfg: MirrorConfig) -> str:
    """Map ``<local_prefix>/rest`` onto ``<origin><origin_path>/rest``, keeping the query."""
    path = request.url.path
    prefix = cfg.local_prefix
    if not prefix:
        suffix = path
    elif path == prefix or path.startswith(prefix + "/"):
        suffix = path[len(prefix):]
    else:
        suffix = ""

    upstream_path = f"{cfg.origin_path}{suffix}" or "/"
    query_string = str(request.url.query)
    if query_string:
        upstream_path = f"{upstream_path}?{query_string}"
    return f"{cfg.origin}{upstream_path}"


def upstream_accept_encoding(client_value: str) -> str:
    """
    Narrow the client's Accept-Encoding to codings the proxy can decode.
    Falls back to ``identity`` so httpx does not add its own default.
    """
    accepted = []
    for token in client_value.split(","):
        token = token.strip()
        coding = token.split(";", 1)[0].strip().lower()
        if coding in DECODABLE_CONTENT_ENCODINGS:
            accepted.append(token)
    return ", ".join(accepted) or "identity"


def is_decodable_encoding(content_encoding: str) -> bool:
    """Whether ``aiter_bytes`` yields plain bytes for this Content-Encoding."""
    codings = [c.strip().lower() for c in content_encoding.split(",") if c.strip()]
    return all(c == "identity" or c in DECODABLE_CONTENT_ENCODINGS for c in codings)


def prepare_headers(request: Request, cfg: MirrorConfig) -> Dict[str, str]:
    """
    Prepare headers for forwarding to the upstream.
    Removes hop-by-hop and configured headers and points Host at the upstream.
    """
    headers = {}
    for name, value in request.headers.items():
        name_lower = name.lower()
        if (
            name_lower in HOP_BY_HOP_HEADERS
            or name_lower in cfg.drop_request_headers
            or name_lower in ("host", "content-length", "accept-encoding")
        ):
            continue
        headers[name] = value

    headers["host"] = cfg.origin_host
    headers["accept-encoding"] = upstream_accept_encoding(
        request.headers.get("accept-encoding", "")
    )
    return headers


def create_client(cfg: MirrorConfig) -> httpx.AsyncClient:
    # Redirects are returned to the client so Location can be rewritten
    return httpx.AsyncClient(
        timeout=httpx.Timeout(cfg.timeout),
        follow_redirects=False,
    )


async def _close_upstream(response: httpx.Response, client: httpx.AsyncClient) -> None:
    await response.aclose()
    await client.aclose()


async def _guard_stream(
    chunks: AsyncIterator[bytes],
    target_url: str,
    response: httpx.Response,
    client: httpx.AsyncClient,
) -> AsyncIterator[bytes]:
    """
    Release the upstream when its body fails mid-stream, then re-raise so the
    server aborts the connection instead of ending a truncated body cleanly.
    """
    try:
        async for chunk in chunks:
            yield chunk
    except httpx.HTTPError as e:
        logger.error(f"Upstream body for {target_url} failed mid-stream: {e}")
        # The background task never runs when the body raises
        await _close_upstream(response, client)
        raise


async def forward_to_target(request: Request, cfg: Optional[MirrorConfig] = None) -> Response:
    """
    Forward the inbound request to the upstream and return the rewritten response.

    - Location, Set-Cookie and (for non-HTML) URL-valued headers are rewritten
    - HTML bodies are streamed through the attribute rewriter
    - other bodies are streamed byte for byte, still encoded
    """
    if cfg is None:
        if not ORIGIN:
            raise HTTPException(
                status_code=503,
                detail="ORIGIN is not configured. Proxy is unavailable.",
            )
        cfg = get_config()

    ctx = RewriteContext(
        request_origin=get_request_origin(request),
        target_url=get_target_url(request, cfg),
    )

    with traced_request(
        tracer,
        "proxy_request",
        request.method,
        ctx.target_url,
        f"Proxying {request.method} {request.url.path} -> {ctx.target_url}",
    ) as span:
        headers = prepare_headers(request, cfg)
        body = None if request.method in BODYLESS_METHODS else await request.body()

        client = create_client(cfg)
        try:
            upstream_request = client.build_request(
                method=request.method,
                url=ctx.target_url,
                headers=headers,
                content=body,
            )
            response = await client.send(upstream_request, stream=True)

        except httpx.TimeoutException as e:
            await client.aclose()
            logger.error(f"Proxy timeout for {ctx.target_url}: {e}")
            span.set_attribute("proxy.error", "timeout")
            raise HTTPException(status_code=504, detail="Gateway timeout")

        except httpx.HTTPError as e:
            await client.aclose()
            logger.error(f"Upstream fetch failed for {ctx.target_url}: {e}", exc_info=True)
            span.set_attribute("proxy.error", str(e))
            return PlainTextResponse(f"Upstream fetch failed: {e}", status_code=502)

        span.set_attribute("proxy.status_code", response.status_code)

        html = is_html_content_type(response.headers.get("content-type", ""))
        content_encoding = response.headers.get("content-encoding", "")
        if html and not is_decodable_encoding(content_encoding):
            logger.warning(
                f"Cannot decode {content_encoding!r} HTML from {ctx.target_url}, passing it through unrewritten"
            )
            html = False
        span.set_attribute("proxy.html_rewrite", html)

        response_headers, cookie_lines = rewrite_response_headers(
            response.headers,
            response.headers.get_list("set-cookie"),
            ctx,
            cfg,
            html=html,
        )
        if "location" in response.headers:
            span.set_attribute(
                "proxy.rewritten_location",
                next((v for k, v in response_headers if k.lower() == "location"), ""),
            )

        if html:
            # aiter_bytes decodes Content-Encoding; the headers were adjusted for it
            chunks = transform_html_body(response.aiter_bytes(), ctx, cfg)
        else:
            chunks = response.aiter_raw()

        streaming = StreamingResponse(
            _guard_stream(chunks, ctx.target_url, response, client),
            status_code=response.status_code,
            background=BackgroundTask(_close_upstream, response, client),
        )
        for name, value in response_headers:
            streaming.headers.append(name, value)
        for line in cookie_lines:
            streaming.headers.append("set-cookie", line)
        return streaming


# Register catch-all route for proxying
@router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"],
)
async def proxy_all(request: Request, path: str):
    """Catch-all route that mirrors every request onto the upstream."""
    return await forward_to_target(request)
