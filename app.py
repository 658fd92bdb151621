from __future__ import annotations

import logging
import os
import random
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import requests
from fastapi import Depends, FastAPI, Form, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from fastapi.templating import Jinja2Templates
from prometheus_client import Counter
from prometheus_fastapi_instrumentator import Instrumentator

from rewriting import (
    DEFAULT_MAX_REWRITE_BYTES,
    DEFAULT_TARGET_PARAM,
    RewriteContext,
    classify_content,
    deproxify,
    resolve_reference,
    rewrite_html_stream,
    rewrite_text_body,
)
from storage import CachedResponse, RateLimitStore, ResponseCache, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("app")
access_logger = logging.getLogger("proxy.access")

app = FastAPI(title="Edge Rewriter")
instrumentator = Instrumentator(excluded_handlers=["/healthz", "/admin/metrics"])
instrumentator.instrument(app)
templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))

CHUNK_SIZE = 64 * 1024
API_KEY_HEADER = "X-API-Key"
API_KEY_PARAM = "key"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0 Safari/537.36"
)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
BODYLESS_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
CLIENT_IDENTITY_HEADERS = {
    "host",
    "forwarded",
    "via",
    "x-real-ip",
    "x-client-ip",
    "true-client-ip",
    "fastly-client-ip",
}
CLIENT_IDENTITY_PREFIXES = ("x-forwarded-", "cf-")
CREDENTIAL_HEADERS = {"cookie", "authorization"}

STRIPPED_RESPONSE_HEADERS = {
    "content-encoding",
    "content-length",
    "transfer-encoding",
    "connection",
    "keep-alive",
    "alt-svc",
    "x-frame-options",
    "x-xss-protection",
    "strict-transport-security",
}
CSP_HEADERS = {"content-security-policy", "content-security-policy-report-only"}

SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
COLLAPSED_SCHEME_RE = re.compile(r"^(https?):/+(?=[^/])", re.IGNORECASE)


# ------------------------------------------------------------------------------
# Configuration
# ------------------------------------------------------------------------------

def as_bool(value: str | None, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def parse_allowed_hosts(value: str | None) -> FrozenSet[str]:
    if not value:
        return frozenset()
    return frozenset(host.strip().lower() for host in re.split(r"[\s,]+", value) if host.strip())


@dataclass(frozen=True)
class ProxyConfig:
    api_key: str
    allowed_hosts: FrozenSet[str]
    rate_limit: int
    cache_ttl: int
    max_rewrite_bytes: int
    log_sample_rate: float
    target_param: str
    public_origin: str
    trust_forwarded: bool
    open_cors: bool
    strip_set_cookie: bool
    forward_credentials: bool
    upstream_timeout: float
    db_path: str
    user_agent: str


def load_config_map(environ: Mapping[str, str] = os.environ) -> Dict[str, str]:
    return {key[len("PROXY_"):].lower(): value for key, value in environ.items() if key.startswith("PROXY_")}


def build_proxy_config(config_map: Dict[str, str]) -> ProxyConfig:
    api_key = (config_map.get("api_key") or "").strip()

    requested_timeout = as_float(config_map.get("upstream_timeout"), default=30.0)
    upstream_timeout = max(5.0, min(120.0, requested_timeout))
    if upstream_timeout != requested_timeout:
        logger.warning(
            "Clamping upstream timeout from %s to %s seconds",
            requested_timeout,
            upstream_timeout,
        )

    requested_rate = as_float(config_map.get("log_sample_rate"), default=1.0)
    log_sample_rate = max(0.0, min(1.0, requested_rate))
    if log_sample_rate != requested_rate:
        logger.warning("Clamping log sample rate from %s to %s", requested_rate, log_sample_rate)

    return ProxyConfig(
        api_key=api_key,
        allowed_hosts=parse_allowed_hosts(config_map.get("allowed_hosts")),
        rate_limit=max(0, as_int(config_map.get("rate_limit"), default=120)),
        cache_ttl=max(0, as_int(config_map.get("cache_ttl"), default=3600)),
        max_rewrite_bytes=max(0, as_int(config_map.get("max_rewrite_bytes"), default=DEFAULT_MAX_REWRITE_BYTES)),
        log_sample_rate=log_sample_rate,
        target_param=(config_map.get("target_param") or DEFAULT_TARGET_PARAM).strip(),
        public_origin=(config_map.get("public_origin") or "").strip().rstrip("/"),
        trust_forwarded=as_bool(config_map.get("trust_forwarded"), default=False),
        open_cors=as_bool(config_map.get("open_cors"), default=not api_key),
        strip_set_cookie=as_bool(config_map.get("strip_set_cookie"), default=True),
        forward_credentials=as_bool(config_map.get("forward_credentials"), default=False),
        upstream_timeout=upstream_timeout,
        db_path=(config_map.get("db_path") or "proxy.db").strip(),
        user_agent=(config_map.get("user_agent") or DEFAULT_USER_AGENT).strip(),
    )


# ------------------------------------------------------------------------------
# Logging & metrics
# ------------------------------------------------------------------------------

class SamplingFilter(logging.Filter):
    """Let through a fraction of records below WARNING; warnings and errors always pass."""

    def __init__(self, rate: float) -> None:
        super().__init__()
        self.rate = rate

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING or self.rate >= 1.0:
            return True
        return random.random() < self.rate


def install_access_sampling(rate: float) -> None:
    for existing in list(access_logger.filters):
        if isinstance(existing, SamplingFilter):
            access_logger.removeFilter(existing)
    access_logger.addFilter(SamplingFilter(rate))


PROXY_EVENTS = Counter(
    "proxy_events",
    "Proxy pipeline events by kind (requests, cache hits and misses, rewrites, errors).",
    ["kind"],
)


def record_metric(kind: str, amount: int = 1) -> None:
    PROXY_EVENTS.labels(kind=kind).inc(amount)


# ------------------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------------------

class ProxyError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def headers(self) -> Dict[str, str]:
        return {}


class InvalidTarget(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthorized(ProxyError):
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(ProxyError):
    status_code = status.HTTP_403_FORBIDDEN


class RateLimited(ProxyError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str, limit: int, remaining: int, retry_after: int) -> None:
        super().__init__(message)
        self.limit = limit
        self.remaining = remaining
        self.retry_after = retry_after

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "Retry-After": str(self.retry_after),
        }


class UpstreamUnreachable(ProxyError):
    status_code = status.HTTP_502_BAD_GATEWAY


@app.exception_handler(ProxyError)
async def handle_proxy_error(request: Request, exc: ProxyError) -> PlainTextResponse:
    if isinstance(exc, RateLimited):
        record_metric("rate_limited")
    elif isinstance(exc, UpstreamUnreachable):
        record_metric("upstream_errors")
    return PlainTextResponse(exc.message, status_code=exc.status_code, headers=exc.headers())


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> PlainTextResponse:
    logger.exception("Unhandled error for %s %s: %s", request.method, request.url.path, exc)
    record_metric("errors")
    return PlainTextResponse("Proxy error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


# ------------------------------------------------------------------------------
# Startup & dependencies
# ------------------------------------------------------------------------------

def configure(config: ProxyConfig) -> None:
    init_db(config.db_path)
    app.state.config = config
    app.state.rate_limits = RateLimitStore(config.db_path)
    app.state.cache = ResponseCache(config.db_path)
    install_access_sampling(config.log_sample_rate)
    logger.info(
        "Proxy configured (auth=%s, allow-list=%d hosts, rate limit=%d/min, cache ttl=%ds)",
        "on" if config.api_key else "off",
        len(config.allowed_hosts),
        config.rate_limit,
        config.cache_ttl,
    )


@app.on_event("startup")
def on_startup() -> None:
    configure(build_proxy_config(load_config_map()))


def get_config(request: Request) -> ProxyConfig:
    return request.app.state.config


def client_identity(request: Request, config: ProxyConfig) -> str:
    if config.trust_forwarded:
        forwarded_for = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded_for.split(",", 1)[0].strip()
        if first_hop:
            return first_hop
    if request.client is not None and request.client.host:
        return request.client.host
    return "anonymous"


def verify_api_key(request: Request, config: ProxyConfig = Depends(get_config)) -> str:
    """Check the pre-shared key and return the caller's identity."""
    if config.api_key:
        presented = request.headers.get(API_KEY_HEADER) or request.query_params.get(API_KEY_PARAM) or ""
        if not secrets.compare_digest(presented.encode("utf-8"), config.api_key.encode("utf-8")):
            raise Unauthorized("Unauthorized")
    return client_identity(request, config)


def enforce_rate_limit(
    request: Request,
    identity: str = Depends(verify_api_key),
    config: ProxyConfig = Depends(get_config),
) -> str:
    if config.rate_limit <= 0:
        return identity
    now = time.time()
    store: RateLimitStore = request.app.state.rate_limits
    try:
        result = store.hit(identity, config.rate_limit, now=now)
    except Exception as exc:
        logger.exception("Rate limit store unavailable; allowing request from %s: %s", identity, exc)
        return identity
    if not result.allowed:
        logger.warning("Rate limit exceeded for %s (%d/%d)", identity, result.count, result.limit)
        raise RateLimited(
            "Rate limit exceeded",
            limit=result.limit,
            remaining=result.remaining,
            retry_after=result.retry_after(now),
        )
    request.state.rate_limit = result
    return identity


# ------------------------------------------------------------------------------
# Target resolution
# ------------------------------------------------------------------------------

def strip_query_param(query: str, name: str) -> str:
    kept = [part for part in query.split("&") if part and part.split("=", 1)[0] != name]
    return "&".join(kept)


def extract_target(request: Request, path: str, config: ProxyConfig) -> Optional[str]:
    """Return the raw target from the query parameter, else from the path remainder."""
    raw = request.query_params.get(config.target_param)
    if raw and raw.strip():
        return raw.strip()
    if not path:
        return None
    raw_path = request.scope.get("raw_path")
    remainder = raw_path.decode("latin-1").split("?", 1)[0].lstrip("/") if raw_path else path
    target = COLLAPSED_SCHEME_RE.sub(r"\1://", remainder)
    query = strip_query_param(request.url.query, API_KEY_PARAM)
    if query:
        target = f"{target}?{query}"
    return target


def resolve_target(raw: str, allowed_hosts: FrozenSet[str]) -> str:
    candidate = raw.strip()
    if not candidate:
        raise InvalidTarget("Missing target URL")
    if not SCHEME_RE.match(candidate):
        candidate = "https://" + candidate.lstrip("/")
    try:
        parts = urlsplit(candidate)
        parts.port
    except ValueError:
        raise InvalidTarget(f"Invalid target URL: {raw}")
    if parts.scheme.lower() not in {"http", "https"} or not parts.hostname:
        raise InvalidTarget(f"Invalid target URL: {raw}")
    if any(char.isspace() for char in parts.netloc):
        raise InvalidTarget(f"Invalid target URL: {raw}")
    if allowed_hosts and parts.hostname.lower() not in allowed_hosts:
        raise Forbidden(f"Host not allowed: {parts.hostname}")
    return parts.geturl()


def proxy_origin(request: Request, config: ProxyConfig) -> str:
    if config.public_origin:
        return config.public_origin
    scheme = request.url.scheme
    host = request.headers.get("host") or request.url.netloc
    if config.trust_forwarded:
        scheme = request.headers.get("x-forwarded-proto", scheme).split(",", 1)[0].strip()
        host = request.headers.get("x-forwarded-host", host).split(",", 1)[0].strip()
    return f"{scheme}://{host}"


# ------------------------------------------------------------------------------
# Outbound request
# ------------------------------------------------------------------------------

def build_outbound_headers(
    headers: Iterable[Tuple[str, str]],
    target: str,
    config: ProxyConfig,
) -> Dict[str, str]:
    items = list(headers)
    target_parts = urlsplit(target)
    connection_tokens = set()
    for name, value in items:
        if name.lower() == "connection":
            connection_tokens.update(token.strip().lower() for token in value.split(",") if token.strip())

    outbound: Dict[str, str] = {}
    for name, value in items:
        lowered = name.lower()
        if (
            lowered in HOP_BY_HOP_HEADERS
            or lowered in connection_tokens
            or lowered in CLIENT_IDENTITY_HEADERS
            or lowered.startswith(CLIENT_IDENTITY_PREFIXES)
            or lowered in {"content-length", "accept-encoding", API_KEY_HEADER.lower()}
        ):
            continue
        if lowered == "referer":
            # Only a referer that is itself a proxied page can be translated back.
            referer = deproxify(value, config.target_param)
            if referer:
                outbound[name] = referer
            continue
        if lowered == "origin":
            outbound[name] = f"{target_parts.scheme}://{target_parts.netloc}"
            continue
        if lowered in CREDENTIAL_HEADERS and not config.forward_credentials:
            continue
        outbound[name] = value
    if not any(name.lower() == "user-agent" for name in outbound):
        outbound["User-Agent"] = config.user_agent
    return outbound


def fetch_upstream(
    method: str,
    target: str,
    headers: Dict[str, str],
    body: Optional[bytes],
    config: ProxyConfig,
) -> requests.Response:
    logger.info("Proxying %s %s", method, target)
    try:
        return requests.request(
            method=method,
            url=target,
            headers=headers,
            data=body if method not in BODYLESS_METHODS else None,
            stream=True,
            allow_redirects=False,
            timeout=config.upstream_timeout,
        )
    except requests.exceptions.RequestException as exc:
        logger.warning("Error connecting to %s: %s", target, exc)
        raise UpstreamUnreachable("Upstream unreachable")


# ------------------------------------------------------------------------------
# Response headers & redirects
# ------------------------------------------------------------------------------

def relax_csp(policy: str) -> Optional[str]:
    """Drop the frame-ancestors directive; ``None`` when nothing else is left."""
    kept = []
    for directive in policy.split(";"):
        directive = directive.strip()
        if not directive or directive.split()[0].lower() == "frame-ancestors":
            continue
        kept.append(directive)
    return "; ".join(kept) or None


def upstream_header_items(upstream: requests.Response) -> List[Tuple[str, str]]:
    return list(upstream.raw.headers.items())


def sanitize_response_headers(items: Iterable[Tuple[str, str]], config: ProxyConfig) -> List[Tuple[str, str]]:
    sanitized: List[Tuple[str, str]] = []
    for name, value in items:
        lowered = name.lower()
        if lowered in STRIPPED_RESPONSE_HEADERS or lowered == "x-content-type-options":
            continue
        if lowered == "set-cookie" and config.strip_set_cookie:
            continue
        if lowered in CSP_HEADERS:
            relaxed = relax_csp(value)
            if relaxed:
                sanitized.append((name, relaxed))
            continue
        if config.open_cors and lowered.startswith("access-control-"):
            continue
        sanitized.append((name, value))

    sanitized.append(("X-Content-Type-Options", "nosniff"))
    if config.open_cors:
        sanitized.append(("Access-Control-Allow-Origin", "*"))
        sanitized.append(("Access-Control-Allow-Headers", "*"))
        sanitized.append(("Access-Control-Allow-Methods", ", ".join(PROXY_METHODS)))
    return sanitized


def build_response(
    status_code: int,
    headers: Iterable[Tuple[str, str]],
    content: Optional[bytes] = None,
    stream: Optional[Iterator[bytes]] = None,
) -> Response:
    if stream is not None:
        response: Response = StreamingResponse(stream, status_code=status_code)
    else:
        response = Response(content=content or b"", status_code=status_code)
    for name, value in headers:
        response.headers.append(name, value)
    return response


def intercept_redirect(
    status_code: int,
    items: List[Tuple[str, str]],
    context: RewriteContext,
    config: ProxyConfig,
) -> Optional[Response]:
    if not 300 <= status_code < 400:
        return None
    location = next((value for name, value in items if name.lower() == "location"), None)
    if not location:
        return None
    absolute = resolve_reference(location, context.base)
    if absolute is None:
        logger.info("Passing through unresolvable redirect to %r", location)
        return None
    proxied = context.proxify(absolute)
    logger.info("Rewriting redirect %s -> %s", location, proxied)
    remaining = [(name, value) for name, value in items if name.lower() != "location"]
    headers = sanitize_response_headers(remaining, config)
    headers.append(("Location", proxied))
    return build_response(status_code, headers)


# ------------------------------------------------------------------------------
# Bodies
# ------------------------------------------------------------------------------

def iter_upstream(upstream: requests.Response) -> Iterator[bytes]:
    try:
        for chunk in upstream.iter_content(chunk_size=CHUNK_SIZE):
            if chunk:
                yield chunk
    except requests.exceptions.RequestException as exc:
        logger.warning("Upstream stream from %s ended early: %s", upstream.url, exc)
        raise
    finally:
        upstream.close()


def read_limited(chunks: Iterator[bytes], limit: int) -> Tuple[bytes, bool]:
    """Read up to ``limit + 1`` bytes; the flag says whether the limit was exceeded."""
    collected: List[bytes] = []
    size = 0
    for chunk in chunks:
        collected.append(chunk)
        size += len(chunk)
        if size > limit:
            return b"".join(collected), True
    return b"".join(collected), False


def replay(head: bytes, rest: Iterator[bytes]) -> Iterator[bytes]:
    if head:
        yield head
    yield from rest


def tee_to_cache(chunks: Iterator[bytes], limit: int, on_complete) -> Iterator[bytes]:
    collected: List[bytes] = []
    size = 0
    keep = True
    for chunk in chunks:
        if keep:
            size += len(chunk)
            if size > limit:
                keep = False
                collected = []
            else:
                collected.append(chunk)
        yield chunk
    if keep:
        on_complete(b"".join(collected))


def is_cache_eligible(request: Request, config: ProxyConfig) -> bool:
    if config.cache_ttl <= 0 or request.method != "GET":
        return False
    return "text/html" not in request.headers.get("accept", "").lower()


def rate_limit_headers(request: Request) -> List[Tuple[str, str]]:
    result = getattr(request.state, "rate_limit", None)
    if result is None:
        return []
    return [
        ("X-RateLimit-Limit", str(result.limit)),
        ("X-RateLimit-Remaining", str(result.remaining)),
    ]


def cached_response(entry: CachedResponse, extra: List[Tuple[str, str]]) -> Response:
    age = max(0, int(time.time() - entry.stored_at))
    headers = entry.headers + extra + [("X-Cache", "HIT"), ("Age", str(age))]
    return build_response(entry.status, headers, content=entry.body)


# ------------------------------------------------------------------------------
# Admin routes
# ------------------------------------------------------------------------------

@app.get("/healthz")
async def healthz() -> JSONResponse:
    return JSONResponse({"status": "ok"})


@app.post("/admin/purge")
async def purge_cache_url(
    request: Request,
    url: str = Form(...),
    identity: str = Depends(verify_api_key),
    config: ProxyConfig = Depends(get_config),
) -> JSONResponse:
    target = resolve_target(url, frozenset())
    cache: ResponseCache = request.app.state.cache
    removed = await run_in_threadpool(cache.purge, target)
    logger.info("Cache purge for %s requested by %s", target, identity)
    return JSONResponse({"purged": removed, "url": target})


instrumentator.expose(
    app,
    endpoint="/admin/metrics",
    include_in_schema=False,
    dependencies=[Depends(verify_api_key)],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed = (time.time() - start) * 1000
    access_logger.info(
        "%s %s -> %s (%.1f ms)",
        request.method,
        request.url.path,
        response.status_code,
        elapsed,
    )
    return response


# ------------------------------------------------------------------------------
# Proxy endpoint
# ------------------------------------------------------------------------------

@app.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy_site(
    path: str,
    request: Request,
    identity: str = Depends(enforce_rate_limit),
    config: ProxyConfig = Depends(get_config),
) -> Response:
    raw_target = extract_target(request, path, config)
    if raw_target is None:
        return templates.TemplateResponse(request, "index.html", {"param": config.target_param})

    target = resolve_target(raw_target, config.allowed_hosts)
    context = RewriteContext(
        base=target,
        origin=proxy_origin(request, config),
        max_bytes=config.max_rewrite_bytes,
        param=config.target_param,
    )
    limit_headers = rate_limit_headers(request)
    record_metric("requests")

    cache: ResponseCache = request.app.state.cache
    cacheable = is_cache_eligible(request, config)
    if cacheable:
        try:
            entry = await run_in_threadpool(cache.get, target, identity)
        except Exception as exc:
            logger.exception("Cache lookup failed for %s: %s", target, exc)
            entry = None
        if entry is not None:
            record_metric("cache_hits")
            logger.info("Serving cached response for %s", target)
            return cached_response(entry, limit_headers)

    body = None if request.method in BODYLESS_METHODS else await request.body()
    outbound_headers = build_outbound_headers(request.headers.items(), target, config)
    upstream = await run_in_threadpool(fetch_upstream, request.method, target, outbound_headers, body, config)

    items = upstream_header_items(upstream)
    redirect = intercept_redirect(upstream.status_code, items, context, config)
    if redirect is not None:
        upstream.close()
        record_metric("redirects")
        for name, value in limit_headers:
            redirect.headers.append(name, value)
        return redirect

    headers = sanitize_response_headers(items, config)
    content_type = upstream.headers.get("Content-Type")
    kind = classify_content(content_type, urlsplit(target).path)
    chunks = iter_upstream(upstream)
    cacheable = cacheable and upstream.status_code == 200 and kind != "html"

    stored_headers = list(headers)

    def store(payload: bytes) -> None:
        try:
            cache.put(target, identity, upstream.status_code, stored_headers, payload, config.cache_ttl)
        except Exception as exc:
            logger.exception("Failed to cache response for %s: %s", target, exc)

    if cacheable:
        record_metric("cache_misses")
        headers.append(("X-Cache", "MISS"))

    if kind == "html":
        record_metric("rewrites_html")
        stream = rewrite_html_stream(chunks, context, content_type)
        return build_response(upstream.status_code, headers + limit_headers, stream=stream)

    if kind is not None:
        try:
            head, exceeded = await run_in_threadpool(read_limited, chunks, config.max_rewrite_bytes)
        except requests.exceptions.RequestException:
            raise UpstreamUnreachable("Upstream closed the connection")
        if exceeded:
            logger.info("Skipping %s rewrite for %s: body exceeds %d bytes", kind, target, config.max_rewrite_bytes)
            return build_response(upstream.status_code, headers + limit_headers, stream=replay(head, chunks))
        record_metric(f"rewrites_{kind}")
        rewritten = rewrite_text_body(kind, head, context, content_type)
        if cacheable:
            await run_in_threadpool(store, rewritten)
        return build_response(upstream.status_code, headers + limit_headers, content=rewritten)

    if cacheable:
        chunks = tee_to_cache(chunks, config.max_rewrite_bytes, store)
    return build_response(upstream.status_code, headers + limit_headers, stream=chunks)


# expose ASGI app
application = app

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
