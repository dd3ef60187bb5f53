from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.requests import ClientDisconnect

from copilot_override import __version__
from copilot_override.catalog import build_models_response
from copilot_override.config import RouteKind, ServiceConfig, load_service_config
from copilot_override.errors import AuthConfigurationError, InvalidInboundBody
from copilot_override.gateway.auth import PathTokenAuthenticator
from copilot_override.gateway.client import ResilientClient, RetryPolicy
from copilot_override.gateway.context import InboundContext
from copilot_override.gateway.proxy import (
    CompletionProxy,
    ResponseRelay,
    proxy_error_response,
)
from copilot_override.gateway.rate_limiter import TokenBucketRateLimiter
from copilot_override.metrics import (
    PROMETHEUS_CONTENT_TYPE,
    UNMATCHED_ROUTE,
    RequestMetrics,
    render_prometheus_metrics,
)
from copilot_override.settings import Settings, get_settings

CHAT_COMPLETION_PATHS = ("/v1/chat/completions", "/v1/v1/chat/completions")
CODE_COMPLETION_PATHS = (
    "/v1/engines/copilot-codex/completions",
    "/v1/v1/engines/copilot-codex/completions",
)

app = FastAPI(
    title="Copilot Override",
    description="Copilot-compatible completion proxy for alternative model providers.",
    version=__version__,
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def request_metrics_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        request_metrics: RequestMetrics | None = getattr(
            app.state, "request_metrics", None
        )
        if request_metrics is not None:
            route = request.scope.get("route")
            request_metrics.record_request(
                method=request.method,
                route=getattr(route, "path", UNMATCHED_ROUTE),
                status=status_code,
                duration_seconds=time.perf_counter() - started,
            )


def _build_http_client(config: ServiceConfig, settings: Settings) -> httpx.AsyncClient:
    timeout = float(config.timeout)
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=timeout,
            connect=max(0.1, min(settings.connect_timeout_seconds, timeout)),
        ),
        limits=httpx.Limits(
            max_connections=512,
            max_keepalive_connections=100,
            keepalive_expiry=90.0,
        ),
        http2=_can_enable_http2(),
        proxy=config.proxy_url or None,
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    config = load_service_config(settings.service_config_path)
    if not settings.release_mode:
        logger.info(
            "loaded service config path=%s\n==========\n%s==========",
            settings.service_config_path,
            config.describe(),
        )

    rate_limiter = TokenBucketRateLimiter(rate=config.requests_per_sec, burst=1)
    http_client = _build_http_client(config, settings)
    request_metrics = RequestMetrics()
    resilient_client = ResilientClient(
        http_client,
        rate_limiter,
        RetryPolicy(
            max_attempts=max(1, settings.retry_max_attempts),
            initial_delay_seconds=max(0.0, settings.retry_initial_delay_seconds),
            max_delay_seconds=max(0.0, settings.retry_max_delay_seconds),
        ),
        metrics=request_metrics,
    )
    relay = ResponseRelay(log_bodies=settings.body_logging_enabled)

    app.state.settings = settings
    app.state.service_config = config
    app.state.authenticator = PathTokenAuthenticator(config.auth_token)
    app.state.rate_limiter = rate_limiter
    app.state.http_client = http_client
    app.state.request_metrics = request_metrics
    app.state.completion_proxies = {
        kind: CompletionProxy(config.route(kind), resilient_client, relay)
        for kind in RouteKind
    }
    logger.info(
        "startup complete auth_required=%s requests_per_sec=%d",
        app.state.authenticator.required,
        config.requests_per_sec,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    rate_limiter: TokenBucketRateLimiter | None = getattr(app.state, "rate_limiter", None)
    if rate_limiter is not None:
        rate_limiter.close()
    http_client: httpx.AsyncClient | None = getattr(app.state, "http_client", None)
    if http_client is not None:
        await http_client.aclose()
    logger.info("shutdown complete")


@app.get("/_ping")
async def ping() -> dict[str, Any]:
    return {"now": datetime.now().second, "status": "ok", "ns1": "200 OK"}


@app.get("/models")
@app.get("/v1/models")
async def models() -> dict[str, Any]:
    config: ServiceConfig = app.state.service_config
    return build_models_response(config)


async def _read_body(request: Request, limit: int) -> bytes:
    chunks: list[bytes] = []
    size = 0
    try:
        async for chunk in request.stream():
            size += len(chunk)
            if size > limit:
                raise InvalidInboundBody(f"Request body exceeds {limit} bytes.")
            chunks.append(chunk)
    except ClientDisconnect as exc:
        raise InvalidInboundBody("Client disconnected while sending the body.") from exc
    return b"".join(chunks)


def _check_path_token(request: Request) -> Response | None:
    authenticator: PathTokenAuthenticator = app.state.authenticator
    has_token_segment = "token" in request.path_params
    if authenticator.required != has_token_segment:
        raise HTTPException(status_code=404, detail="Not Found")
    return authenticator.authenticate_request(request)


async def _proxy_completion(request: Request, kind: RouteKind) -> Response:
    auth_error = _check_path_token(request)
    if auth_error is not None:
        return auth_error

    settings: Settings = app.state.settings
    config: ServiceConfig = app.state.service_config
    proxy: CompletionProxy = app.state.completion_proxies[kind]
    context = InboundContext(timeout_seconds=float(config.timeout))

    # the body is still unread here, so a caller that disconnects while waiting
    # for a permit is only released by the deadline
    rejection = await proxy.admit(context)
    if rejection is not None:
        return rejection

    try:
        body = await _read_body(request, settings.max_request_body_bytes)
    except InvalidInboundBody as exc:
        logger.error("read_request_body_failed route=%s error=%s", kind.value, exc)
        return proxy_error_response(kind, exc)

    if settings.body_logging_enabled:
        logger.info(
            "request_body route=%s body=%s",
            kind.value,
            body.decode("utf-8", errors="replace"),
        )

    async with context.watch_disconnect(request):
        return await proxy.forward(body, context, admitted=True)


async def chat_completions(request: Request) -> Response:
    return await _proxy_completion(request, RouteKind.CHAT)


async def code_completions(request: Request) -> Response:
    return await _proxy_completion(request, RouteKind.CODE)


for _path in CHAT_COMPLETION_PATHS:
    app.add_api_route(_path, chat_completions, methods=["POST"])
for _path in CODE_COMPLETION_PATHS:
    app.add_api_route(_path, code_completions, methods=["POST"])
for _path in CHAT_COMPLETION_PATHS:
    app.add_api_route("/{token}" + _path, chat_completions, methods=["POST"])
for _path in CODE_COMPLETION_PATHS:
    app.add_api_route("/{token}" + _path, code_completions, methods=["POST"])


@app.get("/metrics")
async def metrics() -> PlainTextResponse:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics endpoint is disabled.")

    request_metrics: RequestMetrics | None = getattr(app.state, "request_metrics", None)
    rate_limiter: TokenBucketRateLimiter | None = getattr(app.state, "rate_limiter", None)
    payload = render_prometheus_metrics(
        request_metrics or RequestMetrics(),
        rate_limiter_tokens=rate_limiter.available_tokens if rate_limiter else None,
    )
    return PlainTextResponse(content=payload, media_type=PROMETHEUS_CONTENT_TYPE)


@app.exception_handler(FileNotFoundError)
async def config_missing_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(AuthConfigurationError)
async def auth_config_handler(_: Request, exc: AuthConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def _can_enable_http2() -> bool:
    try:
        import h2  # noqa: F401
    except Exception:
        return False
    return True
