from __future__ import annotations

import logging
from typing import AsyncIterator

import httpx
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from copilot_override.config import RouteConfig, RouteKind
from copilot_override.errors import (
    ProxyError,
    RequestTimeout,
    UpstreamHTTPError,
)
from copilot_override.gateway.client import ResilientClient
from copilot_override.gateway.context import InboundContext
from copilot_override.transform.pipelines import RequestTransformer

logger = logging.getLogger("uvicorn.error")

CODE_ABORT_BODY = "data: [DONE]\n"
PROXY_FAILURE_MESSAGE = "Proxy request failed."


def build_upstream_headers(
    api_key: str,
    organization: str | None = None,
    project: str | None = None,
) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
    }
    if organization:
        headers["OpenAI-Organization"] = organization
    if project:
        headers["OpenAI-Project"] = project
    return headers


def build_upstream_request(
    client: httpx.AsyncClient,
    route: RouteConfig,
    body: bytes,
) -> httpx.Request:
    return client.build_request(
        method="POST",
        url=route.completions_url,
        content=body,
        headers=build_upstream_headers(
            api_key=route.api_key,
            organization=route.organization,
            project=route.project,
        ),
    )


def error_response(kind: RouteKind, status_code: int, error_type: str) -> Response:
    """Caller-facing failure for ``kind``; never carries upstream body text."""
    if kind == RouteKind.CODE:
        return PlainTextResponse(
            content=CODE_ABORT_BODY,
            status_code=status_code,
            media_type="text/event-stream",
        )
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": PROXY_FAILURE_MESSAGE,
                "type": error_type,
                "param": None,
                "code": status_code,
            },
        },
    )


def proxy_error_response(kind: RouteKind, exc: ProxyError) -> Response:
    return error_response(kind, exc.status_code, exc.error_type)


class ResponseRelay:
    def __init__(self, *, log_bodies: bool = False) -> None:
        self.log_bodies = log_bodies

    async def relay(self, upstream: httpx.Response, route: RouteKind) -> Response:
        if not upstream.is_success:
            try:
                body = await upstream.aread()
            except httpx.HTTPError as exc:
                body = b""
                logger.warning(
                    "proxy_upstream_error_body_unreadable route=%s error=%s",
                    route.value,
                    exc,
                )
            finally:
                await upstream.aclose()
            error = UpstreamHTTPError(upstream.status_code, body)
            logger.error(
                "proxy_upstream_http_error route=%s status=%d body=%s",
                route.value,
                error.status_code,
                body.decode("utf-8", errors="replace"),
            )
            return proxy_error_response(route, error)

        headers: dict[str, str] = {}
        content_type = upstream.headers.get("content-type")
        if content_type:
            headers["Content-Type"] = content_type

        return StreamingResponse(
            content=self._stream(upstream, route),
            status_code=upstream.status_code,
            headers=headers,
        )

    async def _stream(
        self, upstream: httpx.Response, route: RouteKind
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_bytes():
                if self.log_bodies:
                    logger.info(
                        "response_chunk route=%s body=%s",
                        route.value,
                        chunk.decode("utf-8", errors="replace"),
                    )
                yield chunk
        except httpx.HTTPError as exc:
            logger.error(
                "proxy_stream_copy_error route=%s error_type=%s error=%s",
                route.value,
                exc.__class__.__name__,
                exc,
            )
        finally:
            await upstream.aclose()


class CompletionProxy:
    """Transforms, forwards and relays one completion route."""

    def __init__(
        self,
        route: RouteConfig,
        client: ResilientClient,
        relay: ResponseRelay,
    ) -> None:
        self.route = route
        self.transformer = RequestTransformer(route)
        self.client = client
        self.relay = relay

    @property
    def kind(self) -> RouteKind:
        return self.route.kind

    async def admit(self, context: InboundContext) -> Response | None:
        """Wait for a rate-limit permit; returns a rejection when cancelled."""
        try:
            await self.client.admit(context, route=self.kind.value)
        except RequestTimeout as exc:
            return proxy_error_response(self.kind, exc)
        return None

    async def forward(
        self,
        body: bytes,
        context: InboundContext,
        *,
        admitted: bool = False,
    ) -> Response:
        try:
            payload = self.transformer.transform(body)
        except ProxyError as exc:
            return proxy_error_response(self.kind, exc)

        request = build_upstream_request(self.client.client, self.route, payload)
        try:
            upstream = await self.client.send(
                request, context, route=self.kind.value, admitted=admitted
            )
        except RequestTimeout as exc:
            return proxy_error_response(self.kind, exc)
        except ProxyError as exc:
            logger.error(
                "proxy_request_failed route=%s error_type=%s error=%s",
                self.kind.value,
                exc.error_type,
                exc.message,
            )
            return proxy_error_response(self.kind, exc)

        return await self.relay.relay(upstream, self.kind)

