import asyncio
import logging
from typing import AsyncIterator, Iterable, List, Optional, Tuple
from urllib.parse import quote

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from opentelemetry import trace
from starlette.requests import ClientDisconnect

from proxy_gateway.forwarder.config import ForwarderConfig
from proxy_gateway.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

# Never carry a body upstream, whatever the client sent
BODYLESS_METHODS = {"GET", "HEAD"}

# Host is recomputed by the client from the target URL
REQUEST_EXCLUDED_HEADERS = {b"host"}
BODY_FRAMING_HEADERS = {b"content-length", b"transfer-encoding"}

# The body is re-framed and decoded on the way back
RESPONSE_EXCLUDED_HEADERS = {b"content-encoding", b"transfer-encoding"}

# nginx convention for "client closed request"; nobody receives it
CLIENT_CLOSED_REQUEST = 499

# Characters left unescaped when a decoded path has to be quoted again
PATH_SAFE_CHARACTERS = "/:@!$&'()*+,;=-._~"

RawHeaders = List[Tuple[bytes, bytes]]


def _strip_prefix(path: str, root_path: str, proxy_prefix: str) -> Optional[str]:
    if root_path and path.startswith(root_path + proxy_prefix):
        path = path[len(root_path):]
    if not path.startswith(proxy_prefix):
        return None
    return path[len(proxy_prefix):]


def get_path_suffix(request: Request, proxy_prefix: str) -> str:
    """
    Return the request path after the proxy prefix, exactly as the client sent it.

    The raw path is used so percent-escapes such as ``%2F`` reach the upstream
    unchanged. When there is no ``raw_path``, or the client escaped part of the
    prefix itself (``/pro%78y/users``), the decoded path is re-quoted instead.
    """
    root_path = request.scope.get("root_path", "")
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.decode("latin-1").split("?", 1)[0]
        suffix = _strip_prefix(path, root_path, proxy_prefix)
        if suffix is not None:
            return suffix

    path = quote(request.scope.get("path", ""), safe=PATH_SAFE_CHARACTERS)
    suffix = _strip_prefix(path, root_path, proxy_prefix)
    return path if suffix is None else suffix


def split_path_suffix(suffix: str) -> List[str]:
    """Split a path suffix into segments; empty segments are kept."""
    if suffix.startswith("/"):
        suffix = suffix[1:]
    return suffix.split("/") if suffix else []


def build_target_url(target_server_url: str, segments: List[str], query: str) -> str:
    """Concatenate upstream base, path segments and the untouched query string."""
    url = f"{target_server_url}/{'/'.join(segments)}"
    if query:
        url = f"{url}?{query}"
    return url


def has_request_body(request: Request) -> bool:
    if request.method.upper() in BODYLESS_METHODS:
        return False
    return "content-length" in request.headers or "transfer-encoding" in request.headers


def filter_request_headers(
    raw_headers: Iterable[Tuple[bytes, bytes]], send_body: bool
) -> RawHeaders:
    """
    Copy inbound headers for the upstream request.

    ``host`` is always dropped. Without a body, the framing headers are dropped
    as well since they would announce bytes that never follow.
    """
    excluded = REQUEST_EXCLUDED_HEADERS
    if not send_body:
        excluded = excluded | BODY_FRAMING_HEADERS
    return [(name, value) for name, value in raw_headers if name.lower() not in excluded]


def filter_response_headers(raw_headers: Iterable[Tuple[bytes, bytes]]) -> RawHeaders:
    """
    Copy upstream response headers for the client, repeated names included.

    httpx decodes the body when it is content-encoded, so a declared
    ``content-length`` no longer matches and is dropped in that case.
    """
    headers = [(name.lower(), value) for name, value in raw_headers]
    excluded = RESPONSE_EXCLUDED_HEADERS
    if any(name == b"content-encoding" for name, _ in headers):
        excluded = excluded | {b"content-length"}
    return [(name, value) for name, value in headers if name not in excluded]


def proxy_error_response(exception: Exception) -> JSONResponse:
    return JSONResponse(
        {"message": "Proxy error", "error": format_exception_message(exception)},
        status_code=502,
    )


class UpstreamStreamingResponse(StreamingResponse):
    """
    Relays an upstream response body and closes the upstream response once
    the exchange with the client is over, including when it is cancelled
    before the body iterator ever started.
    """

    def __init__(self, upstream: httpx.Response, content, **kwargs):
        super().__init__(content, **kwargs)
        self.upstream = upstream

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await asyncio.shield(self.upstream.aclose())


class Forwarder:
    """Maps one inbound request to one upstream request and relays the answer."""

    def __init__(self, config: ForwarderConfig, client: httpx.AsyncClient):
        self._config = config
        self._client = client

    @property
    def config(self) -> ForwarderConfig:
        return self._config

    def get_target_url(
        self, request: Request, proxy_prefix: Optional[str] = None
    ) -> str:
        if proxy_prefix is None:
            proxy_prefix = self._config.proxy_prefix
        suffix = get_path_suffix(request, proxy_prefix)
        query = request.scope.get("query_string", b"").decode("latin-1")
        return build_target_url(
            self._config.target_server_url, split_path_suffix(suffix), query
        )

    async def forward(
        self, request: Request, proxy_prefix: Optional[str] = None
    ) -> Response:
        """
        Forward ``request`` to the upstream and stream the response back.

        ``proxy_prefix`` overrides the configured prefix stripped from the
        path; the root fallback route passes an empty one.

        Any failure before upstream headers arrive becomes a 502 with a
        ``{"message", "error"}`` JSON body. Nothing is retried.
        """
        with tracer.start_as_current_span("proxy_request") as span:
            target_url = self.get_target_url(request, proxy_prefix)
            span.set_attribute("proxy.target_url", target_url)
            span.set_attribute("proxy.method", request.method)

            logger.info(f"Forwarding {request.method} request to: {target_url}")

            send_body = has_request_body(request)
            body_read = asyncio.Event()
            content: Optional[AsyncIterator[bytes]] = None
            if send_body:
                content = self._stream_request_body(request, body_read)
            else:
                body_read.set()

            upstream_request = self._client.build_request(
                method=request.method,
                url=target_url,
                headers=filter_request_headers(request.headers.raw, send_body),
                content=content,
                timeout=httpx.Timeout(self._config.timeout),
            )

            try:
                upstream = await self._send_while_connected(
                    request, upstream_request, body_read
                )
            except ClientDisconnect:
                logger.info(
                    f"Client disconnected before {target_url} responded, request aborted"
                )
                span.set_attribute("proxy.error", "client_disconnected")
                return Response(status_code=CLIENT_CLOSED_REQUEST)
            except Exception as e:
                log_exception_with_details(
                    logger, f"[Proxy] Error proxying to {target_url}:", e
                )
                span.set_attribute("proxy.error", format_exception_message(e))
                return proxy_error_response(e)

            span.set_attribute("proxy.status_code", upstream.status_code)
            logger.info(
                f"Received response from target: {upstream.status_code} "
                f"{upstream.reason_phrase}"
            )

            response = UpstreamStreamingResponse(
                upstream,
                self._stream_response_body(upstream, target_url),
                status_code=upstream.status_code,
            )
            response.raw_headers.extend(filter_response_headers(upstream.headers.raw))
            return response

    async def _send_while_connected(
        self,
        request: Request,
        upstream_request: httpx.Request,
        body_read: asyncio.Event,
    ) -> httpx.Response:
        """
        Send upstream, cancelling the send if the client goes away before the
        upstream answers.
        """
        send = asyncio.create_task(self._client.send(upstream_request, stream=True))
        watch = asyncio.create_task(self._wait_for_disconnect(request, body_read))
        try:
            await asyncio.wait({send, watch}, return_when=asyncio.FIRST_COMPLETED)
            if not send.done():
                send.cancel()
                await asyncio.gather(send, return_exceptions=True)
                watch.result()
                raise ClientDisconnect()
            return send.result()
        finally:
            watch.cancel()
            if not send.done():
                send.cancel()

    async def _wait_for_disconnect(
        self, request: Request, body_read: asyncio.Event
    ) -> None:
        # Polling before the body is fully read would consume body messages.
        await body_read.wait()
        while not await request.is_disconnected():
            await asyncio.sleep(self._config.disconnect_poll_interval)

    @staticmethod
    async def _stream_request_body(
        request: Request, body_read: asyncio.Event
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in request.stream():
                if chunk:
                    yield chunk
        finally:
            body_read.set()

    @staticmethod
    async def _stream_response_body(
        upstream: httpx.Response, target_url: str
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            # Headers are already out, so the connection has to be aborted.
            log_exception_with_details(
                logger, f"[Proxy] Response stream from {target_url} aborted:", e
            )
            raise
        finally:
            await upstream.aclose()
