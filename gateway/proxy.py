"""
Request forwarding from the gateway to the backend service.

``proxy_request`` is the single forwarding operation. It relays any upstream
status verbatim and maps transport failures onto stable responses:

1. connection refused -> 503
2. timeout -> 504
3. transport error carrying a response -> that response's status and body
4. anything else -> 502
"""
import asyncio
import json
import logging
import time
from functools import wraps
from typing import Any

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response

from gateway.config import GatewaySettings

logger = logging.getLogger(__name__)

# Statuses that must not carry a body
NO_BODY_STATUSES = {204, 304}


class GatewayError(Exception):
    """Transport-level failure rendered as a JSON error response."""
    status_code = 502
    error = "bad gateway"
    message = None

    def to_response(self) -> JSONResponse:
        body = {"error": self.error}
        if self.message:
            body["message"] = self.message
        return JSONResponse(status_code=self.status_code, content=body)


class UpstreamUnavailable(GatewayError):
    status_code = 503
    error = "Backend service unavailable"
    message = "The backend service is currently unavailable. Please try again later."


class UpstreamTimeout(GatewayError):
    status_code = 504
    error = "Backend service timeout"
    message = "The backend service did not respond in time. Please try again later."


class PayloadTooLarge(GatewayError):
    status_code = 413
    error = "Payload too large"
    message = "Request body exceeds the maximum allowed size."


class ResponseTooLarge(GatewayError):
    """Upstream body over the size cap; answered with the 502 fallback."""


def upstream_url(settings: GatewaySettings, request: Request) -> str:
    """Backend URL for the inbound path, without the query string."""
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1").split("?", 1)[0] if raw_path else request.url.path
    return f"{settings.BACKEND_URL.rstrip('/')}{path}"


def _original_url(request: Request) -> str:
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


async def read_request_body(request: Request, max_bytes: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLarge()

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise PayloadTooLarge()
    return bytes(body)


def build_upstream_request(
    client: httpx.AsyncClient, request: Request, body: bytes, target_url: str
) -> httpx.Request:
    """
    Rebuild the inbound request for the backend.

    Only forwarding metadata and, for a non-empty JSON object body, the
    content type are sent upstream. Client supplied X-Forwarded-For is
    replaced by the observed peer address.
    """
    headers = {
        "X-Forwarded-For": request.client.host if request.client else "",
        "X-Forwarded-Proto": request.url.scheme,
    }
    content_type = request.headers.get("content-type")

    content = None
    if body:
        parsed = None
        if content_type is None or "json" in content_type:
            try:
                parsed = json.loads(body)
            except ValueError:
                parsed = None
        if isinstance(parsed, dict) and parsed:
            headers["Content-Type"] = content_type or "application/json"
            content = json.dumps(parsed).encode("utf-8")
        else:
            content = body
            if content_type:
                headers["Content-Type"] = content_type

    return client.build_request(
        request.method,
        target_url,
        # re-serialized from the parsed params, never the raw query string
        params=list(request.query_params.multi_items()),
        headers=headers,
        content=content,
    )


async def read_limited(response: httpx.Response, max_bytes: int) -> bytes:
    body = bytearray()
    async for chunk in response.aiter_bytes():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise ResponseTooLarge()
    return bytes(body)


def decode_body(content: bytes) -> Any:
    """Decode an upstream body so it can be re-encoded as JSON."""
    if not content:
        return None
    try:
        return json.loads(content)
    except ValueError:
        return content.decode("utf-8", errors="replace")


def log_proxy_call(func):
    """
    Log every forwarded call: method, original path, upstream URL, status
    and latency in milliseconds.
    """
    @wraps(func)
    async def wrapper(request: Request, client: httpx.AsyncClient, settings: GatewaySettings):
        start = time.perf_counter()
        original = _original_url(request)
        target = upstream_url(settings, request)
        logger.info(f"[{request.method}] {original} -> {target}")
        try:
            response = await func(request, client, settings)
        except Exception:
            duration = (time.perf_counter() - start) * 1000
            logger.error(f"[{request.method}] {original} <- error ({duration:.0f}ms)")
            raise
        duration = (time.perf_counter() - start) * 1000
        logger.info(
            f"[{request.method}] {original} <- {response.status_code} ({duration:.0f}ms)"
        )
        return response
    return wrapper


async def _send(
    client: httpx.AsyncClient, upstream_request: httpx.Request, max_bytes: int
) -> tuple[int, bytes]:
    response = await client.send(upstream_request, stream=True)
    try:
        return response.status_code, await read_limited(response, max_bytes)
    finally:
        await response.aclose()


@log_proxy_call
async def proxy_request(
    request: Request, client: httpx.AsyncClient, settings: GatewaySettings
) -> Response:
    """Forward ``request`` to the backend and relay its answer."""
    target_url = upstream_url(settings, request)
    try:
        body = await read_request_body(request, settings.MAX_CONTENT_LENGTH)
        upstream_request = build_upstream_request(client, request, body, target_url)
        status_code, content = await asyncio.wait_for(
            _send(client, upstream_request, settings.MAX_CONTENT_LENGTH),
            timeout=settings.UPSTREAM_TIMEOUT,
        )
        if status_code in NO_BODY_STATUSES or request.method == "HEAD":
            return Response(status_code=status_code)
        return JSONResponse(status_code=status_code, content=decode_body(content))
    except PayloadTooLarge as e:
        return e.to_response()
    except ResponseTooLarge as e:
        logger.error(f"Response from {target_url} exceeds {settings.MAX_CONTENT_LENGTH} bytes")
        return e.to_response()
    except httpx.ConnectError as e:
        logger.error(f"Connection refused to {target_url}: {e}")
        return UpstreamUnavailable().to_response()
    except (httpx.TimeoutException, asyncio.TimeoutError) as e:
        logger.error(f"Timeout connecting to {target_url}: {e!r}")
        return UpstreamTimeout().to_response()
    except httpx.HTTPStatusError as e:
        try:
            content = e.response.content
        except httpx.ResponseNotRead:
            content = b""
        return JSONResponse(status_code=e.response.status_code, content=decode_body(content))
    except Exception as e:
        # The response is built only after the upstream call completes, so
        # nothing has been sent to the client yet.
        logger.exception(f"Proxy error for {target_url}: {e}")
        return GatewayError().to_response()
