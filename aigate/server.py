"""Starlette application exposing the AI gateway endpoints."""

from __future__ import annotations

import logging
import os
import signal
from contextlib import asynccontextmanager
from pathlib import Path

from starlette.applications import Starlette
from starlette.datastructures import MutableHeaders
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .auth import JWTVerifier, StaticTokenVerifier, TokenVerifier
from .backend import EchoBackend, InferenceBackend, OpenAIBackend
from .config import AuthConfig, BackendConfig, GatewayConfig
from .errors import GatewayError
from .gateway import Gateway, RequestContext
from .ratelimit import TokenBucketLimiter
from .streaming import STREAM_HEADERS, STREAM_MEDIA_TYPE
from .validation import ENDPOINT_KINDS

logger = logging.getLogger("aigate.server")

PIDFILE = Path.home() / ".aigate" / "gateway.pid"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

# Route every method to the handler so non-POST gets our JSON 405.
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]


class CORSHeadersMiddleware:
    """Outermost ASGI layer: answers preflight and stamps CORS headers.

    Any ``OPTIONS`` request is answered here with ``204 No Content`` and
    never reaches authentication or routing.  Every other HTTP response
    gets :data:`CORS_HEADERS` added as it is sent.  Non-HTTP scopes
    (lifespan) pass through unchanged.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            response = Response(
                status_code=204,
                headers={**CORS_HEADERS, "Access-Control-Allow-Methods": "POST, OPTIONS"},
            )
            await response(scope, receive, send)
            return

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in CORS_HEADERS.items():
                    headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_cors)


def error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=exc.headers)


def _get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def _make_endpoint_handler(kind: str):
    async def handler(request: Request) -> Response:
        gateway = _get_gateway(request)
        ctx = RequestContext(
            endpoint=kind,
            method=request.method,
            headers=request.headers,
            client_host=request.client.host if request.client else None,
            read_body=request.body,
        )
        try:
            ctx = await gateway.prepare(ctx)
            if gateway.wants_stream(ctx):
                writer = await gateway.open_stream(ctx)
                return StreamingResponse(
                    writer.body(),
                    media_type=STREAM_MEDIA_TYPE,
                    headers=STREAM_HEADERS,
                )
            result = await gateway.dispatch(ctx)
        except GatewayError as exc:
            if exc.status_code == 401:
                logger.info("Rejected unauthenticated %s %s", request.method, request.url.path)
            return error_response(exc)
        return JSONResponse(gateway.render(kind, result, ctx.request))

    handler.__name__ = f"handle_{kind}"
    return handler


async def handle_health(request: Request):
    gateway = _get_gateway(request)
    config = gateway.config
    return JSONResponse({
        "status": "ok",
        "backend": gateway.backend.name,
        "auth": {
            "mode": config.auth.mode,
            "initialized": gateway.auth.initialized,
        },
        "endpoints": {
            kind: {
                "path": f"/ai/{kind}",
                "capacity": config.policy(kind).capacity,
                "refill_per_second": config.policy(kind).refill_per_second,
                "stream": config.policy(kind).stream,
            }
            for kind in ENDPOINT_KINDS
        },
        "limiter": {"keys": len(gateway.limiter.store)},
    })


def build_verifier(auth: AuthConfig) -> TokenVerifier:
    if auth.mode == "jwt":
        return JWTVerifier(
            secret=auth.jwt_secret,
            secret_file=auth.jwt_secret_file,
            algorithms=tuple(auth.jwt_algorithms),
            audience=auth.jwt_audience,
            issuer=auth.jwt_issuer,
            leeway=auth.jwt_leeway,
        )
    return StaticTokenVerifier(auth.tokens)


def build_backend(backend: BackendConfig, timeout: float) -> InferenceBackend:
    if backend.kind == "openai":
        return OpenAIBackend(
            backend.url,
            api_key=backend.api_key,
            model=backend.model,
            transcription_model=backend.transcription_model,
            timeout=timeout,
        )
    return EchoBackend(delay=backend.echo_delay)


def create_app(
    config: GatewayConfig,
    *,
    verifier: TokenVerifier | None = None,
    backend: InferenceBackend | None = None,
    limiter: TokenBucketLimiter | None = None,
) -> Starlette:
    """Create and configure the gateway ASGI application.

    Collaborators not passed in are built from *config*.  Each call gets
    its own :class:`~aigate.gateway.Gateway` (and limiter store), kept on
    ``app.state.gateway``.
    """
    gateway = Gateway(
        config,
        verifier=verifier or build_verifier(config.auth),
        backend=backend or build_backend(config.backend, config.backend_timeout),
        limiter=limiter,
    )

    @asynccontextmanager
    async def lifespan(app):
        logger.info(
            "Gateway auth mode: %s; backend: %s", config.auth.mode, gateway.backend.name,
        )
        if gateway.backend.name == "echo":
            logger.warning(
                "Echo backend active: /ai/* endpoints return placeholder output. "
                "Configure backend.kind: openai to reach a real model."
            )
        yield
        await gateway.close()

    routes = [Route("/health", handle_health, methods=["GET"])]
    for kind in ENDPOINT_KINDS:
        routes.append(Route(f"/ai/{kind}", _make_endpoint_handler(kind), methods=ALL_METHODS))

    app = Starlette(
        routes=routes,
        middleware=[Middleware(CORSHeadersMiddleware)],
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    return app


def write_pidfile():
    PIDFILE.parent.mkdir(parents=True, exist_ok=True)
    PIDFILE.write_text(str(os.getpid()))


def remove_pidfile():
    PIDFILE.unlink(missing_ok=True)


def read_pidfile() -> int | None:
    if PIDFILE.exists():
        try:
            return int(PIDFILE.read_text().strip())
        except (ValueError, OSError):
            return None
    return None


def stop_gateway() -> bool:
    pid = read_pidfile()
    if pid is None:
        return False
    try:
        os.kill(pid, signal.SIGTERM)
        remove_pidfile()
        return True
    except ProcessLookupError:
        remove_pidfile()
        return False
