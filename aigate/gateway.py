"""Request pipeline shared by the ``/ai/*`` endpoints.

A request runs through an ordered list of stages::

    check_method -> authenticate -> rate_limit -> validate

Each stage takes a :class:`RequestContext` and returns a new one (or
raises a :class:`~aigate.errors.GatewayError`, which ends the request).
Nothing after a failing stage runs: a request without credentials never
touches the limiter, and a rate-limited request is never validated.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Mapping, Sequence

from .auth import AuthGate, Identity, TokenVerifier
from .backend import InferenceBackend, InferenceResult
from .config import GatewayConfig
from .errors import (
    GatewayError,
    MethodNotAllowed,
    PayloadTooLarge,
    RateLimited,
    UpstreamFailure,
    ValidationFailed,
)
from .ratelimit import BucketStore, TokenBucketLimiter
from .streaming import NDJSONStreamWriter
from .validation import CHAT, SPEECH, VISION, GatewayRequest, validate

logger = logging.getLogger("aigate.gateway")


@dataclass(frozen=True)
class RequestContext:
    """Everything a stage may look at, plus what earlier stages produced."""

    endpoint: str
    method: str
    headers: Mapping[str, str]
    client_host: str | None
    read_body: Callable[[], Awaitable[bytes]]
    identity: Identity | None = None
    request: GatewayRequest | None = None


Stage = Callable[[RequestContext], Awaitable[RequestContext]]


async def run_pipeline(stages: Sequence[Stage], ctx: RequestContext) -> RequestContext:
    for stage in stages:
        ctx = await stage(ctx)
    return ctx


def origin_address(headers: Mapping[str, str], client_host: str | None) -> str:
    """Caller address for rate limiting: first X-Forwarded-For hop, else peer.

    Only ever used to key the limiter, never for authentication.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return client_host or "unknown"


def rate_limit_key(endpoint: str, subject: str, origin: str) -> str:
    return f"{endpoint}:{subject}:{origin}"


class Gateway:
    """Holds the collaborators and runs requests through the pipeline."""

    def __init__(
        self,
        config: GatewayConfig,
        verifier: TokenVerifier,
        backend: InferenceBackend,
        limiter: TokenBucketLimiter | None = None,
    ) -> None:
        self.config = config
        self.auth = AuthGate(verifier, timeout=config.auth_timeout)
        self.backend = backend
        self.limiter = limiter or TokenBucketLimiter(
            BucketStore(max_keys=config.limiter.max_keys, idle_ttl=config.limiter.idle_ttl)
        )
        self.stages: list[Stage] = [
            self.check_method,
            self.authenticate,
            self.rate_limit,
            self.validate,
        ]

    async def close(self) -> None:
        await self.backend.close()
        await self.auth.verifier.close()

    # --- stages ---

    async def check_method(self, ctx: RequestContext) -> RequestContext:
        if ctx.method != "POST":
            raise MethodNotAllowed(ctx.method)
        return ctx

    async def authenticate(self, ctx: RequestContext) -> RequestContext:
        identity = await self.auth.authenticate(ctx.headers.get("authorization"))
        return replace(ctx, identity=identity)

    async def rate_limit(self, ctx: RequestContext) -> RequestContext:
        policy = self.config.policy(ctx.endpoint)
        key = rate_limit_key(
            ctx.endpoint, ctx.identity.subject, origin_address(ctx.headers, ctx.client_host),
        )
        decision = self.limiter.acquire(key, policy.capacity, policy.refill_per_second)
        if not decision.allowed:
            logger.warning("Rate limit exceeded for %s", key)
            raise RateLimited(retry_after=decision.retry_after)
        return ctx

    async def validate(self, ctx: RequestContext) -> RequestContext:
        limit = self.config.max_body_size
        declared = ctx.headers.get("content-length")
        if declared is not None:
            try:
                declared_size = int(declared)
            except ValueError:
                raise ValidationFailed(
                    "Invalid Content-Length header",
                    details={"content-length": "must be an integer"},
                ) from None
            if declared_size > limit:
                raise PayloadTooLarge(declared_size, limit)

        raw = await ctx.read_body()
        if len(raw) > limit:
            raise PayloadTooLarge(len(raw), limit)
        try:
            body = json.loads(raw)
        except (ValueError, RecursionError):
            raise ValidationFailed(
                "Request body must be valid JSON",
                details={"body": "must be valid JSON"},
            ) from None
        return replace(ctx, request=validate(ctx.endpoint, body))

    # --- dispatch ---

    async def prepare(self, ctx: RequestContext) -> RequestContext:
        return await run_pipeline(self.stages, ctx)

    def wants_stream(self, ctx: RequestContext) -> bool:
        return bool(ctx.request.stream) and self.config.policy(ctx.endpoint).stream

    def _upstream_failure(self, ctx: RequestContext, exc: BaseException) -> UpstreamFailure:
        subject = ctx.identity.subject if ctx.identity else "-"
        if isinstance(exc, asyncio.TimeoutError):
            logger.error(
                "Inference for %s (subject=%s) timed out after %.1fs",
                ctx.endpoint, subject, self.config.backend_timeout,
            )
        else:
            logger.error(
                "Inference for %s (subject=%s) failed", ctx.endpoint, subject,
                exc_info=exc,
            )
        return UpstreamFailure()

    async def dispatch(self, ctx: RequestContext) -> InferenceResult:
        try:
            return await asyncio.wait_for(
                self.backend.invoke(ctx.endpoint, ctx.request),
                timeout=self.config.backend_timeout,
            )
        except GatewayError:
            raise
        except Exception as exc:
            raise self._upstream_failure(ctx, exc) from exc

    async def open_stream(self, ctx: RequestContext) -> NDJSONStreamWriter:
        """Start the backend stream and wait for its first fragment."""
        writer = NDJSONStreamWriter(
            self.backend.stream(ctx.endpoint, ctx.request),
            idle_timeout=self.config.stream_idle_timeout,
        )
        try:
            await asyncio.wait_for(writer.prime(), timeout=self.config.backend_timeout)
        except Exception as exc:
            raise self._upstream_failure(ctx, exc) from exc
        return writer

    @staticmethod
    def render(kind: str, result: InferenceResult, request: GatewayRequest | None = None) -> dict:
        """Shape a non-streamed result into the endpoint's response body.

        A chat request's ``conversationId`` is echoed back when given.
        """
        body: dict = {"id": result.id}
        if kind == CHAT:
            body["message"] = {"role": "assistant", "content": result.text}
            conversation_id = getattr(request, "conversation_id", None)
            if conversation_id is not None:
                body["conversationId"] = conversation_id
        elif kind == SPEECH:
            body["transcript"] = result.text
            if result.language:
                body["language"] = result.language
        elif kind == VISION:
            body["result"] = result.text
        return body
