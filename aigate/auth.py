"""Bearer-token authentication.

The :class:`AuthGate` extracts the bearer token from the ``Authorization``
header and hands it to a :class:`TokenVerifier`.  Whatever goes wrong
(missing header, wrong scheme, expired token, bad signature, verifier
timeout) the caller sees the same :class:`~aigate.errors.Unauthorized`;
the real reason only goes to the log.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import jwt

from .errors import Unauthorized

logger = logging.getLogger("aigate.auth")


class VerificationError(Exception):
    """Raised by a :class:`TokenVerifier` that rejects a token."""


@dataclass(frozen=True)
class Identity:
    """Verified caller identity.  Never the raw token."""

    subject: str
    claims: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "claims", MappingProxyType(dict(self.claims)))


class TokenVerifier(ABC):
    """Verifies a bearer token and returns the identity it belongs to."""

    async def initialize(self) -> None:
        """Load whatever trust material the verifier needs.

        Called exactly once by :class:`AuthGate`, before the first
        :meth:`verify`.
        """

    @abstractmethod
    async def verify(self, token: str) -> Identity:
        """Return the identity for *token* or raise :class:`VerificationError`."""

    async def close(self) -> None:
        pass


class StaticTokenVerifier(TokenVerifier):
    """Fixed set of opaque tokens, each mapped to a subject.

    Every configured token is compared with :func:`hmac.compare_digest` so
    the time taken does not depend on where a guess first differs.
    """

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = [(t.encode(), subject) for t, subject in tokens.items() if t]

    async def verify(self, token: str) -> Identity:
        presented = token.encode()
        subject: str | None = None
        for candidate, candidate_subject in self._tokens:
            if hmac.compare_digest(presented, candidate):
                subject = candidate_subject
        if subject is None:
            raise VerificationError("unknown token")
        return Identity(subject=subject, claims={"sub": subject})


class JWTVerifier(TokenVerifier):
    """Verifies signed JWTs with PyJWT.

    The signing key is read on :meth:`initialize`, either from *secret*
    directly or from *secret_file*.  Tokens must carry a non-empty ``sub``
    claim and, unless *require_exp* is false, an ``exp`` claim.
    """

    def __init__(
        self,
        *,
        secret: str | None = None,
        secret_file: str | Path | None = None,
        algorithms: tuple[str, ...] = ("HS256",),
        audience: str | None = None,
        issuer: str | None = None,
        leeway: float = 0.0,
        require_exp: bool = True,
    ) -> None:
        if secret is None and secret_file is None:
            raise ValueError("JWTVerifier needs either secret or secret_file")
        self._secret = secret
        self._secret_file = Path(secret_file) if secret_file else None
        self.algorithms = list(algorithms)
        self.audience = audience
        self.issuer = issuer
        self.leeway = leeway
        self.require_exp = require_exp
        self._key: str | None = None

    async def initialize(self) -> None:
        if self._secret_file is not None:
            text = await asyncio.to_thread(self._secret_file.read_text)
            self._key = text.strip()
        else:
            self._key = self._secret
        if not self._key:
            raise RuntimeError("JWT signing key is empty")
        logger.info("JWT trust store loaded (algorithms=%s)", ",".join(self.algorithms))

    async def verify(self, token: str) -> Identity:
        if self._key is None:
            raise VerificationError("verifier not initialized")
        required = ["sub", "exp"] if self.require_exp else ["sub"]
        try:
            claims = jwt.decode(
                token,
                self._key,
                algorithms=self.algorithms,
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": required, "verify_aud": self.audience is not None},
            )
        except jwt.PyJWTError as exc:
            raise VerificationError(str(exc)) from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise VerificationError("token has no usable 'sub' claim")
        return Identity(subject=subject, claims=claims)


def issue_token(
    secret: str,
    subject: str,
    *,
    ttl: float = 3600,
    algorithm: str = "HS256",
    audience: str | None = None,
    issuer: str | None = None,
    extra_claims: Mapping[str, Any] | None = None,
) -> str:
    """Sign a JWT that :class:`JWTVerifier` configured with *secret* accepts."""
    now = int(time.time())
    claims: dict[str, Any] = {"sub": subject, "iat": now, "exp": now + int(ttl)}
    if audience:
        claims["aud"] = audience
    if issuer:
        claims["iss"] = issuer
    claims.update(extra_claims or {})
    return jwt.encode(claims, secret, algorithm=algorithm)


def parse_bearer(authorization: str | None) -> str | None:
    """Return the token from an ``Authorization: Bearer <token>`` value.

    The scheme is matched case-insensitively.  Returns ``None`` for a
    missing header, another scheme, or an empty token.
    """
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthGate:
    """Turns an ``Authorization`` header into an :class:`Identity`."""

    def __init__(self, verifier: TokenVerifier, timeout: float = 5.0) -> None:
        self.verifier = verifier
        self.timeout = timeout
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await asyncio.wait_for(self.verifier.initialize(), timeout=self.timeout)
            self._initialized = True

    async def authenticate(self, authorization: str | None) -> Identity:
        """Verify the bearer credential in *authorization*.

        Raises
        ------
        Unauthorized
            On any failure.  The verifier is not consulted when the header
            is missing or malformed.
        """
        token = parse_bearer(authorization)
        if token is None:
            raise Unauthorized()

        try:
            await self.ensure_initialized()
        except Exception:
            logger.exception("Token verifier failed to initialize")
            raise Unauthorized() from None

        try:
            return await asyncio.wait_for(self.verifier.verify(token), timeout=self.timeout)
        except VerificationError as exc:
            logger.info("Token rejected: %s", exc)
        except asyncio.TimeoutError:
            logger.warning("Token verification timed out after %.1fs", self.timeout)
        except Exception:
            logger.exception("Token verifier raised unexpectedly")
        raise Unauthorized()
