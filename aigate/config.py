"""Gateway configuration loader."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .validation import CHAT, ENDPOINT_KINDS, SPEECH, VISION

logger = logging.getLogger("aigate.config")


DEFAULT_CONFIG = Path(__file__).resolve().parent.parent / "configs" / "gateway.yaml"

AUTH_MODES = ("static", "jwt")
BACKEND_KINDS = ("echo", "openai")


@dataclass
class RateLimitPolicy:
    capacity: float
    refill_per_second: float
    #: Whether ``stream: true`` switches this endpoint to NDJSON output.
    stream: bool = False


def default_policies() -> dict[str, RateLimitPolicy]:
    return {
        CHAT: RateLimitPolicy(capacity=10, refill_per_second=0.5, stream=True),
        VISION: RateLimitPolicy(capacity=5, refill_per_second=0.2),
        SPEECH: RateLimitPolicy(capacity=5, refill_per_second=0.2),
    }


@dataclass
class AuthConfig:
    #: ``static``: fixed bearer tokens from :attr:`tokens`.
    #: ``jwt``: signed JWTs checked against :attr:`jwt_secret`.
    mode: str = "static"
    #: token -> subject, used in ``static`` mode.
    tokens: dict[str, str] = field(default_factory=dict)
    jwt_secret: str | None = None
    #: Read the JWT signing key from this file instead of :attr:`jwt_secret`.
    jwt_secret_file: str | None = None
    jwt_algorithms: list[str] = field(default_factory=lambda: ["HS256"])
    jwt_audience: str | None = None
    jwt_issuer: str | None = None
    jwt_leeway: float = 0.0


@dataclass
class BackendConfig:
    kind: str = "echo"
    url: str | None = None
    api_key: str | None = None
    model: str = "gpt-4o-mini"
    transcription_model: str = "whisper-1"
    #: Pause between streamed fragments of the echo backend, in seconds.
    echo_delay: float = 0.0


@dataclass
class LimiterConfig:
    #: Upper bound on live buckets; the least recently used is evicted.
    max_keys: int = 100_000
    #: Buckets idle this long are dropped.  ``None`` keeps them forever.
    #: Should be at least capacity / refill_per_second of every policy,
    #: otherwise an evicted bucket comes back fuller than it would have been.
    idle_ttl: float | None = 3600.0


@dataclass
class GatewayConfig:
    host: str = "0.0.0.0"
    port: int = 8090
    rate_limits: dict[str, RateLimitPolicy] = field(default_factory=default_policies)
    auth: AuthConfig = field(default_factory=AuthConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    limiter: LimiterConfig = field(default_factory=LimiterConfig)
    #: Requests whose body exceeds this many bytes get ``413``.
    max_body_size: int = 10 * 1024 * 1024
    #: Upper bound on a single token verification, in seconds.
    auth_timeout: float = 5.0
    #: Upper bound on a non-streamed inference call, and on the wait for
    #: the first streamed fragment, in seconds.
    backend_timeout: float = 60.0
    #: Upper bound on the gap between two streamed fragments, in seconds.
    stream_idle_timeout: float = 30.0

    def policy(self, kind: str) -> RateLimitPolicy:
        return self.rate_limits[kind]


def validate_config(config: GatewayConfig, source: str = "config") -> GatewayConfig:
    """Check value ranges, raising ``ValueError`` that names the bad key."""

    def fail(key: str, problem: str) -> None:
        raise ValueError(f"Invalid {key} in {source}: {problem}")

    for kind in ENDPOINT_KINDS:
        if kind not in config.rate_limits:
            fail(f"rate_limits.{kind}", "missing policy")
    for kind, policy in config.rate_limits.items():
        if kind not in ENDPOINT_KINDS:
            fail(f"rate_limits.{kind}", f"unknown endpoint (expected one of {', '.join(ENDPOINT_KINDS)})")
        if policy.capacity <= 0:
            fail(f"rate_limits.{kind}.capacity", f"must be positive, got {policy.capacity}")
        if policy.refill_per_second <= 0:
            fail(
                f"rate_limits.{kind}.refill_per_second",
                f"must be positive, got {policy.refill_per_second}",
            )

    if config.auth.mode not in AUTH_MODES:
        fail("auth.mode", f"expected one of {', '.join(AUTH_MODES)}, got {config.auth.mode!r}")
    if config.auth.mode == "static" and not config.auth.tokens:
        fail("auth.tokens", "static auth needs at least one token")
    if config.auth.mode == "jwt" and not (config.auth.jwt_secret or config.auth.jwt_secret_file):
        fail("auth.jwt_secret", "jwt auth needs jwt_secret or jwt_secret_file")

    if config.backend.kind not in BACKEND_KINDS:
        fail("backend.kind", f"expected one of {', '.join(BACKEND_KINDS)}, got {config.backend.kind!r}")
    if config.backend.kind == "openai" and not config.backend.url:
        fail("backend.url", "required for the openai backend")

    if config.limiter.max_keys <= 0:
        fail("limiter.max_keys", f"must be positive, got {config.limiter.max_keys}")
    for key in ("max_body_size", "auth_timeout", "backend_timeout", "stream_idle_timeout"):
        if getattr(config, key) <= 0:
            fail(key, f"must be positive, got {getattr(config, key)}")
    return config


def parse_token_list(raw: str) -> dict[str, str]:
    """Parse ``token:subject,token2:subject2``.

    A bare ``token`` (no colon) gets the subject ``default``.
    """
    tokens: dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        token, sep, subject = item.partition(":")
        tokens[token.strip()] = subject.strip() if sep else "default"
    return tokens


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


def load_config_from_env() -> GatewayConfig | None:
    """Build a GatewayConfig from AIGATE_* environment variables.

    Returns None when neither AIGATE_TOKENS nor a JWT secret
    (AIGATE_JWT_SECRET / AIGATE_JWT_SECRET_FILE) is set.
    """
    raw_tokens = os.environ.get("AIGATE_TOKENS")
    jwt_secret = os.environ.get("AIGATE_JWT_SECRET") or None
    jwt_secret_file = os.environ.get("AIGATE_JWT_SECRET_FILE") or None
    if not raw_tokens and not jwt_secret and not jwt_secret_file:
        return None

    if jwt_secret or jwt_secret_file:
        auth = AuthConfig(
            mode="jwt",
            jwt_secret=jwt_secret,
            jwt_secret_file=jwt_secret_file,
            jwt_audience=os.environ.get("AIGATE_JWT_AUDIENCE") or None,
            jwt_issuer=os.environ.get("AIGATE_JWT_ISSUER") or None,
        )
    else:
        auth = AuthConfig(mode="static", tokens=parse_token_list(raw_tokens))

    backend_url = os.environ.get("AIGATE_BACKEND_URL") or None
    backend = BackendConfig(
        kind=os.environ.get("AIGATE_BACKEND", "openai" if backend_url else "echo"),
        url=backend_url,
        api_key=os.environ.get("AIGATE_BACKEND_API_KEY") or None,
        model=os.environ.get("AIGATE_BACKEND_MODEL", "gpt-4o-mini"),
    )

    config = GatewayConfig(
        host=os.environ.get("AIGATE_HOST", "0.0.0.0"),
        port=int(os.environ.get("AIGATE_PORT", "8090")),
        auth=auth,
        backend=backend,
        max_body_size=int(os.environ.get("AIGATE_MAX_BODY_SIZE", str(10 * 1024 * 1024))),
        auth_timeout=_env_float("AIGATE_AUTH_TIMEOUT", 5.0),
        backend_timeout=_env_float("AIGATE_BACKEND_TIMEOUT", 60.0),
        stream_idle_timeout=_env_float("AIGATE_STREAM_IDLE_TIMEOUT", 30.0),
    )
    return validate_config(config, source="environment variables")


def _load_policies(raw: dict | None) -> dict[str, RateLimitPolicy]:
    policies = default_policies()
    for kind, p in (raw or {}).items():
        base = policies.get(kind, RateLimitPolicy(capacity=1, refill_per_second=1))
        policies[kind] = RateLimitPolicy(
            capacity=p.get("capacity", base.capacity),
            refill_per_second=p.get("refill_per_second", base.refill_per_second),
            stream=p.get("stream", base.stream),
        )
    return policies


def load_config(path: str | Path | None = None) -> GatewayConfig:
    """Load gateway config from YAML file, falling back to env vars."""
    config_path = Path(path) if path else Path(
        os.environ.get("AIGATE_CONFIG", DEFAULT_CONFIG)
    )

    if not config_path.exists():
        config = load_config_from_env()
        if config is not None:
            return config
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    a = raw.get("auth", {})
    # Secrets may be injected at runtime instead of living in the file.
    # The YAML value takes precedence; the env var is the fallback.
    auth = AuthConfig(
        mode=a.get("mode", "jwt" if a.get("jwt_secret") or a.get("jwt_secret_file") else "static"),
        tokens={str(k): str(v) for k, v in (a.get("tokens") or {}).items()},
        jwt_secret=a.get("jwt_secret") or os.environ.get("AIGATE_JWT_SECRET") or None,
        jwt_secret_file=a.get("jwt_secret_file"),
        jwt_algorithms=list(a.get("jwt_algorithms", ["HS256"])),
        jwt_audience=a.get("jwt_audience"),
        jwt_issuer=a.get("jwt_issuer"),
        jwt_leeway=a.get("jwt_leeway", 0.0),
    )
    if auth.mode == "static" and not auth.tokens and os.environ.get("AIGATE_TOKENS"):
        auth.tokens = parse_token_list(os.environ["AIGATE_TOKENS"])

    b = raw.get("backend", {})
    backend = BackendConfig(
        kind=b.get("kind", "echo"),
        url=b.get("url"),
        api_key=b.get("api_key") or os.environ.get("AIGATE_BACKEND_API_KEY") or None,
        model=b.get("model", "gpt-4o-mini"),
        transcription_model=b.get("transcription_model", "whisper-1"),
        echo_delay=b.get("echo_delay", 0.0),
    )

    lim = raw.get("limiter", {})
    limiter = LimiterConfig(
        max_keys=lim.get("max_keys", 100_000),
        idle_ttl=lim.get("idle_ttl", 3600.0),
    )

    config = GatewayConfig(
        host=raw.get("host", "0.0.0.0"),
        port=raw.get("port", 8090),
        rate_limits=_load_policies(raw.get("rate_limits")),
        auth=auth,
        backend=backend,
        limiter=limiter,
        max_body_size=raw.get("max_body_size", 10 * 1024 * 1024),
        auth_timeout=raw.get("auth_timeout", 5.0),
        backend_timeout=raw.get("backend_timeout", 60.0),
        stream_idle_timeout=raw.get("stream_idle_timeout", 30.0),
    )
    validate_config(config, source=str(config_path))
    logger.debug(
        "Loaded %s (auth=%s, backend=%s)", config_path, auth.mode, backend.kind,
    )
    return config
