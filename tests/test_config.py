"""Tests for gateway config loading."""

import pytest
import yaml

from aigate.config import (
    GatewayConfig,
    RateLimitPolicy,
    load_config,
    load_config_from_env,
    parse_token_list,
    validate_config,
)

ENV_VARS = [
    "AIGATE_CONFIG",
    "AIGATE_TOKENS",
    "AIGATE_JWT_SECRET",
    "AIGATE_JWT_SECRET_FILE",
    "AIGATE_JWT_AUDIENCE",
    "AIGATE_JWT_ISSUER",
    "AIGATE_BACKEND",
    "AIGATE_BACKEND_URL",
    "AIGATE_BACKEND_API_KEY",
    "AIGATE_BACKEND_MODEL",
    "AIGATE_HOST",
    "AIGATE_PORT",
    "AIGATE_MAX_BODY_SIZE",
    "AIGATE_AUTH_TIMEOUT",
    "AIGATE_BACKEND_TIMEOUT",
    "AIGATE_STREAM_IDLE_TIMEOUT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def write_config(tmp_path):
    def _write(cfg: dict):
        p = tmp_path / "gateway.yaml"
        p.write_text(yaml.dump(cfg))
        return p
    return _write


@pytest.fixture
def config_file(write_config):
    return write_config({
        "host": "127.0.0.1",
        "port": 9000,
        "max_body_size": 2048,
        "backend_timeout": 15,
        "auth": {"tokens": {"tok-a": "alice", "tok-b": "bob"}},
        "backend": {"kind": "openai", "url": "http://model:8080", "model": "llama-3"},
        "limiter": {"max_keys": 500, "idle_ttl": 120},
        "rate_limits": {
            "chat": {"capacity": 20, "refill_per_second": 1.0},
            "speech": {"stream": True},
        },
    })


class TestLoadConfig:
    def test_load_config(self, config_file):
        config = load_config(config_file)
        assert config.host == "127.0.0.1"
        assert config.port == 9000
        assert config.max_body_size == 2048
        assert config.backend_timeout == 15
        assert config.auth.mode == "static"
        assert config.auth.tokens == {"tok-a": "alice", "tok-b": "bob"}
        assert config.backend.kind == "openai"
        assert config.backend.url == "http://model:8080"
        assert config.backend.model == "llama-3"
        assert config.limiter.max_keys == 500
        assert config.limiter.idle_ttl == 120

    def test_policies_merge_over_defaults(self, config_file):
        config = load_config(config_file)
        chat = config.policy("chat")
        assert (chat.capacity, chat.refill_per_second) == (20, 1.0)
        # chat streams by default and the override did not say otherwise
        assert chat.stream is True
        speech = config.policy("speech")
        assert (speech.capacity, speech.refill_per_second, speech.stream) == (5, 0.2, True)
        vision = config.policy("vision")
        assert (vision.capacity, vision.refill_per_second, vision.stream) == (5, 0.2, False)

    def test_minimal_file_gets_defaults(self, write_config):
        config = load_config(write_config({"auth": {"tokens": {"t": "s"}}}))
        assert config.port == 8090
        assert config.backend.kind == "echo"
        assert config.max_body_size == 10 * 1024 * 1024
        assert config.auth_timeout == 5.0
        assert config.policy("chat") == RateLimitPolicy(10, 0.5, stream=True)

    def test_jwt_mode_inferred_from_secret(self, write_config):
        config = load_config(write_config({"auth": {"jwt_secret": "s3cret", "jwt_audience": "aigate"}}))
        assert config.auth.mode == "jwt"
        assert config.auth.jwt_secret == "s3cret"
        assert config.auth.jwt_audience == "aigate"
        assert config.auth.jwt_algorithms == ["HS256"]

    def test_jwt_secret_from_env(self, write_config, monkeypatch):
        monkeypatch.setenv("AIGATE_JWT_SECRET", "from-env")
        config = load_config(write_config({"auth": {"mode": "jwt"}}))
        assert config.auth.jwt_secret == "from-env"

    def test_yaml_secret_wins_over_env(self, write_config, monkeypatch):
        monkeypatch.setenv("AIGATE_JWT_SECRET", "from-env")
        config = load_config(write_config({"auth": {"jwt_secret": "from-yaml"}}))
        assert config.auth.jwt_secret == "from-yaml"

    def test_api_key_from_env(self, write_config, monkeypatch):
        monkeypatch.setenv("AIGATE_BACKEND_API_KEY", "sk-env")
        config = load_config(write_config({
            "auth": {"tokens": {"t": "s"}},
            "backend": {"kind": "openai", "url": "http://model:8080"},
        }))
        assert config.backend.api_key == "sk-env"

    def test_static_tokens_from_env(self, write_config, monkeypatch):
        monkeypatch.setenv("AIGATE_TOKENS", "t1:alice,t2")
        config = load_config(write_config({"port": 9100}))
        assert config.auth.tokens == {"t1": "alice", "t2": "default"}

    def test_path_from_env(self, config_file, monkeypatch):
        monkeypatch.setenv("AIGATE_CONFIG", str(config_file))
        assert load_config().port == 9000

    def test_missing_file_without_env(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(tmp_path / "nope.yaml")

    def test_missing_file_falls_back_to_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AIGATE_TOKENS", "tok:carol")
        monkeypatch.setenv("AIGATE_PORT", "9200")
        config = load_config(tmp_path / "nope.yaml")
        assert config.port == 9200
        assert config.auth.tokens == {"tok": "carol"}


class TestValidation:
    @pytest.mark.parametrize("cfg,bad_key", [
        ({"auth": {"tokens": {}}}, "auth.tokens"),
        ({"auth": {"mode": "ldap", "tokens": {"t": "s"}}}, "auth.mode"),
        ({"auth": {"mode": "jwt"}}, "auth.jwt_secret"),
        ({"auth": {"tokens": {"t": "s"}}, "backend": {"kind": "openai"}}, "backend.url"),
        ({"auth": {"tokens": {"t": "s"}}, "backend": {"kind": "bedrock"}}, "backend.kind"),
        ({"auth": {"tokens": {"t": "s"}}, "rate_limits": {"chat": {"capacity": 0}}},
         "rate_limits.chat.capacity"),
        ({"auth": {"tokens": {"t": "s"}}, "rate_limits": {"vision": {"refill_per_second": -1}}},
         "rate_limits.vision.refill_per_second"),
        ({"auth": {"tokens": {"t": "s"}}, "rate_limits": {"video": {"capacity": 1}}},
         "rate_limits.video"),
        ({"auth": {"tokens": {"t": "s"}}, "max_body_size": 0}, "max_body_size"),
        ({"auth": {"tokens": {"t": "s"}}, "limiter": {"max_keys": 0}}, "limiter.max_keys"),
    ])
    def test_invalid_values_name_the_key(self, write_config, cfg, bad_key):
        with pytest.raises(ValueError, match=f"Invalid {bad_key} in"):
            load_config(write_config(cfg))

    def test_defaults_need_credentials(self):
        with pytest.raises(ValueError, match="auth.tokens"):
            validate_config(GatewayConfig())

    def test_missing_policy(self):
        config = GatewayConfig()
        config.auth.tokens = {"t": "s"}
        del config.rate_limits["speech"]
        with pytest.raises(ValueError, match="rate_limits.speech"):
            validate_config(config)


class TestEnvConfig:
    def test_nothing_set_returns_none(self):
        assert load_config_from_env() is None

    def test_static_tokens(self, monkeypatch):
        monkeypatch.setenv("AIGATE_TOKENS", "a:alice, b:bob")
        config = load_config_from_env()
        assert config.auth.mode == "static"
        assert config.auth.tokens == {"a": "alice", "b": "bob"}
        assert config.backend.kind == "echo"

    def test_jwt_secret_selects_jwt_mode(self, monkeypatch):
        monkeypatch.setenv("AIGATE_JWT_SECRET", "s3cret")
        monkeypatch.setenv("AIGATE_JWT_AUDIENCE", "aigate")
        config = load_config_from_env()
        assert config.auth.mode == "jwt"
        assert config.auth.jwt_audience == "aigate"

    def test_backend_url_selects_openai(self, monkeypatch):
        monkeypatch.setenv("AIGATE_TOKENS", "a")
        monkeypatch.setenv("AIGATE_BACKEND_URL", "http://model:8080")
        monkeypatch.setenv("AIGATE_BACKEND_API_KEY", "sk-1")
        config = load_config_from_env()
        assert config.backend.kind == "openai"
        assert config.backend.api_key == "sk-1"

    def test_timeouts_and_sizes(self, monkeypatch):
        monkeypatch.setenv("AIGATE_TOKENS", "a")
        monkeypatch.setenv("AIGATE_MAX_BODY_SIZE", "4096")
        monkeypatch.setenv("AIGATE_BACKEND_TIMEOUT", "7.5")
        config = load_config_from_env()
        assert config.max_body_size == 4096
        assert config.backend_timeout == 7.5

    def test_invalid_env_value(self, monkeypatch):
        monkeypatch.setenv("AIGATE_TOKENS", "a")
        monkeypatch.setenv("AIGATE_AUTH_TIMEOUT", "0")
        with pytest.raises(ValueError, match="environment variables"):
            load_config_from_env()


class TestParseTokenList:
    def test_pairs_and_bare_tokens(self):
        assert parse_token_list("t1:alice,t2:bob,t3") == {
            "t1": "alice", "t2": "bob", "t3": "default",
        }

    def test_whitespace_and_empty_items(self):
        assert parse_token_list(" t1 : alice ,, ") == {"t1": "alice"}

    def test_subject_may_contain_colons(self):
        assert parse_token_list("t1:svc:reporting") == {"t1": "svc:reporting"}
