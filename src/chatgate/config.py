"""
Gateway configuration.

Every component owns a small config dataclass validated in __post_init__.
GatewayConfig bundles them and can be filled from CHATGATE_* environment
variables; CLI flags override on top.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Literal

from chatgate.connectors.bridge.types import BridgeConfig
from chatgate.connectors.ratelimit import RateLimiterConfig
from chatgate.delivery.pipeline import PipelineConfig
from chatgate.session.supervisor import SupervisorConfig

ENV_PREFIX = "CHATGATE_"

TransportKind = Literal["memory", "bridge"]
_TRANSPORT_KINDS = ("memory", "bridge")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    return env.get(ENV_PREFIX + name, default)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


@dataclass
class ServerConfig:
    """HTTP listener settings."""

    host: str = "0.0.0.0"
    port: int = 3000

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("host must not be empty")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be in [0, 65535], got {self.port}")


@dataclass
class GatewayConfig:
    """
    Complete gateway configuration.

    Attributes:
        transport: "memory" for dry runs, "bridge" for the real network.
        auto_ready: Memory transport only: become READY right after initialize.
        log_level: Root log level name.
        json_logs: JSON lines (production) or human-readable output.
    """

    server: ServerConfig = field(default_factory=ServerConfig)
    transport: TransportKind = "memory"
    auto_ready: bool = True
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    rate_limit: RateLimiterConfig = field(default_factory=RateLimiterConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    log_level: str = "INFO"
    json_logs: bool = True

    def __post_init__(self) -> None:
        if self.transport not in _TRANSPORT_KINDS:
            raise ValueError(f"transport must be one of {_TRANSPORT_KINDS}, got {self.transport!r}")
        self.log_level = self.log_level.upper()
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {_LOG_LEVELS}, got {self.log_level!r}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> GatewayConfig:
        """Build configuration from CHATGATE_* variables, defaults elsewhere."""
        env = os.environ if environ is None else environ

        limiter_defaults = RateLimiterConfig()
        supervisor_defaults = SupervisorConfig()
        pipeline_defaults = PipelineConfig()
        bridge_defaults = BridgeConfig()

        return cls(
            server=ServerConfig(
                host=_env_str(env, "HOST", "0.0.0.0"),
                port=_env_int(env, "PORT", 3000),
            ),
            transport=_env_str(env, "TRANSPORT", "memory"),  # type: ignore[arg-type]
            auto_ready=_env_bool(env, "AUTO_READY", True),
            bridge=BridgeConfig(
                url=_env_str(env, "BRIDGE_URL", bridge_defaults.url),
                request_timeout_ms=_env_int(
                    env, "BRIDGE_REQUEST_TIMEOUT_MS", bridge_defaults.request_timeout_ms
                ),
                initialize_timeout_ms=_env_int(
                    env, "BRIDGE_INITIALIZE_TIMEOUT_MS", bridge_defaults.initialize_timeout_ms
                ),
            ),
            rate_limit=RateLimiterConfig(
                max_per_window=_env_int(env, "MAX_PER_WINDOW", limiter_defaults.max_per_window),
                min_spacing_ms=_env_int(env, "MIN_SPACING_MS", limiter_defaults.min_spacing_ms),
                cooldown_ms=_env_int(env, "COOLDOWN_MS", limiter_defaults.cooldown_ms),
                window_ms=_env_int(env, "WINDOW_MS", limiter_defaults.window_ms),
                window_cooldown_ms=_env_int(
                    env, "WINDOW_COOLDOWN_MS", limiter_defaults.window_cooldown_ms
                ),
            ),
            supervisor=SupervisorConfig(
                reconnect_delay_ms=_env_int(
                    env, "RECONNECT_DELAY_MS", supervisor_defaults.reconnect_delay_ms
                ),
                init_retry_delay_ms=_env_int(
                    env, "INIT_RETRY_DELAY_MS", supervisor_defaults.init_retry_delay_ms
                ),
                settle_delay_ms=_env_int(env, "SETTLE_DELAY_MS", supervisor_defaults.settle_delay_ms),
            ),
            pipeline=PipelineConfig(
                default_country_code=_env_str(
                    env, "DEFAULT_COUNTRY_CODE", pipeline_defaults.default_country_code
                ),
                rate_limit_retries=_env_int(
                    env, "RATE_LIMIT_RETRIES", pipeline_defaults.rate_limit_retries
                ),
            ),
            log_level=_env_str(env, "LOG_LEVEL", "INFO"),
            json_logs=_env_bool(env, "JSON_LOGS", True),
        )
