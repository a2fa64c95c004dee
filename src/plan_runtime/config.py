"""Runtime settings loaded from the environment (and an optional ``.env``)."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from .core.Exceptions import ConfigError
from .plans.models import ExecutionMode, FailurePolicy

logger = logging.getLogger(__name__)

__all__ = ["RuntimeSettings"]

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _get(env: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _get_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc


def _get_float(env: Mapping[str, str], key: str, default: Optional[float]) -> Optional[float]:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {raw!r}")
    return value


def _get_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _get(env, key)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ConfigError(f"{key} must be a boolean flag, got {raw!r}")


@dataclass(slots=True)
class RuntimeSettings:
    """Settings shared by the engine, the tool registry and the executor.

    Environment variables
    ---------------------
    OPENAI_API_KEY, OPENAI_BASE_URL, MODEL_NAME, MAX_TOKENS, TOOL_CONFIG_PATH,
    PLAN_FAILURE_POLICY (``fail_fast`` | ``best_effort``),
    PLAN_EXECUTION_MODE (``sequential`` | ``graph``),
    PLAN_IDLE_TIMEOUT_SECONDS, TOOL_TIMEOUT_SECONDS,
    PLACEHOLDER_PRESERVE_TYPES.
    """

    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    model_name: str = "gpt-4o-mini"
    max_tokens: int = 1000
    tool_config_path: Optional[str] = None
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    idle_timeout_seconds: float = 1800.0
    tool_timeout_seconds: Optional[float] = None
    preserve_types: bool = False

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        *,
        dotenv_path: Optional[str] = None,
    ) -> "RuntimeSettings":
        """Build settings from ``env`` (default: ``os.environ`` after ``load_dotenv``)."""
        if env is None:
            loaded = load_dotenv(dotenv_path)
            logger.debug("load_dotenv(%r) -> %s", dotenv_path, loaded)
            env = os.environ

        policy_raw = _get(env, "PLAN_FAILURE_POLICY", FailurePolicy.FAIL_FAST.value)
        try:
            policy = FailurePolicy(policy_raw.lower())
        except ValueError as exc:
            raise ConfigError(
                f"PLAN_FAILURE_POLICY must be one of "
                f"{[p.value for p in FailurePolicy]}, got {policy_raw!r}"
            ) from exc

        mode_raw = _get(env, "PLAN_EXECUTION_MODE", ExecutionMode.SEQUENTIAL.value)
        try:
            mode = ExecutionMode(mode_raw.lower())
        except ValueError as exc:
            raise ConfigError(
                f"PLAN_EXECUTION_MODE must be one of "
                f"{[m.value for m in ExecutionMode]}, got {mode_raw!r}"
            ) from exc

        max_tokens = _get_int(env, "MAX_TOKENS", 1000)
        if max_tokens <= 0:
            raise ConfigError(f"MAX_TOKENS must be positive, got {max_tokens}")

        settings = cls(
            openai_api_key=_get(env, "OPENAI_API_KEY"),
            openai_base_url=_get(env, "OPENAI_BASE_URL"),
            model_name=_get(env, "MODEL_NAME", "gpt-4o-mini"),
            max_tokens=max_tokens,
            tool_config_path=_get(env, "TOOL_CONFIG_PATH"),
            failure_policy=policy,
            execution_mode=mode,
            idle_timeout_seconds=_get_float(env, "PLAN_IDLE_TIMEOUT_SECONDS", 1800.0),
            tool_timeout_seconds=_get_float(env, "TOOL_TIMEOUT_SECONDS", None),
            preserve_types=_get_bool(env, "PLACEHOLDER_PRESERVE_TYPES", False),
        )
        if settings.openai_api_key is None:
            logger.warning("OPENAI_API_KEY is not set; OpenAIEngine will rely on the client default")
        return settings

    def to_dict(self) -> Dict[str, Any]:
        """Non-secret snapshot for logging."""
        d = asdict(self)
        d["openai_api_key"] = "***" if self.openai_api_key else None
        d["failure_policy"] = self.failure_policy.value
        d["execution_mode"] = self.execution_mode.value
        return d
