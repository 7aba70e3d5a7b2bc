"""Configuration schema using Pydantic."""

from __future__ import annotations

import math
import os
from pathlib import Path
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def _default_gemini_model() -> str:
    return os.environ.get("OM_GEMINI_MODEL") or "gemini-2.5-flash"


def _coerce_number(value: Any, *, minimum: float) -> float | None:
    """Return a clamped finite number, or None so the field default applies."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return max(minimum, value)


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    # Minimum per numeric field; fields not listed use 1.
    NUMERIC_MINIMUMS: ClassVar[dict[str, float]] = {}

    @model_validator(mode="before")
    @classmethod
    def _drop_invalid_values(cls, data: Any) -> Any:
        """Drop values of the wrong shape so the field default is used instead of failing."""
        if not isinstance(data, dict):
            return {}
        cleaned: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            key = field.alias if field.alias and field.alias in data else name
            if key not in data:
                continue
            raw = data[key]
            annotation = field.annotation
            if annotation is bool:
                if isinstance(raw, bool):
                    cleaned[name] = raw
            elif annotation in (int, float):
                number = _coerce_number(raw, minimum=cls.NUMERIC_MINIMUMS.get(name, 1))
                if number is not None:
                    cleaned[name] = int(number) if annotation is int else float(number)
            elif annotation is str:
                if isinstance(raw, str) and raw.strip():
                    cleaned[name] = raw.strip()
            else:
                cleaned[name] = raw
        return cls._clean_structured(cleaned)

    @classmethod
    def _clean_structured(cls, cleaned: dict[str, Any]) -> dict[str, Any]:
        return cleaned


class ResilienceConfig(Base):
    """Timeout / retry / circuit-breaker settings for the hosted-API channel."""

    NUMERIC_MINIMUMS: ClassVar[dict[str, float]] = {
        "max_retries": 0,
        "circuit_breaker_threshold": 0,
        "circuit_breaker_cooldown": 0,
    }

    timeout: int = 120
    max_retries: int = 2
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown: int = 60


class OMConfig(Base):
    """Observational memory configuration (``om-config.json``)."""

    NUMERIC_MINIMUMS: ClassVar[dict[str, float]] = {"auto_observe_pending_token_threshold": 0}

    recent_turn_budget_tokens: int = 12_000
    max_observation_items: int = 1200
    max_observer_transcript_chars: int = 200_000
    max_reflector_observations_chars: int = 240_000
    gemini_cli_model: str = Field(default_factory=_default_gemini_model)
    compression_models: list[str] = Field(
        default_factory=lambda: ["gemini/gemini-2.5-flash", "gpt-4o-mini", "gpt-4.1-mini"]
    )
    force_observe_auto_compact: bool = True
    memory_injection_mode: Literal["all", "core_relevant"] = "all"
    core_memory_max_tokens: int = 500
    relevant_observation_max_items: int = 20
    relevant_observation_max_tokens: int = 1400
    enable_reflection: bool = True
    reflect_every_n_observations: int = 3
    reflect_when_observation_tokens_over: int = 3000
    reflect_before_compaction: bool = True
    aggressive_reflect_before_compaction: bool = True
    auto_observe_pending_token_threshold: int = 0
    channel_timeout_seconds: int = 180
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)

    @classmethod
    def _clean_structured(cls, cleaned: dict[str, Any]) -> dict[str, Any]:
        cleaned["memory_injection_mode"] = (
            "core_relevant" if cleaned.get("memory_injection_mode") == "core_relevant" else "all"
        )
        models = cleaned.pop("compression_models", None)
        if isinstance(models, list):
            valid = [m.strip() for m in models if isinstance(m, str) and m.strip()]
            if valid:
                cleaned["compression_models"] = valid
        resilience = cleaned.pop("resilience", None)
        if isinstance(resilience, dict):
            cleaned["resilience"] = resilience
        return cleaned

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize with the camelCase keys used on disk."""
        return self.model_dump(by_alias=True)


class StorageSettings(BaseModel):
    """Environment-driven storage scope and durable store location."""

    scope: Literal["thread", "resource"] = "thread"
    sqlite_enabled: bool = False
    sqlite_path: Path = Field(
        default_factory=lambda: Path.home() / ".obsmem" / "data" / "observational-memory.sqlite"
    )
    resource_id: str | None = None

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> StorageSettings:
        env = os.environ if environ is None else environ
        scope = "resource" if env.get("OM_SCOPE") == "resource" else "thread"
        settings = cls(
            scope=scope,
            sqlite_enabled=env.get("OM_SQLITE") == "1" or scope == "resource",
            resource_id=env.get("OM_RESOURCE_ID") or None,
        )
        if env.get("OM_SQLITE_PATH"):
            settings.sqlite_path = Path(env["OM_SQLITE_PATH"]).expanduser()
        return settings
