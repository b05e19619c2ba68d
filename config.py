"""Configuration validation for the tier escalation loop."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

T = TypeVar("T")

TierMode = Literal["simple", "full"]


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class TierModels(BaseModel):
    """Model id per agent role. Only the artisan is mandatory."""

    model_config = ConfigDict(frozen=True)

    artisan: str = Field(min_length=1)
    librarian: Optional[str] = Field(default=None, min_length=1)
    critic: Optional[str] = Field(default=None, min_length=1)

    def by_role(self) -> dict[str, str]:
        """Return the configured roles only, in artisan/librarian/critic order."""
        roles = {"artisan": self.artisan, "librarian": self.librarian, "critic": self.critic}
        return {role: model for role, model in roles.items() if model}


class TierConfig(BaseModel):
    """One escalation level: fixed models plus an iteration budget."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(min_length=1)
    mode: TierMode
    max_iterations: int = Field(alias="maxIterations", ge=1, le=100)
    models: TierModels


class GlobalTierSettings(BaseModel):
    """Cross-tier settings. The ceilings apply to the whole run, not one tier."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    audit_db_path: Optional[str] = Field(default=None, alias="auditDbPath")
    max_total_cost_usd: Optional[float] = Field(default=None, alias="maxTotalCostUsd", gt=0)
    max_total_duration_minutes: Optional[float] = Field(
        default=None, alias="maxTotalDurationMinutes", gt=0
    )


class TierEscalationConfig(BaseModel):
    """Root model for a tier config file."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tiers: list[TierConfig] = Field(min_length=1)
    global_settings: GlobalTierSettings = Field(
        default_factory=GlobalTierSettings, alias="global"
    )

    @model_validator(mode="after")
    def _unique_tier_names(self) -> TierEscalationConfig:
        seen: set[str] = set()
        for tier in self.tiers:
            if tier.name in seen:
                raise ValueError(f"duplicate tier name: {tier.name}")
            seen.add(tier.name)
        return self


class LoopSettings(BaseModel):
    """Per-tier loop limits and behaviour switches."""

    max_cost_usd: float = Field(default=2.0, gt=0)
    max_duration_minutes: float = Field(default=15.0, gt=0)
    entropy_threshold: int = Field(default=3, ge=2, le=20)
    context_reset_frequency: int = Field(
        default=1, ge=1, le=100,
        description="Reset agent sessions every N iterations (1 = fresh context every iteration)",
    )
    log_redact_patterns: list[str] = Field(
        default_factory=lambda: [
            r"sk-ant-[\w-]+",
            r"sk-proj-[\w-]+",
            r"AIza[\w-]{20,}",
        ]
    )

    @field_validator("context_reset_frequency")
    @classmethod
    def _warn_on_sparse_resets(cls, value: int) -> int:
        if value > 1:
            logger.warning(
                "context_reset_frequency=%d keeps agent context across iterations; "
                "the 40%% context usage safety net will still force resets",
                value,
            )
        return value


def _format_issues(error: ValidationError) -> list[str]:
    issues = []
    for issue in error.errors():
        path = ".".join(str(part) for part in issue["loc"]) or "<root>"
        issues.append(f"{path}: {issue['msg']}")
    return issues


def validate_tier_config(raw: Any) -> list[str]:
    """Validate a raw tier config mapping. Returns one line per issue."""
    try:
        TierEscalationConfig.model_validate(raw)
    except ValidationError as e:
        return _format_issues(e)
    return []


def load_tier_config(config_path: str | Path) -> Result[TierEscalationConfig]:
    """Load and validate a tier config from a JSON file."""
    path = Path(config_path)
    if not path.exists():
        return Result.fail(f"Tier config not found: {path}", "NOT_FOUND")

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")

    try:
        config = TierEscalationConfig.model_validate(raw)
    except ValidationError as e:
        lines = "\n".join(f"  {line}" for line in _format_issues(e))
        return Result.fail(f"Tier config invalid: {path}\n{lines}", "VALIDATION_ERROR")

    logger.info("Loaded %d tier(s) from %s", len(config.tiers), path)
    return Result.ok(config)
