from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..core.errors import ScenarioValidationError

WEIGHT_SUM_TOLERANCE = 1e-6


class DisruptionType(str, Enum):
    NATURAL_DISASTER = "natural_disaster"
    SUPPLIER_FAILURE = "supplier_failure"
    TRANSPORTATION_DELAY = "transportation_delay"
    DEMAND_SPIKE = "demand_spike"
    QUALITY_ISSUE = "quality_issue"
    GEOPOLITICAL = "geopolitical"
    CYBER_ATTACK = "cyber_attack"
    LABOR_SHORTAGE = "labor_shortage"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PreferenceWeights(BaseModel):
    """User preference over the four negotiation objectives."""

    model_config = ConfigDict(frozen=True)

    cost: float = Field(0.25, ge=0.0, le=1.0)
    time: float = Field(0.25, ge=0.0, le=1.0)
    risk: float = Field(0.25, ge=0.0, le=1.0)
    sustainability: float = Field(0.25, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_sum(self) -> "PreferenceWeights":
        total = self.cost + self.time + self.risk + self.sustainability
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"preference weights must sum to 1 (got {total:.6f})")
        return self

    def as_dict(self) -> dict[str, float]:
        return {
            "cost": self.cost,
            "risk": self.risk,
            "sustainability": self.sustainability,
            "time": self.time,
        }


class ScenarioRequest(BaseModel):
    """A disruption scenario submitted for analysis. Immutable once accepted."""

    model_config = ConfigDict(frozen=True)

    disruption_type: DisruptionType
    location: str = Field(min_length=1)
    severity: Severity
    duration_days: float = Field(gt=0.0)
    affected_node_ids: tuple[str, ...] = Field(min_length=1)
    preference_weights: PreferenceWeights | None = None
    description: str | None = None

    @field_validator("affected_node_ids")
    @classmethod
    def _check_node_ids(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        cleaned = tuple(item.strip() for item in value)
        if any(not item for item in cleaned):
            raise ValueError("affected node identifiers must be non-empty")
        return cleaned

    @property
    def weights(self) -> PreferenceWeights:
        return self.preference_weights or PreferenceWeights()

    def fingerprint(self) -> str:
        """Stable SHA-256 over the canonical request, used as the default idempotency key."""
        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def parse(cls, payload: "ScenarioRequest | Mapping[str, Any]") -> "ScenarioRequest":
        if isinstance(payload, ScenarioRequest):
            return payload
        try:
            return cls.model_validate(dict(payload))
        except ValidationError as exc:
            raise ScenarioValidationError(
                "invalid scenario request",
                errors=exc.errors(include_url=False, include_context=False),
            ) from exc
