from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class NodeState(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str = Field(min_length=1)
    node_type: str = "facility"
    status: str = "operational"
    inventory_level: float = Field(0.0, ge=0.0)
    capacity: float = Field(0.0, ge=0.0)
    utilization: float = Field(0.0, ge=0.0)
    lead_time_days: float = Field(0.0, ge=0.0)
    location: str | None = None


class StateSnapshot(BaseModel):
    """Read-only view of supply-chain node state at one instant."""

    model_config = ConfigDict(frozen=True)

    nodes: tuple[NodeState, ...] = ()
    missing_node_ids: tuple[str, ...] = ()
    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
