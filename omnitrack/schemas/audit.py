from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .negotiation import ConflictRecord, NegotiationStatus
from .scenario import PreferenceWeights

GENESIS_HASH = "0" * 64

_CHAIN_FIELDS = {"sequence", "previous_hash", "entry_hash"}


class AuditLogEntry(BaseModel):
    """Append-only record of one negotiation decision.

    Entries are created unsealed by the recorder; the audit store assigns the
    sequence number and links the entry to its predecessor through
    ``previous_hash`` and ``entry_hash`` when it is appended.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: uuid4().hex)
    scenario_id: str
    event_type: str = "negotiation_decision"
    outcome: NegotiationStatus
    selected_proposal_ids: tuple[str, ...] = ()
    escalation: ConflictRecord | None = None
    weights: PreferenceWeights
    partial: bool = False
    rationale: str = ""
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    sequence: int | None = None
    previous_hash: str | None = None
    entry_hash: str | None = None

    @property
    def sealed(self) -> bool:
        return self.entry_hash is not None

    def content(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude=_CHAIN_FIELDS)

    def compute_hash(self, *, sequence: int, previous_hash: str) -> str:
        material = json.dumps(
            {"sequence": sequence, "previous_hash": previous_hash, "content": self.content()},
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def seal(self, *, sequence: int, previous_hash: str) -> "AuditLogEntry":
        return self.model_copy(
            update={
                "sequence": sequence,
                "previous_hash": previous_hash,
                "entry_hash": self.compute_hash(sequence=sequence, previous_hash=previous_hash),
            }
        )


class ChainVerification(BaseModel):
    valid: bool
    entries_checked: int
    first_invalid_sequence: int | None = None
    error: str | None = None


def verify_chain(entries: list[AuditLogEntry]) -> ChainVerification:
    """Recompute every link of an ordered audit chain."""
    previous = GENESIS_HASH
    for index, entry in enumerate(entries, start=1):
        if entry.sequence != index:
            return ChainVerification(
                valid=False,
                entries_checked=index - 1,
                first_invalid_sequence=entry.sequence,
                error=f"expected sequence {index}",
            )
        if entry.previous_hash != previous:
            return ChainVerification(
                valid=False,
                entries_checked=index - 1,
                first_invalid_sequence=index,
                error="previous hash does not match predecessor",
            )
        if entry.entry_hash != entry.compute_hash(sequence=index, previous_hash=previous):
            return ChainVerification(
                valid=False,
                entries_checked=index - 1,
                first_invalid_sequence=index,
                error="entry content does not match its hash",
            )
        previous = entry.entry_hash
    return ChainVerification(valid=True, entries_checked=len(entries))
