# harness/core/types.py
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from harness.params.store import parse_and_validate, parse_json


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# Lifecycle enums
# ============================================================
class EngineState(str, Enum):
    ACTIVE = "active"
    UPDATING = "updating"
    DESTROYED = "destroyed"


class TrainingState(str, Enum):
    IDLE = "idle"
    TRAINING = "training"
    FAILED = "failed"


class TrainingDiscipline(str, Enum):
    """
    CONTINUOUS : every accepted event triggers an incremental update (kappa)
    PERIODIC   : events accumulate, an explicit train() builds the model (lambda)
    MIXED      : both, serialized through the same per-instance worker
    """

    CONTINUOUS = "continuous"
    PERIODIC = "periodic"
    MIXED = "mixed"


class Capability(str, Enum):
    INCREMENTAL_UPDATE = "incremental_update"
    BATCH_TRAIN = "batch_train"


def discipline_for(capabilities: Iterable[Capability]) -> TrainingDiscipline | None:
    caps = set(capabilities)
    incremental = Capability.INCREMENTAL_UPDATE in caps
    batch = Capability.BATCH_TRAIN in caps
    if incremental and batch:
        return TrainingDiscipline.MIXED
    if incremental:
        return TrainingDiscipline.CONTINUOUS
    if batch:
        return TrainingDiscipline.PERIODIC
    # query-only engine: nothing to orchestrate
    return None


# ============================================================
# Event (immutable once accepted)
# ============================================================
RESERVED_EVENTS = frozenset({"$set", "$unset", "$delete"})


class Event(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    entity_type: str = Field(alias="entityType", min_length=1)
    entity_id: str = Field(alias="entityId", min_length=1)
    event: str = Field(min_length=1)
    target_entity_type: str | None = Field(default=None, alias="targetEntityType")
    target_entity_id: str | None = Field(default=None, alias="targetEntityId")
    properties: dict[str, Any] = Field(default_factory=dict)
    event_time: datetime = Field(default_factory=utcnow, alias="eventTime")
    creation_time: datetime = Field(default_factory=utcnow, alias="creationTime")

    # the request body exactly as the caller sent it (mirrored verbatim)
    _raw: dict[str, Any] | None = PrivateAttr(default=None)

    @classmethod
    def parse(cls, raw: str | bytes | Mapping[str, Any]) -> "Event":
        """
        Validate an incoming event. creationTime is always stamped here,
        a caller-supplied value is ignored.
        """
        doc = parse_json(raw)
        body = {k: v for k, v in doc.items() if k != "creationTime"}
        event = parse_and_validate(body, cls, error_msg="invalid event")
        event._raw = doc
        return event

    @property
    def reserved(self) -> bool:
        return self.event in RESERVED_EVENTS

    @property
    def raw(self) -> dict[str, Any]:
        if self._raw is not None:
            return self._raw
        return self.model_dump(by_alias=True, mode="json", exclude={"creation_time"})

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Event":
        return cls.model_validate(doc)


# ============================================================
# Persisted metadata record (one per instance)
# ============================================================
class EngineRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    engine_id: str = Field(alias="engineId")
    engine_factory: str = Field(alias="engineFactory")
    params: dict[str, Any]
    mirror_type: str | None = Field(default=None, alias="mirrorType")
    mirror_location: str | None = Field(default=None, alias="mirrorLocation")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)
