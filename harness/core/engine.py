# harness/core/engine.py
"""
Engine Contract (FINAL)

Every engine instance hosted by the Administrator implements this class.
The core never looks inside an engine; it only calls:

    init(params)          create and every update, full raw parameter JSON
    validate_event(ev)    before the event is mirrored (must not mutate)
    input(ev)             accumulate into the Dataset / reserved-event hook
    query(q)              read-only, may run concurrently with input
    destroy()             release Dataset + Model for good
    close()               release runtime resources only (shutdown, rollback)

Training capabilities are declared, not inherited:

    capabilities = {Capability.INCREMENTAL_UPDATE}  → update_incremental(ev)
    capabilities = {Capability.BATCH_TRAIN}         → train() -> Model
    both                                            → Mixed discipline

Concurrency contract:
- init and input are serialized per instance (input lock)
- update_incremental and train are serialized per instance (training worker);
  a batch run may overlap input, so train() reads a snapshot of the Dataset
- the core does NOT serialize query against input or publish_model;
  an engine that needs that guarantee locks its own model
- train() must not touch the serving model, it returns a new one;
  the Orchestrator publishes it only after train() returned normally
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet

from harness.core.dataset import Dataset
from harness.core.types import (
    Capability,
    Event,
    TrainingDiscipline,
    discipline_for,
)
from harness.storage.document_store import DocumentStore
from harness.utils.errors import ValidationError
from harness.utils.filesystem import FileSystem


@dataclass(frozen=True)
class EngineContext:
    """Everything the host hands to a new engine instance."""

    document_store: DocumentStore
    model_dir: Path


class Engine(ABC):
    capabilities: FrozenSet[Capability] = frozenset()

    # reserved events ($set / $unset / $delete) this engine actually handles
    reserved_events: FrozenSet[str] = frozenset()

    def __init__(self, engine_id: str, ctx: EngineContext):
        self.engine_id = engine_id
        self.ctx = ctx
        self.params: Dict[str, Any] = {}
        self.dataset = Dataset(engine_id, ctx.document_store)
        self.model: Any | None = None
        # set by the Orchestrator when the instance is being destroyed
        self.cancel_requested = threading.Event()

    @property
    def discipline(self) -> TrainingDiscipline | None:
        return discipline_for(self.capabilities)

    @property
    def model_dir(self) -> Path:
        return self.ctx.model_dir

    # --------------------------------------------------
    # lifecycle
    # --------------------------------------------------
    def init(self, params: Dict[str, Any]) -> None:
        """
        Subclasses parse their own sub-tree first, then call super().init()
        so a rejected update leaves the previous configuration active.
        """
        self.params = dict(params)

    def destroy(self) -> None:
        self.close()
        self.dataset.destroy()
        self.model = None
        FileSystem.remove(self.model_dir)

    def close(self) -> None:
        pass

    # --------------------------------------------------
    # events
    # --------------------------------------------------
    def validate_event(self, event: Event) -> None:
        if event.reserved and event.event not in self.reserved_events:
            raise ValidationError(
                f"Using {event.event} not supported", field="event"
            )

    def input(self, event: Event) -> None:
        if event.reserved:
            self.on_reserved_event(event)
            return
        self.dataset.append(event)

    def on_reserved_event(self, event: Event) -> None:
        """Real-time model mutation hook, only reached for reserved_events."""
        raise ValidationError(f"Using {event.event} not supported", field="event")

    @abstractmethod
    def query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    # --------------------------------------------------
    # training (capability gated)
    # --------------------------------------------------
    def update_incremental(self, event: Event) -> None:
        raise NotImplementedError(f"{type(self).__name__} has no incremental update")

    def train(self) -> Any:
        raise NotImplementedError(f"{type(self).__name__} has no batch training")

    def publish_model(self, model: Any) -> None:
        self.model = model

    # --------------------------------------------------
    def status(self) -> Dict[str, Any]:
        return {
            "datasetCount": self.dataset.count(),
            "hasModel": self.model is not None,
        }
