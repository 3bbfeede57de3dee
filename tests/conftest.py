# tests/conftest.py
from __future__ import annotations

import threading
from typing import Any, Dict, List

import pytest
from loguru import logger

from harness.core.engine import Engine, EngineContext
from harness.core.types import Capability, Event
from harness.mirror.log import MirrorLog
from harness.registry.administrator import Administrator
from harness.registry.factories import EngineFactoryRegistry, builtin_factories
from harness.registry.router import Router
from harness.storage import MemoryDocumentStore, MetadataStore
from harness.training.orchestrator import TrainingOrchestrator


@pytest.fixture(autouse=True)
def disable_file_logger():
    logger.remove()
    logger.add(lambda msg: None)  # or sys.stderr
    yield


# =============================================================================
# Test engines (registered next to the built-ins)
# =============================================================================
class RecordingEngine(Engine):
    """
    Mixed discipline engine that records every mutation in order.

    - gate: train() blocks until gate is set (simulates a long batch run)
    - fail_train / fail_update: make the next call raise
    """

    capabilities = frozenset({Capability.INCREMENTAL_UPDATE, Capability.BATCH_TRAIN})

    def __init__(self, engine_id: str, ctx: EngineContext):
        super().__init__(engine_id, ctx)
        self.updates: List[str] = []
        self.init_calls: List[Dict[str, Any]] = []
        self.gate = threading.Event()
        self.gate.set()
        self.train_started = threading.Event()
        self.fail_train = False
        self.fail_update = False
        self.fail_init = False

    def init(self, params: Dict[str, Any]) -> None:
        if self.fail_init or params.get("algorithm", {}).get("explode"):
            raise RuntimeError("init exploded")
        super().init(params)
        self.init_calls.append(params)

    def update_incremental(self, event: Event) -> None:
        if self.fail_update:
            raise RuntimeError("update exploded")
        self.updates.append(event.entity_id)

    def train(self) -> Dict[str, Any]:
        self.train_started.set()
        self.gate.wait(timeout=10)
        if self.fail_train:
            raise RuntimeError("train exploded")
        return {"trained_on": self.dataset.count(), "version": len(self.updates)}

    def query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        return {"model": self.model, "echo": query}


class IncrementalOnlyEngine(RecordingEngine):
    capabilities = frozenset({Capability.INCREMENTAL_UPDATE})


class BatchOnlyEngine(RecordingEngine):
    capabilities = frozenset({Capability.BATCH_TRAIN})


class QueryOnlyEngine(Engine):
    def query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        return {"count": self.dataset.count()}


@pytest.fixture
def factories() -> EngineFactoryRegistry:
    registry = EngineFactoryRegistry(builtin_factories())
    registry.register("recording", RecordingEngine)
    registry.register("incremental_only", IncrementalOnlyEngine)
    registry.register("batch_only", BatchOnlyEngine)
    registry.register("query_only", QueryOnlyEngine)
    return registry


@pytest.fixture
def make_admin(tmp_path, factories):
    """
    Factory fixture: every call builds a fresh Administrator over the same
    tmp_path, which simulates a process restart.
    """
    admins: List[Administrator] = []

    def _make(document_store=None) -> Administrator:
        admin = Administrator(
            metadata_store=MetadataStore(tmp_path / "store", delay=0.0),
            document_store=document_store or MemoryDocumentStore(),
            mirror_log=MirrorLog(tmp_path / "mirrors"),
            orchestrator=TrainingOrchestrator(),
            factories=factories,
            model_root=tmp_path / "models",
        )
        admins.append(admin)
        return admin

    yield _make

    for admin in admins:
        admin.shutdown()


@pytest.fixture
def admin(make_admin) -> Administrator:
    return make_admin()


@pytest.fixture
def router(admin) -> Router:
    return Router(admin)


# =============================================================================
# Document builders
# =============================================================================
def _engine_params(engine_id: str, factory: str = "recording", **extra) -> Dict[str, Any]:
    doc = {"engineId": engine_id, "engineFactory": factory}
    doc.update(extra)
    return doc


def _event(entity_id: str = "u1", name: str = "buy", target: str | None = "i1", **extra) -> Dict[str, Any]:
    doc = {"entityType": "user", "entityId": entity_id, "event": name}
    if target is not None:
        doc["targetEntityType"] = "item"
        doc["targetEntityId"] = target
    doc.update(extra)
    return doc


@pytest.fixture
def make_params():
    return _engine_params


@pytest.fixture
def make_event():
    return _event
