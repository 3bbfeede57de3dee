# harness/registry/administrator.py
"""
Administrator (engine registry)

Single owner of the live engine instances. Structural operations
(create / update / destroy) are serialized per engine id; different ids
proceed concurrently. Nothing else in the process holds instances: the
Router and the REST layer reach them only through get().
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping

from harness.config.app_config import AppConfig
from harness.core.engine import Engine, EngineContext
from harness.core.types import EngineRecord, EngineState, utcnow
from harness.mirror.log import MirrorLog
from harness.params.store import EngineParams, parse_and_validate, parse_json
from harness.registry.factories import EngineFactoryRegistry
from harness.storage import DocumentStore, MetadataStore, build_document_store
from harness.training.orchestrator import TrainingOrchestrator
from harness.utils.errors import (
    DuplicateId,
    HarnessError,
    NotFound,
    UnsupportedUpdate,
    ValidationError,
    wrap_plugin_error,
)
from harness.utils.keyed_lock import KeyedLock
from harness.utils.logger import logs


@dataclass
class EngineHandle:
    record: EngineRecord
    engine: Engine
    state: EngineState = EngineState.ACTIVE
    # serializes input / re-init on this instance; queries never take it
    input_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def engine_id(self) -> str:
        return self.record.engine_id


class Administrator:
    def __init__(
        self,
        *,
        metadata_store: MetadataStore,
        document_store: DocumentStore,
        mirror_log: MirrorLog,
        orchestrator: TrainingOrchestrator,
        factories: EngineFactoryRegistry,
        model_root: str | Path,
    ):
        self.metadata = metadata_store
        self.documents = document_store
        self.mirror = mirror_log
        self.orchestrator = orchestrator
        self.factories = factories
        self.model_root = Path(model_root)

        self._live: Dict[str, EngineHandle] = {}
        self._live_guard = threading.Lock()
        # one lock per engine id, dropped once no caller holds or waits on it
        self._id_locks = KeyedLock()

        self.failed_restores: Dict[str, str] = {}

    @classmethod
    def from_config(
        cls, cfg: AppConfig, factories: EngineFactoryRegistry | None = None
    ) -> "Administrator":
        return cls(
            metadata_store=MetadataStore(cfg.store.root),
            document_store=build_document_store(cfg.store),
            mirror_log=MirrorLog(cfg.mirror.root),
            orchestrator=TrainingOrchestrator(
                wait_for_incremental=cfg.training.wait_for_incremental
            ),
            factories=factories or EngineFactoryRegistry(),
            model_root=Path(cfg.store.root) / "models",
        )

    # --------------------------------------------------
    # lookup
    # --------------------------------------------------
    def get(self, engine_id: str) -> EngineHandle:
        with self._live_guard:
            handle = self._live.get(engine_id)
        if handle is None or handle.state is EngineState.DESTROYED:
            raise NotFound(f"engine '{engine_id}' not found", engine_id=engine_id)
        return handle

    def ids(self) -> List[str]:
        with self._live_guard:
            return sorted(self._live)

    # --------------------------------------------------
    # create
    # --------------------------------------------------
    def create(self, params: str | bytes | Mapping[str, Any], *, persist: bool = True) -> str:
        doc = parse_json(params)
        top = parse_and_validate(doc, EngineParams)
        engine_id = top.engine_id

        with self._id_locks.hold(engine_id):
            with self._live_guard:
                if engine_id in self._live:
                    raise DuplicateId(
                        f"engine '{engine_id}' already exists",
                        field="engineId",
                        engine_id=engine_id,
                    )

            ctor = self.factories.resolve(top.engine_factory)
            ctx = EngineContext(
                document_store=self.documents,
                model_dir=self.model_root / engine_id,
            )

            engine: Engine | None = None
            try:
                engine = ctor(engine_id, ctx)
                engine.init(doc)
            except Exception as e:
                if engine is not None:
                    self._close_quietly(engine)
                raise wrap_plugin_error(e, operation="init", engine_id=engine_id) from e

            record = EngineRecord(
                engine_id=engine_id,
                engine_factory=top.engine_factory,
                params=doc,
                mirror_type=top.mirror_type,
                mirror_location=top.mirror_location,
            )

            self.mirror.set_mode(engine_id, top.mirroring_enabled, top.mirror_location)
            if engine.discipline is not None:
                self.orchestrator.attach(engine)

            if persist:
                try:
                    self.metadata.save(record)
                except HarnessError:
                    self.orchestrator.detach(engine_id)
                    self.mirror.forget(engine_id)
                    self._close_quietly(engine)
                    raise

            with self._live_guard:
                self._live[engine_id] = EngineHandle(record=record, engine=engine)

        logs.info(
            f"[Administrator] created {engine_id} factory={top.engine_factory} "
            f"discipline={engine.discipline.value if engine.discipline else 'none'} "
            f"mirroring={top.mirroring_enabled}"
        )
        return engine_id

    @staticmethod
    def _close_quietly(engine: Engine) -> None:
        try:
            engine.close()
        except Exception:
            logs.exception(f"[Administrator] {engine.engine_id} close failed during rollback")

    # --------------------------------------------------
    # update
    # --------------------------------------------------
    def update(self, engine_id: str, params: str | bytes | Mapping[str, Any]) -> None:
        doc = parse_json(params)

        with self._id_locks.hold(engine_id):
            handle = self.get(engine_id)
            top = parse_and_validate(doc, EngineParams)

            if top.engine_id != engine_id:
                raise ValidationError(
                    f"engineId is immutable: '{top.engine_id}' != '{engine_id}'",
                    field="engineId",
                    engine_id=engine_id,
                )
            if top.engine_factory != handle.record.engine_factory:
                raise UnsupportedUpdate(
                    f"engineFactory cannot change from '{handle.record.engine_factory}' "
                    f"to '{top.engine_factory}'",
                    field="engineFactory",
                    engine_id=engine_id,
                )

            old_record = handle.record
            new_record = old_record.model_copy(
                update={
                    "params": doc,
                    "mirror_type": top.mirror_type,
                    "mirror_location": top.mirror_location,
                    "updated_at": utcnow(),
                }
            )

            with handle.input_lock:
                handle.state = EngineState.UPDATING
                try:
                    handle.engine.init(doc)
                except Exception as e:
                    raise wrap_plugin_error(e, operation="init", engine_id=engine_id) from e
                finally:
                    handle.state = EngineState.ACTIVE

                try:
                    self.metadata.save(new_record)
                except HarnessError:
                    # keep engine and metadata consistent
                    handle.engine.init(old_record.params)
                    raise

                self.mirror.set_mode(engine_id, top.mirroring_enabled, top.mirror_location)
                handle.record = new_record

        logs.info(f"[Administrator] updated {engine_id} mirroring={top.mirroring_enabled}")

    # --------------------------------------------------
    # destroy
    # --------------------------------------------------
    def destroy(self, engine_id: str) -> None:
        with self._id_locks.hold(engine_id):
            # leave the routing table first: no new call reaches the instance
            with self._live_guard:
                handle = self._live.pop(engine_id, None)
            if handle is None:
                raise NotFound(f"engine '{engine_id}' not found", engine_id=engine_id)
            handle.state = EngineState.DESTROYED

            with handle.input_lock:
                handle.engine.cancel_requested.set()
                self.orchestrator.detach(engine_id)
                self.mirror.forget(engine_id)
                try:
                    handle.engine.destroy()
                except Exception as e:
                    logs.exception(f"[Administrator] {engine_id} destroy raised")
                    self.metadata.delete(engine_id)
                    raise wrap_plugin_error(e, operation="destroy", engine_id=engine_id) from e

                self.metadata.delete(engine_id)

        logs.info(f"[Administrator] destroyed {engine_id}")

    # --------------------------------------------------
    # restart
    # --------------------------------------------------
    @logs.catch(msg="restore_all aborted")
    def restore_all(self) -> Dict[str, Any]:
        """
        Rebuild every instance from persisted metadata. Individual failures are
        logged and reported; the process keeps going.
        """
        records, bad = self.metadata.load_all()
        restored: List[str] = []
        failed: Dict[str, str] = dict(bad)

        for record in records:
            try:
                self.create(record.params, persist=False)
            except HarnessError as e:
                failed[record.engine_id] = f"{e.kind}: {e.message}"
                logs.error(f"[Administrator] restore {record.engine_id} failed: {e.message}")
                continue
            # keep the original timestamps
            with self._live_guard:
                handle = self._live.get(record.engine_id)
                if handle is not None:
                    handle.record = record
            restored.append(record.engine_id)

        self.failed_restores = failed
        logs.info(
            f"[Administrator] restore_all restored={len(restored)} failed={len(failed)}"
        )
        return {"restored": restored, "failed": failed}

    # --------------------------------------------------
    # status
    # --------------------------------------------------
    def status(self, engine_id: str) -> Dict[str, Any]:
        handle = self.get(engine_id)
        engine = handle.engine
        body: Dict[str, Any] = {
            "engineId": engine_id,
            "engineFactory": handle.record.engine_factory,
            "state": handle.state.value,
            "discipline": engine.discipline.value if engine.discipline else None,
            "mirroring": self.mirror.is_enabled(engine_id),
            "createdAt": handle.record.created_at.isoformat(),
            "updatedAt": handle.record.updated_at.isoformat(),
        }
        if engine.discipline is not None:
            body["training"] = self.orchestrator.state(engine_id)
        try:
            body["engine"] = engine.status()
        except Exception as e:
            raise wrap_plugin_error(e, operation="status", engine_id=engine_id) from e
        return body

    def list(self) -> List[Dict[str, Any]]:
        out = []
        for engine_id in self.ids():
            try:
                out.append(self.status(engine_id))
            except NotFound:
                # destroyed while listing
                continue
        return out

    def shutdown(self) -> None:
        self.orchestrator.shutdown()
        with self._live_guard:
            handles = list(self._live.values())
        for handle in handles:
            self._close_quietly(handle.engine)
        logs.info("[Administrator] shutdown complete")
