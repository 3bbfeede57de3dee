# harness/registry/router.py
from __future__ import annotations

from typing import Any, Dict, Mapping

from harness.core.types import EngineState, Event
from harness.params.store import parse_json
from harness.registry.administrator import Administrator
from harness.utils.errors import NotFound, StorageFailure, wrap_plugin_error
from harness.utils.logger import logs


class Router:
    """
    Stateless dispatch: engine id → live instance.

    input path (per instance, in this order):
        validate → mirror (if enabled) → engine.input → orchestrator follow-on
        (a mirrored event the engine refuses is retracted from the log)

    The per-instance input lock keeps mirror order == acceptance order ==
    Dataset order. Queries take no lock at all.
    """

    def __init__(self, admin: Administrator):
        self.admin = admin

    def input(
        self,
        engine_id: str,
        raw: str | bytes | Mapping[str, Any],
        *,
        mirror: bool = True,
    ) -> Dict[str, Any]:
        handle = self.admin.get(engine_id)
        event = Event.parse(raw)
        engine = handle.engine

        try:
            engine.validate_event(event)
        except Exception as e:
            raise wrap_plugin_error(e, operation="input", engine_id=engine_id) from e

        with handle.input_lock:
            if handle.state is EngineState.DESTROYED:
                raise NotFound(f"engine '{engine_id}' not found", engine_id=engine_id)

            # StorageFailure here means the event is not accepted
            rec = self.admin.mirror.record(engine_id, event) if mirror else None

            try:
                engine.input(event)
            except Exception as e:
                # mirrored but not accepted: the log must not keep it
                if rec is not None:
                    self._retract(engine_id, rec.sequence)
                raise wrap_plugin_error(e, operation="input", engine_id=engine_id) from e

            follow = self.admin.orchestrator.on_input(engine, event)

        return {
            "accepted": True,
            "engineId": engine_id,
            "sequence": rec.sequence if rec is not None else None,
            **follow,
        }

    def _retract(self, engine_id: str, sequence: int) -> None:
        try:
            self.admin.mirror.retract(engine_id, sequence)
        except StorageFailure:
            # the engine's error still propagates to the caller
            logs.exception(f"[Router] {engine_id} could not retract mirror seq={sequence}")

    def query(self, engine_id: str, raw: str | bytes | Mapping[str, Any]) -> Dict[str, Any]:
        handle = self.admin.get(engine_id)
        query = parse_json(raw)
        try:
            return handle.engine.query(query)
        except Exception as e:
            raise wrap_plugin_error(e, operation="query", engine_id=engine_id) from e

    def train(self, engine_id: str) -> Dict[str, Any]:
        handle = self.admin.get(engine_id)
        return self.admin.orchestrator.train(handle.engine)

    def replay(self, source_id: str, sink_id: str | None = None) -> Dict[str, Any]:
        """
        Rebuild sink's Dataset from source's mirror log through the live
        input path. Replaying a log into its own engine does not mirror the
        events a second time.
        """
        sink_id = sink_id or source_id
        self.admin.get(sink_id)
        mirror_again = sink_id != source_id

        logs.info(f"[Router] replay {source_id} -> {sink_id} mirror={mirror_again}")
        replayed, rejected = self.admin.mirror.replay_into(
            source_id,
            lambda raw: self.input(sink_id, raw, mirror=mirror_again),
        )
        return {"source": source_id, "sink": sink_id, "replayed": replayed, "rejected": rejected}
