# harness/training/orchestrator.py
"""
Training Orchestrator

Per instance state machine: IDLE → TRAINING → IDLE | FAILED

Every model mutation of one instance (incremental update or batch run) is
executed by that instance's single worker thread, so:

- at most one mutation path is active per instance (Continuous, Periodic
  and Mixed alike)
- incremental updates run in acceptance order, nothing is dropped
- a batch run never blocks the request thread that asked for it;
  its outcome is observed through state(), not the original call
"""
from __future__ import annotations

import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict

from harness.core.engine import Engine
from harness.core.types import Capability, Event, TrainingState, utcnow
from harness.utils.errors import (
    AlreadyTraining,
    NotFound,
    ValidationError,
    wrap_plugin_error,
)
from harness.utils.logger import logs


@dataclass
class TrainingSlot:
    engine_id: str
    executor: ThreadPoolExecutor
    lock: threading.Lock = field(default_factory=threading.Lock)

    state: TrainingState = TrainingState.IDLE
    last_error: str | None = None
    last_incremental_error: str | None = None
    last_trained_at: datetime | None = None
    train_count: int = 0
    pending_updates: int = 0
    closing: bool = False
    batch_future: Future | None = None

    def snapshot(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "state": self.state.value,
                "lastError": self.last_error,
                "lastIncrementalError": self.last_incremental_error,
                "lastTrainedAt": self.last_trained_at.isoformat() if self.last_trained_at else None,
                "trainCount": self.train_count,
                "pendingUpdates": self.pending_updates,
            }


class TrainingOrchestrator:
    def __init__(self, *, wait_for_incremental: bool = True):
        self.wait_for_incremental = wait_for_incremental
        self._guard = threading.Lock()
        self._slots: Dict[str, TrainingSlot] = {}

    # --------------------------------------------------
    # slot lifecycle (called by the Administrator)
    # --------------------------------------------------
    def attach(self, engine: Engine) -> TrainingSlot:
        slot = TrainingSlot(
            engine_id=engine.engine_id,
            executor=ThreadPoolExecutor(
                max_workers=1, thread_name_prefix=f"train-{engine.engine_id}"
            ),
        )
        with self._guard:
            self._slots[engine.engine_id] = slot
        return slot

    def detach(self, engine_id: str) -> None:
        """
        Stop accepting work and wait for the in-flight mutation to reach a
        terminal state. Queued (not started) incremental updates are dropped
        because the Dataset they target is about to be released.
        """
        with self._guard:
            slot = self._slots.pop(engine_id, None)
        if slot is None:
            return

        with slot.lock:
            slot.closing = True
            busy = slot.state is TrainingState.TRAINING

        if busy:
            logs.info(f"[Orchestrator] {engine_id} waiting for in-flight training")
        slot.executor.shutdown(wait=True, cancel_futures=True)

    def shutdown(self) -> None:
        with self._guard:
            ids = list(self._slots)
        for engine_id in ids:
            self.detach(engine_id)

    def _slot(self, engine_id: str) -> TrainingSlot:
        with self._guard:
            slot = self._slots.get(engine_id)
        if slot is None:
            raise NotFound(f"engine '{engine_id}' not found", engine_id=engine_id)
        return slot

    # --------------------------------------------------
    # continuous discipline
    # --------------------------------------------------
    def on_input(self, engine: Engine, event: Event) -> Dict[str, Any]:
        """
        Follow-on action after an accepted input.

        Returns {"update": "none" | "applied" | "queued"}. A failed update is
        raised to the caller whose input triggered it.
        """
        if Capability.INCREMENTAL_UPDATE not in engine.capabilities or event.reserved:
            return {"update": "none"}

        slot = self._slot(engine.engine_id)
        with slot.lock:
            if slot.closing:
                raise NotFound(
                    f"engine '{engine.engine_id}' not found", engine_id=engine.engine_id
                )
            slot.pending_updates += 1
            batch_in_flight = slot.state is TrainingState.TRAINING
            future = slot.executor.submit(self._run_incremental, slot, engine, event)

        if not self.wait_for_incremental or batch_in_flight:
            return {"update": "queued"}

        future.result()
        return {"update": "applied"}

    def _run_incremental(self, slot: TrainingSlot, engine: Engine, event: Event) -> None:
        try:
            engine.update_incremental(event)
        except Exception as e:
            err = wrap_plugin_error(e, operation="update_incremental", engine_id=engine.engine_id)
            with slot.lock:
                slot.last_incremental_error = err.message
            logs.warning(f"[Orchestrator] {engine.engine_id} incremental update failed: {err.message}")
            raise err from e
        finally:
            with slot.lock:
                slot.pending_updates -= 1

    # --------------------------------------------------
    # periodic discipline
    # --------------------------------------------------
    def train(self, engine: Engine) -> Dict[str, Any]:
        if Capability.BATCH_TRAIN not in engine.capabilities:
            raise ValidationError(
                f"engine '{engine.engine_id}' does not support batch training",
                field="train",
                engine_id=engine.engine_id,
            )

        slot = self._slot(engine.engine_id)
        with slot.lock:
            if slot.closing:
                raise NotFound(
                    f"engine '{engine.engine_id}' not found", engine_id=engine.engine_id
                )
            if slot.state is TrainingState.TRAINING:
                raise AlreadyTraining(
                    f"engine '{engine.engine_id}' is already training",
                    engine_id=engine.engine_id,
                )
            slot.state = TrainingState.TRAINING
            slot.batch_future = slot.executor.submit(self._run_batch, slot, engine)

        logs.info(f"[Orchestrator] {engine.engine_id} batch training accepted")
        return {"status": "accepted", "engineId": engine.engine_id}

    def _run_batch(self, slot: TrainingSlot, engine: Engine) -> None:
        try:
            model = engine.train()
            # previous model stays in place unless train() returned normally
            engine.publish_model(model)
        except Exception as e:
            err = wrap_plugin_error(e, operation="train", engine_id=engine.engine_id)
            with slot.lock:
                slot.state = TrainingState.FAILED
                slot.last_error = err.message
            logs.error(f"[Orchestrator] {engine.engine_id} training failed: {err.message}")
            return

        with slot.lock:
            slot.state = TrainingState.IDLE
            slot.last_error = None
            slot.last_trained_at = utcnow()
            slot.train_count += 1
        logs.info(f"[Orchestrator] {engine.engine_id} training finished")

    # --------------------------------------------------
    # observation
    # --------------------------------------------------
    def state(self, engine_id: str) -> Dict[str, Any]:
        return self._slot(engine_id).snapshot()

    def wait(self, engine_id: str, timeout: float | None = None) -> Dict[str, Any]:
        """Block until the current batch run (if any) is terminal."""
        slot = self._slot(engine_id)
        with slot.lock:
            future = slot.batch_future
        if future is not None:
            try:
                future.result(timeout=timeout)
            except (FutureTimeout, CancelledError):
                pass
        return slot.snapshot()
