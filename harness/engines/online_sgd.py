# harness/engines/online_sgd.py
"""
Online SGD regression engine (Continuous discipline)

Each accepted event carrying the target property is one training sample:
partial_fit is applied immediately, the sample is not revisited. The
model IS the accumulated state, so it is checkpointed with joblib and
reloaded on restart.
"""
from __future__ import annotations

import math
import threading
from typing import Any, Dict, List

import joblib
import numpy as np
from pydantic import Field
from sklearn.linear_model import SGDRegressor

from harness.core.engine import Engine, EngineContext
from harness.core.types import Capability, Event
from harness.params.store import ParamsModel, parse_and_validate
from harness.utils.errors import UnsupportedUpdate, ValidationError
from harness.utils.filesystem import FileSystem
from harness.utils.logger import logs


class OnlineSGDParams(ParamsModel):
    features: List[str] = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    sgd: Dict[str, Any] = Field(default_factory=dict)
    checkpoint_every: int = Field(default=100, alias="checkpointEvery", gt=0)


def _finite(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"property '{name}' must be a number", field=f"properties.{name}")
    x = float(value)
    if not math.isfinite(x):
        raise ValidationError(f"property '{name}' must be finite", field=f"properties.{name}")
    return x


class OnlineSGDEngine(Engine):
    capabilities = frozenset({Capability.INCREMENTAL_UPDATE})

    MODEL_FILE = "sgd.joblib"

    def __init__(self, engine_id: str, ctx: EngineContext):
        super().__init__(engine_id, ctx)
        self.cfg: OnlineSGDParams | None = None
        self.samples_seen = 0
        self._lock = threading.Lock()

    # --------------------------------------------------
    def init(self, params: Dict[str, Any]) -> None:
        cfg = parse_and_validate(params, OnlineSGDParams, transform="algorithm")

        if self.cfg is not None and (
            cfg.features != self.cfg.features or cfg.target != self.cfg.target
        ):
            raise UnsupportedUpdate(
                "features/target of a continuously trained model cannot change; "
                "create a new engine and replay its mirror log instead",
                field="algorithm.features",
            )

        try:
            fresh = SGDRegressor(**cfg.sgd)
        except TypeError as e:
            raise ValidationError(f"bad sgd parameter: {e}", field="algorithm.sgd") from e

        super().init(params)

        with self._lock:
            if self.model is None:
                self.model = self._load_checkpoint() or fresh
            else:
                # only later updates see the new hyper-parameters; keys left
                # out of algorithm.sgd fall back to the SGDRegressor defaults
                self.model.set_params(**fresh.get_params())
            self.cfg = cfg

        logs.info(
            f"[OnlineSGD] {self.engine_id} init features={cfg.features} target={cfg.target}"
        )

    def _checkpoint_path(self):
        return self.model_dir / self.MODEL_FILE

    def _load_checkpoint(self) -> SGDRegressor | None:
        path = self._checkpoint_path()
        if not path.exists():
            return None
        state = joblib.load(path)
        self.samples_seen = state["samples_seen"]
        logs.info(f"[OnlineSGD] {self.engine_id} checkpoint restored ({self.samples_seen} samples)")
        return state["model"]

    def _save_checkpoint(self) -> None:
        state = {"model": self.model, "samples_seen": self.samples_seen}
        FileSystem.safe_dump(self._checkpoint_path(), lambda tmp: joblib.dump(state, tmp))

    # --------------------------------------------------
    def _row(self, properties: Dict[str, Any]) -> np.ndarray:
        missing = [f for f in self.cfg.features if f not in properties]
        if missing:
            raise ValidationError(
                f"missing feature properties: {', '.join(missing)}",
                field=f"properties.{missing[0]}",
            )
        return np.array([[_finite(properties[f], f) for f in self.cfg.features]])

    def validate_event(self, event: Event) -> None:
        super().validate_event(event)
        if self.cfg.target in event.properties:
            self._row(event.properties)
            _finite(event.properties[self.cfg.target], self.cfg.target)

    def update_incremental(self, event: Event) -> None:
        props = event.properties
        if self.cfg.target not in props:
            return

        x = self._row(props)
        y = np.array([_finite(props[self.cfg.target], self.cfg.target)])
        with self._lock:
            self.model.partial_fit(x, y)
            self.samples_seen += 1
            if self.samples_seen % self.cfg.checkpoint_every == 0:
                self._save_checkpoint()

    # --------------------------------------------------
    def query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        props = query.get("properties")
        if not isinstance(props, dict):
            raise ValidationError("query needs a 'properties' object", field="properties")

        x = self._row(props)
        with self._lock:
            if self.samples_seen == 0:
                return {"prediction": None}
            y = self.model.predict(x)
        return {"prediction": float(y[0])}

    def close(self) -> None:
        with self._lock:
            if self.samples_seen and self.model is not None:
                self._save_checkpoint()

    def destroy(self) -> None:
        with self._lock:
            self.samples_seen = 0
        super().destroy()

    def status(self) -> Dict[str, Any]:
        body = super().status()
        body["samplesSeen"] = self.samples_seen
        return body
