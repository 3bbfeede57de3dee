# harness/registry/factories.py
from __future__ import annotations

import threading
from typing import Callable, Dict, Mapping

from harness.core.engine import Engine, EngineContext
from harness.utils.errors import ValidationError

EngineCtor = Callable[[str, EngineContext], Engine]


def builtin_factories() -> Dict[str, EngineCtor]:
    from harness.engines.navhint import NavHintEngine
    from harness.engines.online_sgd import OnlineSGDEngine

    return {
        "navhint": NavHintEngine,
        "online_sgd": OnlineSGDEngine,
    }


class EngineFactoryRegistry:
    """
    engineFactory identifier → constructor

    Populated once at process start (built-ins + explicit register() calls).
    Nothing is ever loaded dynamically from request data.
    """

    def __init__(self, factories: Mapping[str, EngineCtor] | None = None):
        self._lock = threading.Lock()
        self._factories: Dict[str, EngineCtor] = dict(
            builtin_factories() if factories is None else factories
        )

    def register(self, name: str, ctor: EngineCtor, *, replace: bool = False) -> None:
        with self._lock:
            if name in self._factories and not replace:
                raise ValueError(f"engine factory '{name}' already registered")
            self._factories[name] = ctor

    def resolve(self, name: str) -> EngineCtor:
        with self._lock:
            ctor = self._factories.get(name)
            available = ", ".join(sorted(self._factories))
        if ctor is None:
            raise ValidationError(
                f"unknown engineFactory '{name}'. Available: {available}",
                field="engineFactory",
            )
        return ctor

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._factories)
