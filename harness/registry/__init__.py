from .administrator import Administrator, EngineHandle
from .factories import EngineFactoryRegistry
from .router import Router

__all__ = ["Administrator", "EngineHandle", "EngineFactoryRegistry", "Router"]
