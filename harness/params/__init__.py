from .store import (
    EngineParams,
    ParamsModel,
    parse_and_validate,
    parse_json,
)

__all__ = ["EngineParams", "ParamsModel", "parse_and_validate", "parse_json"]
