# harness/params/store.py
"""
Parameter Store

The engine configuration is one opaque JSON document. Every component
(Administrator, Engine, Algorithm, Dataset) declares its own pydantic schema
and extracts only its own part from the same raw document:

    top = parse_and_validate(raw, EngineParams)
    algo = parse_and_validate(raw, MyAlgoParams, transform="algorithm")

Unknown keys never fail validation (extra="ignore"); a missing or malformed
declared key fails fast with a ValidationError naming that key.
"""
from __future__ import annotations

import json
import re
from typing import Any, Mapping, Type, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from harness.utils.errors import ValidationError

P = TypeVar("P", bound=BaseModel)

ENGINE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$")

MIRROR_ENABLED_TYPES = {"localfs", "file"}
MIRROR_DISABLED_TYPES = {"none"}


class ParamsModel(BaseModel):
    """Base for every component schema: ignore keys owned by others."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class EngineParams(ParamsModel):
    """Typed top level read by the Administrator."""

    engine_id: str = Field(alias="engineId")
    engine_factory: str = Field(alias="engineFactory", min_length=1)
    mirror_type: str | None = Field(default=None, alias="mirrorType")
    mirror_location: str | None = Field(default=None, alias="mirrorLocation")

    @field_validator("engine_id")
    @classmethod
    def _check_engine_id(cls, v: str) -> str:
        if not ENGINE_ID_PATTERN.match(v):
            raise ValueError(
                "must start with a letter or digit and contain only "
                "letters, digits, '_', '-' or '.'"
            )
        return v

    @field_validator("mirror_type")
    @classmethod
    def _check_mirror_type(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower()
        if v not in MIRROR_ENABLED_TYPES | MIRROR_DISABLED_TYPES:
            allowed = ", ".join(sorted(MIRROR_ENABLED_TYPES | MIRROR_DISABLED_TYPES))
            raise ValueError(f"unsupported mirrorType '{v}', use one of: {allowed}")
        return v

    @property
    def mirroring_enabled(self) -> bool:
        return self.mirror_type in MIRROR_ENABLED_TYPES


def parse_json(raw: str | bytes | Mapping[str, Any] | None) -> dict[str, Any]:
    """Raw request body → dict. Anything but a JSON object is rejected."""
    if raw is None:
        raise ValidationError("empty parameter document", field="<root>")

    if isinstance(raw, Mapping):
        return dict(raw)

    try:
        doc = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"malformed JSON: {e}", field="<root>") from e

    if not isinstance(doc, dict):
        raise ValidationError(
            f"expected a JSON object, got {type(doc).__name__}", field="<root>"
        )
    return doc


def _loc_to_field(loc: tuple, prefix: str | None) -> str:
    parts = [str(p) for p in loc]
    if prefix:
        parts.insert(0, prefix)
    return ".".join(parts) or "<root>"


def parse_and_validate(
    raw: str | bytes | Mapping[str, Any] | None,
    schema: Type[P],
    *,
    transform: str | None = None,
    error_msg: str | None = None,
) -> P:
    """
    Extract and validate one component's part of the parameter document.

    transform names the sub-tree the component owns ("algorithm", "dataset").
    A missing sub-tree validates as {} so schemas with all-default fields
    accept it, and schemas with required fields report those keys.
    """
    doc = parse_json(raw)

    if transform is not None:
        sub = doc.get(transform, {})
        if sub is None:
            sub = {}
        if not isinstance(sub, dict):
            raise ValidationError(
                f"'{transform}' must be a JSON object", field=transform
            )
        doc = sub

    try:
        return schema.model_validate(doc)
    except pydantic.ValidationError as e:
        problems = [
            (_loc_to_field(err["loc"], transform), err["msg"]) for err in e.errors()
        ]
        detail = "; ".join(f"{key}: {msg}" for key, msg in problems)
        message = f"{error_msg}: {detail}" if error_msg else detail
        raise ValidationError(message, field=problems[0][0]) from e
