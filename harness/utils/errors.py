# harness/utils/errors.py
"""
Error taxonomy for the engine host.

Every error that crosses the REST boundary is a HarnessError. The boundary
renders it with to_dict(); tracebacks never leave the process.

- ValidationError    malformed/missing parameter or event field (no state touched)
- NotFound           unknown engine id
- DuplicateId        create on an id that is already live
- UnsupportedUpdate  structural change a Continuous engine refuses
- AlreadyTraining    batch run already in flight
- StorageFailure     mirror log / metadata I/O error
- AlgorithmFailure   error raised inside a plugin, wrapped with context
"""
from __future__ import annotations

from typing import Any


class HarnessError(RuntimeError):
    kind: str = "HarnessError"
    status: int = 500

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        engine_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.engine_id = engine_id

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.field is not None:
            body["field"] = self.field
        if self.engine_id is not None:
            body["engineId"] = self.engine_id
        return body


class ValidationError(HarnessError):
    kind = "ValidationError"
    status = 400


class NotFound(HarnessError):
    kind = "NotFound"
    status = 404


class DuplicateId(HarnessError):
    kind = "DuplicateId"
    status = 409


class UnsupportedUpdate(HarnessError):
    kind = "UnsupportedUpdate"
    status = 400


class AlreadyTraining(HarnessError):
    kind = "AlreadyTraining"
    status = 409


class StorageFailure(HarnessError):
    kind = "StorageFailure"
    status = 503


class AlgorithmFailure(HarnessError):
    """
    Wraps an exception raised by pluggable engine code.

    The cause stays on __cause__ for logs; to_dict() only names the operation.
    """

    kind = "AlgorithmFailure"
    status = 500

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        engine_id: str | None = None,
    ):
        super().__init__(message, engine_id=engine_id)
        self.operation = operation

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["operation"] = self.operation
        return body


def wrap_plugin_error(exc: Exception, *, operation: str, engine_id: str) -> HarnessError:
    """
    HarnessError 原样透传；其余异常包装成 AlgorithmFailure。
    """
    if isinstance(exc, HarnessError):
        if exc.engine_id is None:
            exc.engine_id = engine_id
        return exc
    return AlgorithmFailure(
        f"{operation} failed: {type(exc).__name__}: {exc}",
        operation=operation,
        engine_id=engine_id,
    )
