# harness/api/decorators.py
from __future__ import annotations

from functools import wraps
from typing import Any, Callable

from flask import jsonify

from harness.utils.errors import HarnessError
from harness.utils.logger import logs


def handle_harness_errors(func: Callable[..., Any]):
    """
    Decorator: convert HarnessError into its structured JSON body.

    Contract:
    - HarnessError → (to_dict(), err.status)
    - anything else → 500 {"error": "InternalError"}, logged with traceback,
      never returned to the caller
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except HarnessError as e:
            if e.engine_id is None:
                e.engine_id = kwargs.get("engine_id")
            return jsonify(e.to_dict()), e.status
        except Exception:
            logs.exception(f"[API] unhandled error in {func.__name__}")
            return jsonify({
                "error": "InternalError",
                "message": "internal error",
            }), 500

    return wrapper
