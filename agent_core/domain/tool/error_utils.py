from collections.abc import Mapping
from datetime import date, datetime
from typing import Any, Dict, Optional, Set
import dataclasses
import json
import traceback

from pydantic import BaseModel

# Keys owned by the payload itself; same-named exception attributes are not copied
_RESERVED_KEYS = {"name", "message", "stack", "cause", "error", "tool_call_id", "tool_name"}

CIRCULAR_MARKER = "[Circular]"


def format_stack(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def serialize_error(error: BaseException) -> Dict[str, Any]:
    return {
        "name": type(error).__name__,
        "message": str(error),
        "stack": format_stack(error)
    }


def safe_stringify(value: Any) -> str:
    """JSON-encode anything, replacing reference cycles with a marker"""

    return json.dumps(_to_jsonable(value, set()), separators=(",", ":"), ensure_ascii=False)


def _to_jsonable(value: Any, ancestors: Set[int]) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseException):
        return {"name": type(value).__name__, "message": str(value)}

    marker = id(value)
    if marker in ancestors:
        return CIRCULAR_MARKER

    ancestors.add(marker)
    try:
        if isinstance(value, BaseModel):
            return _to_jsonable(value.model_dump(), ancestors)
        if isinstance(value, Mapping):
            return {str(k): _to_jsonable(v, ancestors) for k, v in value.items()}
        if isinstance(value, (list, tuple, set, frozenset)):
            return [_to_jsonable(item, ancestors) for item in value]
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return {
                f.name: _to_jsonable(getattr(value, f.name), ancestors)
                for f in dataclasses.fields(value)
            }
        if hasattr(value, "__dict__") and not callable(value):
            return {
                k: _to_jsonable(v, ancestors)
                for k, v in vars(value).items()
                if not k.startswith("_")
            }
        return str(value)
    finally:
        ancestors.discard(marker)


def sanitize_error_value(value: Any, _ancestors: Optional[Set[int]] = None) -> Any:
    """Turn an arbitrary value into something safe to hand back to the model"""

    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, BaseException):
        return serialize_error(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, (list, tuple)):
        ancestors = _ancestors if _ancestors is not None else set()
        if id(value) in ancestors:
            return CIRCULAR_MARKER

        ancestors.add(id(value))
        try:
            return [sanitize_error_value(item, ancestors) for item in value]
        finally:
            ancestors.discard(id(value))

    try:
        return safe_stringify(value)
    except Exception:
        return str(value)


def build_tool_error_result(error: Any, tool_call_id: str, tool_name: str) -> Dict[str, Any]:
    """Error payload returned to the model in place of a tool result"""

    if isinstance(error, BaseException):
        base = serialize_error(error)
    else:
        base = {"name": "Error", "message": str(error), "stack": None}

    payload: Dict[str, Any] = {
        "error": True,
        "name": base["name"],
        "message": base["message"],
        "stack": base["stack"],
        "tool_call_id": tool_call_id,
        "tool_name": tool_name,
    }

    attributes = dict(getattr(error, "__dict__", {}))

    cause = attributes.get("cause", getattr(error, "__cause__", None))
    if cause is not None:
        payload["cause"] = serialize_error(cause) if isinstance(cause, BaseException) else sanitize_error_value(cause)

    for key, value in attributes.items():
        if key in _RESERVED_KEYS or key.startswith("_"):
            continue
        if value is None or callable(value):
            continue
        payload[key] = sanitize_error_value(value)

    return payload
