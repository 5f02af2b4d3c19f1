import json
from typing import Any, List, Optional

from .errors import error_message, error_type_name
from .schemas import LineOutput

NO_OUTPUT = "(No output)"


def render_value(value: Any) -> str:
    """Console rendering used by print() and for a line's final value."""
    if isinstance(value, str):
        return value
    if value is None:
        return "None"
    if isinstance(value, (bool, int, float)):
        return str(value)
    try:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        return str(value)


def json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(v) for v in value]
    return str(value)


def build_line_output(
    code: str,
    logs: List[str],
    last_value: Any = None,
    error: Optional[BaseException] = None,
) -> LineOutput:
    logs = list(logs)
    error_text: Optional[str] = None
    error_type: Optional[str] = None
    if error is not None:
        error_type = error_type_name(error)
        error_text = error_message(error)
        logs.append(f"{error_type}: {error_text}")
        last_value = None
    parts = [entry for entry in logs if entry != ""]
    if error is None and last_value is not None:
        parts.append(render_value(last_value))
    formatted = "\n".join(parts) if parts else NO_OUTPUT
    return LineOutput(
        code=code,
        logs=logs,
        last_value=json_safe(last_value),
        error=error_text,
        error_type=error_type,
        formatted_output=formatted,
    )
