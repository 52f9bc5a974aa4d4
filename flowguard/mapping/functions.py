"""
Helper functions callable from expressions, and named field transforms.

Helpers follow loose scripting semantics: wrong-typed input yields an empty
value instead of an error. Transforms coerce their input to the target type.
"""

import inspect
import json
import math
import re
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional, Union

from flowguard.mapping.expressions import (
    is_number,
    is_truthy,
    normalize_number,
    parse_number,
    stringify,
)

Number = Union[int, float]

_DATE_TOKENS = re.compile(r"YYYY|MM|DD|HH|mm|ss")


# ==================== Coercion ====================

def coerce_number(value: Any) -> Number:
    """Convert to a number; NaN when the value has no numeric reading."""
    if isinstance(value, bool):
        return int(value)
    if is_number(value):
        return value
    if value is None:
        return 0
    if isinstance(value, str):
        number = parse_number(value)
        return math.nan if number is None else number
    return math.nan


def to_datetime(value: Any) -> Optional[datetime]:
    """Read a datetime, an ISO-8601 string or epoch milliseconds."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if is_number(value):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _slug(text: str) -> str:
    text = text.lower().strip()
    text = re.sub(r"[^\w\s-]", "", text, flags=re.ASCII)
    text = re.sub(r"[\s_-]+", "-", text)
    return text.strip("-")


# ==================== Helpers ====================

def coalesce(*values: Any) -> Any:
    """First value that is neither null nor an empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def format_date(value: Any, fmt: str = "YYYY-MM-DD") -> Optional[str]:
    """
    Format a date using YYYY, MM, DD, HH, mm and ss tokens.

    Returns None when the value cannot be read as a date.
    """
    moment = to_datetime(value)
    if moment is None:
        return None

    parts = {
        "YYYY": f"{moment.year:04d}",
        "MM": f"{moment.month:02d}",
        "DD": f"{moment.day:02d}",
        "HH": f"{moment.hour:02d}",
        "mm": f"{moment.minute:02d}",
        "ss": f"{moment.second:02d}",
    }
    return _DATE_TOKENS.sub(lambda m: parts[m.group()], str(fmt))


def slugify(text: Any) -> str:
    return _slug(text) if isinstance(text, str) else ""


def substring(text: Any, start: Any = 0, length: Any = None) -> str:
    """Substring from ``start`` of at most ``length`` characters; negative start counts from the end."""
    if not isinstance(text, str):
        return ""
    begin = int(coerce_number(start) or 0)
    if begin < 0:
        begin = max(len(text) + begin, 0)
    if length is None:
        return text[begin:]
    return text[begin:begin + max(int(coerce_number(length) or 0), 0)]


def uppercase(text: Any) -> str:
    return text.upper() if isinstance(text, str) else ""


def lowercase(text: Any) -> str:
    return text.lower() if isinstance(text, str) else ""


def trim(text: Any) -> str:
    return text.strip() if isinstance(text, str) else ""


def js_round(value: Any) -> Number:
    """Round half up, so 2.5 -> 3 and -2.5 -> -2."""
    number = coerce_number(value)
    if math.isnan(number) or math.isinf(number):
        return number
    return math.floor(number + 0.5)


def js_floor(value: Any) -> Number:
    number = coerce_number(value)
    if math.isnan(number) or math.isinf(number):
        return number
    return math.floor(number)


def js_ceil(value: Any) -> Number:
    number = coerce_number(value)
    if math.isnan(number) or math.isinf(number):
        return number
    return math.ceil(number)


def js_abs(value: Any) -> Number:
    return abs(coerce_number(value))


def _numbers(values: tuple[Any, ...]) -> list[Number]:
    if len(values) == 1 and isinstance(values[0], list):
        values = tuple(values[0])
    return [coerce_number(v) for v in values]


def js_min(*values: Any) -> Number:
    numbers = _numbers(values)
    if any(math.isnan(n) for n in numbers):
        return math.nan
    return min(numbers) if numbers else math.inf


def js_max(*values: Any) -> Number:
    numbers = _numbers(values)
    if any(math.isnan(n) for n in numbers):
        return math.nan
    return max(numbers) if numbers else -math.inf


def length(value: Any) -> int:
    return len(value) if isinstance(value, (list, str)) else 0


def join(values: Any, separator: str = ",") -> str:
    if not isinstance(values, list):
        return ""
    return str(separator).join("" if v is None else stringify(v) for v in values)


async def _invoke(func: Callable[..., Any], *args: Any) -> Any:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def filter_items(values: Any, predicate: Callable[..., Any]) -> list[Any]:
    """Keep items for which ``predicate(item, index)`` is truthy."""
    if not isinstance(values, list):
        return []
    if not callable(predicate):
        raise TypeError("filter expects a function as its second argument")
    return [
        item for index, item in enumerate(values)
        if is_truthy(await _invoke(predicate, item, index))
    ]


async def map_items(values: Any, mapper: Callable[..., Any]) -> list[Any]:
    """Apply ``mapper(item, index)`` to every item."""
    if not isinstance(values, list):
        return []
    if not callable(mapper):
        raise TypeError("map expects a function as its second argument")
    return [await _invoke(mapper, item, index) for index, item in enumerate(values)]


def if_(condition: Any, when_true: Any = None, when_false: Any = None) -> Any:
    return when_true if is_truthy(condition) else when_false


HELPERS: dict[str, Callable[..., Any]] = {
    "coalesce": coalesce,
    "format_date": format_date,
    "formatDate": format_date,
    "slugify": slugify,
    "substring": substring,
    "uppercase": uppercase,
    "lowercase": lowercase,
    "trim": trim,
    "round": js_round,
    "floor": js_floor,
    "ceil": js_ceil,
    "abs": js_abs,
    "min": js_min,
    "max": js_max,
    "Math.round": js_round,
    "Math.floor": js_floor,
    "Math.ceil": js_ceil,
    "Math.abs": js_abs,
    "Math.min": js_min,
    "Math.max": js_max,
    "length": length,
    "join": join,
    "filter": filter_items,
    "map": map_items,
    "if": if_,
}


# ==================== Transforms ====================

def to_number(value: Any) -> Number:
    """Numeric reading of a value; 0 when there is none."""
    number = coerce_number(value)
    return 0 if math.isnan(number) else normalize_number(number)


def _split(value: Any, separator: str = ",") -> list[Any]:
    if not isinstance(value, str):
        return [value]
    if separator == "":
        return list(value)
    return value.split(separator)


def _length(value: Any) -> int:
    return len(value) if isinstance(value, list) else len(stringify(value))


def _join(value: Any, separator: str = ",") -> str:
    return join(value, separator) if isinstance(value, list) else stringify(value)


def parse_json(value: Any) -> Any:
    """Decode a JSON string; None when it is not valid JSON."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


def stringify_json(value: Any) -> str:
    return json.dumps(value, default=str, separators=(",", ":"))


TRANSFORMS: dict[str, Callable[..., Any]] = {
    "uppercase": lambda value: stringify(value).upper(),
    "lowercase": lambda value: stringify(value).lower(),
    "trim": lambda value: stringify(value).strip(),
    "slugify": lambda value: _slug(stringify(value)),
    "to_number": to_number,
    "round": lambda value: js_round(coerce_number(value)),
    "floor": lambda value: js_floor(coerce_number(value)),
    "ceil": lambda value: js_ceil(coerce_number(value)),
    "format_date": format_date,
    "join": _join,
    "split": _split,
    "length": _length,
    "parse_json": parse_json,
    "stringify_json": stringify_json,
    "to_boolean": is_truthy,
    "to_string": stringify,
}
