"""Metadata filter matching shared by the stores and the coordinator.

Filter values compare by the text ``jsonb`` gives them (``->>`` and
``jsonb_array_elements_text``): booleans as ``true``/``false``, numbers and
strings as written. A list filter matches any of its values, and a
list-valued field matches when any element does.
"""

from typing import Any, List


def filter_text(value: Any) -> str:
    """Render a filter or metadata value the way ``jsonb`` renders it as text."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def filter_values(value: Any) -> List[str]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return [filter_text(v) for v in value]
    return [filter_text(value)]


def metadata_filter_sql(key_param: int, values_param: int, column: str = "metadata") -> str:
    """SQL condition matching ``column[$key]`` against the ``$values`` text array."""
    return (
        f"CASE jsonb_typeof({column} -> ${key_param})"
        f" WHEN 'array' THEN EXISTS ("
        f"SELECT 1 FROM jsonb_array_elements_text({column} -> ${key_param}) AS element"
        f" WHERE element = ANY(${values_param}::text[]))"
        f" ELSE {column} ->> ${key_param} = ANY(${values_param}::text[]) END"
    )
