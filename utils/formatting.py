"""
Formatting utilities.
"""

import re
from typing import Any, Iterable

_CAPITAL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def format_label(key: str) -> str:
    """
    Turn a camelCase field key into a display label.

    Inserts a space before each capital and capitalises the first letter:
    ``swimmingPool`` -> ``Swimming Pool``.

    Args:
        key: Field key.

    Returns:
        Display label.
    """
    if not key:
        return ""
    spaced = _CAPITAL_BOUNDARY.sub(" ", key.strip())
    return spaced[:1].upper() + spaced[1:]


def join_values(values: Iterable[Any], separator: str = ", ") -> str:
    """
    Join list items in their given order, skipping blanks.

    Args:
        values: Items to join.
        separator: Separator (default ", ").

    Returns:
        Joined string, or '' when nothing remains.
    """
    return separator.join(str(v).strip() for v in values if v is not None and str(v).strip())


def to_cell_text(value: Any) -> Any:
    """Normalize a scalar for a cell: None becomes '', numbers stay numbers."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (int, float, str)):
        return value
    return str(value)
