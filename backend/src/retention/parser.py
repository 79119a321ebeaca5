"""Parser for compact table directives.

A directive has the form ``name[:timestampColumn][:retentionDays]``. Both
optional segments may be left empty to select their defaults, so
``orders::30`` means "orders by created_at, older than 30 days".
"""

import re

from .exceptions import InvalidIdentifier, InvalidRetention, TableSpecError
from .schemas import DEFAULT_TIMESTAMP_COLUMN, TableSpec, is_valid_identifier

_INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")


def parse_table_spec(spec: str) -> TableSpec:
    """Parse one table directive into a TableSpec.

    Args:
        spec: Directive such as ``"orders:created_at:30"``

    Returns:
        TableSpec: Validated cleanup target

    Raises:
        InvalidIdentifier: Table or column name fails the charset check
        InvalidRetention: Days segment is not a non-negative integer
        TableSpecError: More than three segments
    """
    parts = spec.strip().split(":")
    if len(parts) > 3:
        raise TableSpecError(
            f"Invalid table directive {spec!r}: expected name[:column[:days]]"
        )

    name = parts[0]
    if not is_valid_identifier(name):
        raise InvalidIdentifier(f"Invalid table name: {name!r}")

    timestamp_column = parts[1] if len(parts) > 1 else ""
    if not timestamp_column:
        timestamp_column = DEFAULT_TIMESTAMP_COLUMN
    elif not is_valid_identifier(timestamp_column):
        raise InvalidIdentifier(f"Invalid timestamp column: {timestamp_column!r}")

    days_text = parts[2] if len(parts) > 2 else ""
    if not days_text:
        retention_days = 0
    elif _INTEGER_PATTERN.fullmatch(days_text):
        retention_days = int(days_text)
    else:
        raise InvalidRetention(f"Failed to parse days: {days_text!r} is not an integer")

    if retention_days < 0:
        raise InvalidRetention(f"Retention days must not be negative, got {retention_days}")

    return TableSpec(
        name=name,
        timestamp_column=timestamp_column,
        retention_days=retention_days,
    )
