"""
Shared formatting helpers for MCP tools.
"""

import json
from typing import Any

from ..core.errors import ServiceNowError

DIVIDER = "─" * 60

NOT_CONNECTED_MESSAGE = (
    "Not connected to ServiceNow. Use servicenow_connect first.\n\n"
    "Example:\n"
    '  servicenow_connect with instance="dev12345.service-now.com", '
    'username="admin", password="..."'
)

# Fields whose values are never shown
SENSITIVE_FIELDS = frozenset({
    "password",
    "password_hash",
    "user_password",
    "secret",
    "api_key",
    "private_key",
    "client_secret",
    "token",
    "access_token",
    "refresh_token",
})


def format_value(value: Any) -> str:
    """Format a field value for display.

    Reference fields come back as {"value", "display_value", "link"} objects;
    the display value wins when present.

    Args:
        value: The value to format.

    Returns:
        String representation suitable for display.
    """
    if value is None:
        return "(empty)"
    if isinstance(value, dict):
        shown = value.get("display_value") or value.get("value")
        return str(shown) if shown else json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value == int(value):
            return str(int(value))
        return f"{value:.2f}"
    return str(value)


def format_table_results(
    rows: list[dict[str, Any]],
    max_column_width: int = 50,
) -> str:
    """Format rows as a readable fixed-width table.

    Args:
        rows: List of row dictionaries.
        max_column_width: Maximum width for columns.

    Returns:
        Formatted table string.
    """
    if not rows:
        return "No results found."

    columns = list(rows[0].keys())

    widths = {}
    for col in columns:
        col_values = [format_value(row.get(col)) for row in rows]
        max_val_width = max(len(v) for v in col_values) if col_values else 0
        widths[col] = min(max(len(col), max_val_width), max_column_width)

    header = " | ".join(col.ljust(widths[col])[:widths[col]] for col in columns)
    separator = "-+-".join("-" * widths[col] for col in columns)

    formatted_rows = []
    for row in rows:
        formatted_row = " | ".join(
            format_value(row.get(col)).ljust(widths[col])[:widths[col]]
            for col in columns
        )
        formatted_rows.append(formatted_row)

    return "\n".join([header, separator] + formatted_rows)


def truncate_value(value: Any, max_length: int = 100, marker: str = "...") -> str:
    """Truncate a value for display.

    Args:
        value: Value to truncate.
        max_length: Maximum length before the marker is appended.
        marker: Text appended to truncated values.

    Returns:
        Truncated string representation.
    """
    s = str(value) if value is not None else ""
    if len(s) > max_length:
        return s[:max_length] + marker
    return s


def format_count(count: int) -> str:
    """Format a count with commas."""
    return f"{count:,}"


def redact_record(record: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of a record with sensitive fields replaced."""
    return {
        key: "[REDACTED]" if key.lower() in SENSITIVE_FIELDS else value
        for key, value in record.items()
    }


def format_record(record: dict[str, Any], index: int, max_value_length: int = 200) -> str:
    """Format one record as an indented block headed by its sys_id.

    Sensitive fields are redacted and long values truncated.
    """
    lines = [f"[{index}] sys_id: {format_value(record.get('sys_id'))}"]
    for key, value in redact_record(record).items():
        if key == "sys_id":
            continue
        lines.append(f"  {key}: {truncate_value(format_value(value), max_value_length)}")
    return "\n".join(lines)


def format_error(error: ServiceNowError, prefix: str | None = None) -> str:
    """Format a ServiceNow error for an MCP response.

    Args:
        error: The typed error.
        prefix: Optional lead-in such as 'Failed to query table "incident"'.

    Returns:
        Message with the error kind and, when known, a suggestion.
    """
    message = f"{prefix}: {error.message}" if prefix else f"Error: {error.message}"
    lines = [message, f"Kind: {error.kind.value}"]
    if error.suggestion:
        lines.append(f"\nSuggestion: {error.suggestion}")
    return "\n".join(lines)
