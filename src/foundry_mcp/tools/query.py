"""
Read-only query tools for Foundry MCP.

Provides table queries through the Table API, system log searches over
syslog / syslog_app_scope and AI Agent execution traces. None of these
tools is gated by the script guard; restricted tables are refused and
sensitive fields redacted instead.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from mcp.server.fastmcp import FastMCP

from ..core.audit import audit_tool_call
from ..core.client import ServiceNowClient
from ..core.context import ServerContext
from ..core.errors import ErrorKind, ServiceNowError
from .base import (
    DIVIDER,
    NOT_CONNECTED_MESSAGE,
    format_error,
    format_record,
    format_value,
    truncate_value,
)

logger = logging.getLogger(__name__)

# Tables holding credentials, role grants or certificates
RESTRICTED_TABLES = frozenset({
    "sys_user_has_role",
    "sys_user_grmember",
    "oauth_credential",
    "discovery_credentials",
    "sys_certificate",
    "password_reset_request",
    "sys_cs_token",
    "sys_api_key",
})

DEFAULT_FIELDS: dict[str, list[str]] = {
    "incident": ["number", "short_description", "state", "priority", "assigned_to", "sys_created_on"],
    "sys_user": ["user_name", "first_name", "last_name", "email", "active"],
    "task": ["number", "short_description", "state", "assigned_to", "sys_created_on"],
    "cmdb_ci": ["name", "sys_class_name", "operational_status", "sys_updated_on"],
    "change_request": ["number", "short_description", "state", "type", "sys_created_on"],
    "problem": ["number", "short_description", "state", "priority", "sys_created_on"],
    "kb_knowledge": ["number", "short_description", "workflow_state", "sys_created_on"],
    "sys_script_include": ["name", "api_name", "active", "sys_updated_on"],
    "sys_ui_action": ["name", "table", "active", "sys_updated_on"],
}
GENERIC_FIELDS = ["sys_id", "sys_created_on", "sys_updated_on"]

SYSLOG_LEVELS = {"debug": 0, "info": 1, "warning": 2, "error": 3}
SYSLOG_LEVEL_NAMES = {v: k.upper() for k, v in SYSLOG_LEVELS.items()}
SYSLOG_FIELDS = ["sys_id", "level", "source", "message", "sys_created_on", "sys_created_by"]

TIME_RANGES = {
    "1h": timedelta(hours=1),
    "4h": timedelta(hours=4),
    "12h": timedelta(hours=12),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}

MAX_LOG_MESSAGE_LENGTH = 500

# AI Agent tables are named differently across releases; the first readable one wins
AIA_EXECUTION_TABLES = [
    "sys_aia_execution",
    "sn_agent_execution",
    "x_snc_aia_execution",
    "sn_ai_agent_execution",
]
AIA_TOOL_TABLES = [
    "sys_aia_tool_execution",
    "sn_agent_tool_execution",
    "x_snc_aia_tool_execution",
]
AIA_EXECUTION_FIELDS = [
    "sys_id", "agent", "status", "sys_created_on", "sys_updated_on",
    "trigger_type", "trigger_context", "error_message", "input", "output",
    "duration", "user", "conversation_id",
]
AIA_TOOL_FIELDS = [
    "sys_id", "execution", "tool_name", "input", "output",
    "status", "error_message", "duration", "step_number",
]
AIA_STATUS_MAP = {
    "success": "success",
    "completed": "success",
    "failure": "failure",
    "failed": "failure",
    "error": "failure",
    "running": "running",
    "in_progress": "running",
    "pending": "running",
}
AIA_STATUS_LABELS = {"success": "[OK]", "failure": "[FAIL]", "running": "[...]"}
AIA_DEFAULT_LIMIT = 20
AIA_MAX_LIMIT = 100
MAX_AIA_TOOL_CALLS = 500
MAX_AIA_INPUT_LENGTH = 200

# Errors that mean a candidate table is absent or unreadable on this instance
_MISSING_TABLE_KINDS = frozenset({
    ErrorKind.TABLE_NOT_ACCESSIBLE,
    ErrorKind.ACL_DENIED,
    ErrorKind.QUERY_ERROR,
    ErrorKind.UNKNOWN_ERROR,
})


def clamp(value: int | None, default: int, low: int, high: int) -> int:
    """Clamp an optional integer into [low, high]."""
    if value is None:
        value = default
    return max(low, min(int(value), high))


def time_range_query(time_range: str, now: datetime | None = None) -> str:
    """Build a sys_created_on lower bound for a time range.

    Unknown ranges fall back to one hour.
    """
    now = now or datetime.now(timezone.utc)
    start = now - TIME_RANGES.get(time_range, TIME_RANGES["1h"])
    return f"sys_created_on>={start.strftime('%Y-%m-%d %H:%M:%S')}"


def build_table_query(
    query: str | None,
    order_by: str | None = None,
    order_direction: str = "desc",
) -> str:
    """Append an ORDERBY clause to an encoded query.

    Without an explicit order_by, newest records come first unless the
    query already orders itself.
    """
    full_query = query or ""
    if order_by:
        prefix = "ORDERBY" if order_direction.lower() == "asc" else "ORDERBYDESC"
        clause = f"{prefix}{order_by}"
    elif "ORDERBY" not in full_query:
        clause = "ORDERBYDESCsys_created_on"
    else:
        return full_query
    return f"{full_query}^{clause}" if full_query else clause


def resolve_fields(table: str, fields: list[str] | None) -> list[str]:
    """Fields to fetch for a table; sys_id is always included."""
    if fields:
        selected = list(fields)
    else:
        selected = list(DEFAULT_FIELDS.get(table.lower(), GENERIC_FIELDS))
    if "sys_id" not in selected:
        selected.insert(0, "sys_id")
    return selected


def build_syslog_query(
    level: str = "error",
    source: str | None = None,
    message: str | None = None,
    time_range: str = "1h",
    scope: str | None = None,
    now: datetime | None = None,
) -> tuple[str, str]:
    """Build the table name and encoded query for a syslog search.

    Returns:
        (table, query) tuple.
    """
    parts = [time_range_query(time_range, now)]
    level_num = SYSLOG_LEVELS.get(level.lower())
    if level_num is not None:
        parts.append(f"level={level_num}")
    if source:
        parts.append(f"sourceLIKE{source}")
    if message:
        parts.append(f"messageLIKE{message}")
    parts.append("ORDERBYDESCsys_created_on")
    query = "^".join(parts)

    if scope:
        return "syslog_app_scope", f"sys_scope.scope={scope}^{query}"
    return "syslog", query


def _level_name(raw: object) -> str:
    try:
        num = int(str(raw))
    except ValueError:
        return str(raw).upper() or "UNKNOWN"
    return SYSLOG_LEVEL_NAMES.get(num, f"LEVEL_{num}")


def build_aia_query(
    execution_id: str | None = None,
    agent_name: str | None = None,
    status: str = "all",
    time_range: str = "4h",
    now: datetime | None = None,
) -> str:
    """Build the encoded query for an AI Agent execution search.

    A specific execution id ignores every other filter.
    """
    if execution_id:
        return f"sys_id={execution_id}"

    parts = [time_range_query(time_range, now)]
    if agent_name:
        parts.append(f"agentLIKE{agent_name}")
    if status != "all":
        raw = [k for k, v in AIA_STATUS_MAP.items() if v == status]
        if raw:
            parts.append(f"statusIN{','.join(raw)}")
    parts.append("ORDERBYDESCsys_created_on")
    return "^".join(parts)


async def find_aia_executions(
    client: ServiceNowClient,
    query: str,
    limit: int,
) -> tuple[str | None, list[dict[str, Any]]]:
    """Query the first readable AI Agent execution table.

    Returns:
        (table, executions); table is None when no candidate is readable.
    """
    for table in AIA_EXECUTION_TABLES:
        try:
            records = await client.query_table(table, query, AIA_EXECUTION_FIELDS, limit)
        except ServiceNowError as e:
            if e.kind not in _MISSING_TABLE_KINDS:
                raise
            logger.debug(f"AIA table {table} not readable: {e.message}")
            continue
        return table, records
    return None, []


def _reference_id(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("value") or "")
    return str(value or "")


def _to_int(value: Any) -> int:
    try:
        return int(str(value))
    except ValueError:
        return 0


async def fetch_tool_calls(
    client: ServiceNowClient,
    execution_ids: list[str],
) -> dict[str, list[dict[str, Any]]]:
    """Tool calls for the given executions, grouped by execution and ordered by step."""
    query = f"executionIN{','.join(execution_ids)}^ORDERBYstep_number"
    for table in AIA_TOOL_TABLES:
        try:
            records = await client.query_table(
                table, query, AIA_TOOL_FIELDS, MAX_AIA_TOOL_CALLS
            )
        except ServiceNowError as e:
            if e.kind not in _MISSING_TABLE_KINDS:
                raise
            logger.debug(f"AIA tool table {table} not readable: {e.message}")
            continue

        calls: dict[str, list[dict[str, Any]]] = {}
        for record in records:
            execution = _reference_id(record.get("execution"))
            if execution:
                calls.setdefault(execution, []).append(record)
        return calls
    return {}


def _status_label(status: str) -> str:
    normalized = AIA_STATUS_MAP.get(status.lower())
    return AIA_STATUS_LABELS.get(normalized or "", f"[{status.upper()}]")


def format_aia_execution(execution: dict[str, Any], tool_calls: list[dict[str, Any]]) -> str:
    """Format one execution and its tool calls.

    Inputs and errors are shown only for tool calls that did not succeed.
    """
    status = format_value(execution.get("status") or "unknown")
    duration = _to_int(execution.get("duration"))
    lines = [
        f"{_status_label(status)} Execution: {execution.get('sys_id', '')}",
        DIVIDER,
        f"Agent: {format_value(execution.get('agent') or 'Unknown Agent')}",
        f"Status: {status}",
        f"Started: {execution.get('sys_created_on', '')}",
        f"Duration: {f'{duration}ms' if duration else 'N/A'}",
    ]

    trigger = execution.get("trigger_type")
    if trigger:
        context = execution.get("trigger_context")
        suffix = f" - {truncate_value(context, 100, marker='')}" if context else ""
        lines.append(f"Trigger: {format_value(trigger)}{suffix}")
    if execution.get("error_message"):
        lines.append(f"ERROR: {execution['error_message']}")

    if tool_calls:
        lines.append(f"\nTool Calls ({len(tool_calls)}):")
        for call in tool_calls:
            succeeded = AIA_STATUS_MAP.get(str(call.get("status", "")).lower()) == "success"
            lines.append(
                f"  {_to_int(call.get('step_number'))}. {'[OK]' if succeeded else '[FAIL]'} "
                f"{call.get('tool_name') or 'unknown'} ({_to_int(call.get('duration'))}ms)"
            )
            if succeeded:
                continue
            if call.get("input"):
                lines.append(f"     Input: {truncate_value(call['input'], MAX_AIA_INPUT_LENGTH)}")
            if call.get("error_message"):
                lines.append(f"     Error: {call['error_message']}")
    return "\n".join(lines)


def register_query_tools(mcp: FastMCP, context: ServerContext) -> None:
    """Register table query and syslog tools with the MCP server.

    Args:
        mcp: The FastMCP server instance.
        context: Shared server state.
    """
    connections = context.connections
    settings = context.config.query_settings

    @mcp.tool()
    @audit_tool_call("servicenow_query")
    async def servicenow_query(
        table: str,
        query: str | None = None,
        fields: list[str] | None = None,
        limit: int = 50,
        order_by: str | None = None,
        order_direction: str = "desc",
    ) -> str:
        """Query records from a ServiceNow table.

        Read-only. Credential and role tables are refused and sensitive
        fields (passwords, tokens, secrets) are redacted.

        Args:
            table: Table name, e.g. "incident" or "sys_user".
            query: Encoded query, e.g. "active=true^priority=1".
            fields: Fields to return. Defaults depend on the table.
            limit: Maximum records (1-500, default 50).
            order_by: Field to sort by. Defaults to sys_created_on.
            order_direction: "asc" or "desc" (default).

        Returns:
            Formatted records or an error description.
        """
        if not table or not table.strip():
            return "Error: table is required"
        table = table.strip()

        if table.lower() in RESTRICTED_TABLES:
            return (
                f'Access to table "{table}" is restricted for security reasons.\n\n'
                "This table may contain sensitive credential or permission data.\n"
                "If you need access, consult your ServiceNow administrator."
            )

        client = connections.get_active_client()
        if client is None:
            return NOT_CONNECTED_MESSAGE

        limit = clamp(limit, settings["default_limit"], 1, settings["max_limit"])
        full_query = build_table_query(query, order_by, order_direction)
        fetch_fields = resolve_fields(table, fields)
        connections.touch()
        logger.debug(f"Querying {table}: {full_query}")

        try:
            records = await client.query_table(table, full_query, fetch_fields, limit)
        except ServiceNowError as e:
            message = format_error(e, prefix=f'Failed to query table "{table}"')
            if e.kind is ErrorKind.TABLE_NOT_ACCESSIBLE:
                message += (
                    "\n\nPossible causes:\n"
                    "- Table name may be incorrect\n"
                    "- Your user may lack read access to this table\n"
                    "- The table may not exist in this instance"
                )
            return message

        if not records:
            matching = f" matching query: {query}" if query else ""
            return (
                f'No records found in "{table}"{matching}.\n\n'
                "Try adjusting your query or checking the table name."
            )

        limit_note = " (limit reached)" if len(records) == limit else ""
        header = (
            f"Query Results from {client.instance_url}\n"
            f"Table: {table}\n"
            f"Query: {query or '(all records)'}\n"
            f"Fields: {', '.join(fetch_fields)}\n"
            f"Found: {len(records)} record(s){limit_note}\n\n"
            f"{DIVIDER}"
        )
        body = "\n\n".join(format_record(r, i) for i, r in enumerate(records, 1))
        return f"{header}\n\n{body}"

    @mcp.tool()
    @audit_tool_call("servicenow_syslogs")
    async def servicenow_syslogs(
        level: str = "error",
        source: str | None = None,
        message: str | None = None,
        time_range: str = "1h",
        limit: int = 50,
        scope: str | None = None,
    ) -> str:
        """Search ServiceNow system logs.

        Args:
            level: "debug", "info", "warning", "error" (default) or "all".
            source: Filter by log source (substring match).
            message: Filter by message text (substring match).
            time_range: How far back to search: 1h, 4h, 12h, 24h or 7d.
            limit: Maximum entries (1-500, default 50).
            scope: Application scope; searches syslog_app_scope when set.

        Returns:
            Formatted log entries, newest first.
        """
        client = connections.get_active_client()
        if client is None:
            return NOT_CONNECTED_MESSAGE

        limit = clamp(limit, settings["default_limit"], 1, settings["max_limit"])
        table, query = build_syslog_query(level, source, message, time_range, scope)
        connections.touch()

        try:
            logs = await client.query_table(table, query, SYSLOG_FIELDS, limit)
        except ServiceNowError as e:
            return format_error(e, prefix="Failed to query syslogs")

        criteria = [f"level={level}", f"time_range={time_range}"]
        if source:
            criteria.append(f'source="{source}"')
        if message:
            criteria.append(f'message contains "{message}"')
        if scope:
            criteria.append(f"scope={scope}")

        if not logs:
            return (
                f"No logs found matching criteria: {', '.join(criteria)}\n\n"
                "Try expanding the time range or adjusting filters."
            )

        entries = []
        for i, log in enumerate(logs, 1):
            text = truncate_value(
                format_value(log.get("message") or ""),
                MAX_LOG_MESSAGE_LENGTH,
                marker="... (truncated)",
            )
            entries.append(
                f"[{i}] {log.get('sys_created_on', '')} | {_level_name(log.get('level'))} | "
                f"{log.get('source') or 'unknown'}\n"
                f"    User: {log.get('sys_created_by') or 'system'}\n"
                f"    {text}"
            )

        limit_note = " (limit reached)" if len(logs) == limit else ""
        header = (
            f"System Logs from {client.instance_url}\n"
            f"Query: {', '.join(criteria)}\n"
            f"Found: {len(logs)} log entries{limit_note}\n\n"
            f"{DIVIDER}"
        )
        return f"{header}\n\n" + "\n\n".join(entries)

    @mcp.tool()
    @audit_tool_call("servicenow_aia_logs")
    async def servicenow_aia_logs(
        execution_id: str | None = None,
        agent_name: str | None = None,
        status: str = "all",
        time_range: str = "4h",
        limit: int = AIA_DEFAULT_LIMIT,
        include_tool_calls: bool = True,
    ) -> str:
        """Search AI Agent execution logs to debug agent workflows.

        Shows each execution's agent, trigger, status, duration and errors,
        plus the step-by-step tool calls it made.

        Args:
            execution_id: A specific execution sys_id. Other filters are ignored.
            agent_name: Filter by agent name (substring match).
            status: "success", "failure", "running" or "all" (default).
            time_range: How far back to search: 1h, 4h (default), 12h, 24h or 7d.
            limit: Maximum executions (1-100, default 20).
            include_tool_calls: Include each execution's tool calls (default True).

        Returns:
            Formatted executions, newest first.
        """
        client = connections.get_active_client()
        if client is None:
            return NOT_CONNECTED_MESSAGE

        limit = clamp(limit, AIA_DEFAULT_LIMIT, 1, AIA_MAX_LIMIT)
        query = build_aia_query(execution_id, agent_name, status, time_range)
        connections.touch()

        try:
            table, executions = await find_aia_executions(client, query, limit)
            if table is None:
                return (
                    "Could not find an AI Agent execution table. "
                    f"Tried: {', '.join(AIA_EXECUTION_TABLES)}\n\n"
                    "This may mean:\n"
                    "- The AI Agent framework is not installed on this instance\n"
                    "- Your user lacks access to the AI Agent tables\n"
                    "- The table has a different name in this release\n\n"
                    "Check that Now Assist or AI Agents are enabled on this instance."
                )

            criteria = [f"status={status}", f"time_range={time_range}"]
            if agent_name:
                criteria.append(f'agent="{agent_name}"')
            if execution_id:
                criteria.append(f'execution_id="{execution_id}"')

            if not executions:
                return (
                    f"No AI Agent executions found matching criteria: {', '.join(criteria)}\n\n"
                    "Try expanding the time range or adjusting filters."
                )

            tool_calls: dict[str, list[dict[str, Any]]] = {}
            if include_tool_calls:
                ids = [str(e.get("sys_id")) for e in executions if e.get("sys_id")]
                tool_calls = await fetch_tool_calls(client, ids)
        except ServiceNowError as e:
            return format_error(e, prefix="Failed to query AI Agent logs")

        header = (
            f"AI Agent Execution Logs from {client.instance_url}\n"
            f"Table: {table}\n"
            f"Query: {', '.join(criteria)}\n"
            f"Found: {len(executions)} execution(s)\n\n"
            f"{DIVIDER}"
        )
        body = "\n\n".join(
            format_aia_execution(e, tool_calls.get(str(e.get("sys_id", "")), []))
            for e in executions
        )
        return f"{header}\n\n{body}"
