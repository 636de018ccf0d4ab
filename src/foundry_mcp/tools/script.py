"""
Background script tools for Foundry MCP.

Scripts are screened by the script guard before anything reaches the
instance. Three modes:
- readonly (default): scripts that look like they mutate data are refused,
  and approved scripts still run with GlideRecord writes intercepted
- dryrun: writes are intercepted and reported as "would change" entries
- execute: runs as written; mutations are reported as warnings

Every submission, including blocked ones, is written to the script audit log.
"""

from mcp.server.fastmcp import FastMCP

from ..core.audit import audit_tool_call
from ..core.context import ServerContext
from ..core.script_guard import ExecutionMode, ScriptExecutionRequest
from ..core.script_runner import ScriptResult
from .base import DIVIDER, format_table_results, truncate_value
from .query import clamp

AUDIT_COLUMNS = (
    "timestamp",
    "status",
    "mode",
    "actor",
    "instance",
    "duration_ms",
    "matched_category",
    "mutations_blocked_count",
)


def format_script_result(result: ScriptResult, instance: str | None, timeout: int) -> str:
    """Render a ScriptResult as tool output."""
    if result.status == "blocked":
        lines = [
            "Script blocked for safety reasons",
            "",
            f"Category: {result.matched_category}",
            f"Reason: {result.message}",
        ]
        if result.mutations:
            lines.append(f"Detected mutations: {', '.join(result.mutations)}")
        if result.suggestion:
            lines.append(f"\nSuggestion: {result.suggestion}")
        lines.append(f"\nAudit ID: {result.audit_record_ref}")
        return "\n".join(lines)

    title = "RESULT" if result.status == "completed" else "FAILED"
    lines = [
        f"Script Execution on {instance or '(not connected)'}",
        f"Mode: {result.mode}",
        f"Timeout: {timeout}s",
        "",
        DIVIDER,
        title,
        DIVIDER,
        "",
    ]

    if result.status == "failed":
        lines.append(f"Error ({result.error_kind}): {result.message}")
        if result.suggestion:
            lines.append(f"\nSuggestion: {result.suggestion}")
        if result.output:
            lines.append(f"\nOutput before failure:\n{result.output}")
    else:
        lines.append(result.output or "(no output)")

    if result.mutations:
        label = "Blocked writes" if result.mode == ExecutionMode.READONLY.value else "Would change"
        lines.append(f"\n{label} ({result.mutations_blocked_count}):")
        lines.extend(f"  - {truncate_value(m, 200)}" for m in result.mutations)

    if result.warnings:
        lines.append("\nWarnings:")
        lines.extend(f"- {w}" for w in result.warnings)

    lines.append(f"\nDuration: {round(result.duration_ms)}ms")
    lines.append(f"Audit ID: {result.audit_record_ref}")
    return "\n".join(lines)


def register_script_tools(mcp: FastMCP, context: ServerContext) -> None:
    """Register script execution and script audit tools with the MCP server.

    Args:
        mcp: The FastMCP server instance.
        context: Shared server state.
    """
    settings = context.config.script_settings

    @mcp.tool()
    @audit_tool_call("servicenow_script")
    async def servicenow_script(
        script: str,
        mode: str = "readonly",
        timeout: int = 30,
        scope: str | None = None,
        description: str | None = None,
    ) -> str:
        """Run a background script on the active ServiceNow instance.

        The script guard is a guardrail, not a security boundary: it
        pattern-matches source text and cannot see obfuscated or indirect
        calls. Instance ACLs still apply.

        Args:
            script: Server-side JavaScript to run.
            mode: "readonly" (default), "dryrun" or "execute".
            timeout: Timeout in seconds (1-120, default 30).
            scope: Application scope to run in. Defaults to global.
            description: Short note recorded with the audit entry.

        Returns:
            Script output, intercepted writes and the audit ID.
        """
        try:
            execution_mode = ExecutionMode(mode.lower())
        except ValueError:
            valid = ", ".join(m.value for m in ExecutionMode)
            return f"Error: Invalid mode '{mode}'. Use one of: {valid}."

        timeout = clamp(timeout, settings["default_timeout"], 1, settings["max_timeout"])
        request = ScriptExecutionRequest(
            script=script or "",
            mode=execution_mode,
            timeout_seconds=timeout,
            scope=scope,
            description=description,
        )

        result = await context.scripts.submit(request)
        session = context.connections.get_active_session()
        return format_script_result(
            result, session.instance_url if session else None, timeout
        )

    @mcp.tool()
    @audit_tool_call("servicenow_audit_log")
    async def servicenow_audit_log(limit: int = 20) -> str:
        """Show recent script submissions from the audit log.

        Args:
            limit: Number of entries to show (1-200, default 20).

        Returns:
            Table of recent script audit records, newest first.
        """
        limit = clamp(limit, 20, 1, 200)
        records = context.audit.get_recent_script_records(limit)
        if not records:
            return "No script executions recorded yet."

        rows = [{col: record.get(col) for col in AUDIT_COLUMNS} for record in records]
        lines = [f"# Recent Script Executions ({len(records)})\n", format_table_results(rows)]

        lines.append("\n## Scripts")
        for record in records:
            preview = truncate_value(record.get("script_preview", ""), 80).replace("\n", " ")
            lines.append(f"- {record.get('execution_id')}: {preview}")
        return "\n".join(lines)
