"""
Audit logging for Foundry MCP.

Logs all tool invocations, and every background script submission with
its outcome, for accountability and debugging.
"""

import bisect
import hashlib
import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .script_guard import ScriptExecutionRequest

logger = logging.getLogger(__name__)

SCRIPT_PREVIEW_LENGTH = 200


@dataclass(frozen=True)
class ScriptOutcome:
    """What happened to a script submission."""

    status: str  # "success", "failure" or "blocked"
    duration_ms: float = 0.0
    blocked_reason: str | None = None
    matched_category: str | None = None
    mutations_blocked_count: int = 0
    error_kind: str | None = None


@dataclass(frozen=True)
class AuditRecord:
    """Immutable audit entry for one script submission."""

    execution_id: str
    timestamp: str
    actor: str
    instance: str | None
    script_preview: str
    script_hash: str
    mode: str
    duration_ms: float
    status: str
    blocked_reason: str | None
    matched_category: str | None
    mutations_blocked_count: int
    description: str | None
    scope: str | None
    error_kind: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """Logs MCP tool operations and script submissions to JSON-lines files."""

    def __init__(self, log_dir: Path | None = None):
        """Initialize the audit logger.

        Args:
            log_dir: Directory for audit logs. Defaults to project logs/.
        """
        if log_dir is None:
            # Default: logs/ in project root
            project_root = Path(__file__).parent.parent.parent.parent
            log_dir = project_root / "logs"

        self.log_dir = log_dir
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = self.log_dir / "audit.jsonl"
        self.script_log_file = self.log_dir / "script_audit.jsonl"

        self._lock = threading.Lock()
        self._script_records: list[AuditRecord] = []

    def log_operation(
        self,
        tool: str,
        params: dict[str, Any],
        result_summary: str | None = None,
        success: bool = True,
        error: str | None = None,
        user: str | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log a tool operation.

        Args:
            tool: Name of the tool invoked.
            params: Parameters passed to the tool.
            result_summary: Brief summary of the result.
            success: Whether the operation succeeded.
            error: Error message if operation failed.
            user: User identifier.
            duration_ms: Operation duration in milliseconds.
        """
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tool": tool,
            "params": self._sanitize_params(params),
            "success": success,
        }

        if result_summary:
            entry["result_summary"] = result_summary
        if error:
            entry["error"] = error
        if user:
            entry["user"] = user
        if duration_ms is not None:
            entry["duration_ms"] = round(duration_ms, 2)

        try:
            self._write_entry(self.log_file, entry)
        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")

    def record(
        self,
        request: ScriptExecutionRequest,
        outcome: ScriptOutcome,
        actor: str | None = None,
        instance: str | None = None,
        submitted_at: datetime | None = None,
    ) -> AuditRecord:
        """Append an audit record for a script submission.

        Called exactly once per submission, whether it was blocked, failed
        or completed. Never raises: a failure to persist is logged as a
        warning and the record is still returned.

        Args:
            request: The submitted script request.
            outcome: Final outcome of the submission.
            actor: User the script ran (or would have run) as.
            instance: Instance URL the script targeted.
            submitted_at: When the script was submitted. The record's
                timestamp and its place in script_records follow this,
                not the time the outcome was known. Defaults to now.

        Returns:
            The AuditRecord created for this submission.
        """
        script = request.script or ""
        record = AuditRecord(
            execution_id=str(uuid.uuid4()),
            timestamp=(submitted_at or datetime.now(timezone.utc)).isoformat(),
            actor=actor or "unknown",
            instance=instance,
            script_preview=script[:SCRIPT_PREVIEW_LENGTH],
            script_hash=hashlib.sha256(script.encode("utf-8")).hexdigest(),
            mode=getattr(request.mode, "value", str(request.mode)),
            duration_ms=round(outcome.duration_ms, 2),
            status=outcome.status,
            blocked_reason=outcome.blocked_reason,
            matched_category=outcome.matched_category,
            mutations_blocked_count=outcome.mutations_blocked_count,
            description=request.description,
            scope=request.scope,
            error_kind=outcome.error_kind,
        )

        try:
            with self._lock:
                bisect.insort(self._script_records, record, key=lambda r: r.timestamp)
            self._write_entry(self.script_log_file, record.to_dict())
        except Exception as e:
            logger.warning(
                f"Failed to persist script audit record {record.execution_id}: {e}"
            )

        return record

    @property
    def script_records(self) -> list[AuditRecord]:
        """Script audit records created by this process, oldest submission first."""
        with self._lock:
            return list(self._script_records)

    def _sanitize_params(self, params: dict[str, Any]) -> dict[str, Any]:
        """Remove sensitive information from parameters.

        Args:
            params: Original parameters.

        Returns:
            Sanitized parameters safe for logging.
        """
        sensitive_keys = {"password", "secret", "token", "key", "credential"}
        sanitized = {}

        for key, value in params.items():
            if any(s in key.lower() for s in sensitive_keys):
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, str) and len(value) > 1000:
                sanitized[key] = value[:1000] + "... [truncated]"
            else:
                sanitized[key] = value

        return sanitized

    def _write_entry(self, path: Path, entry: dict[str, Any]) -> None:
        """Append one JSON line under the lock.

        Args:
            path: Log file to append to.
            entry: Log entry dictionary.
        """
        line = json.dumps(entry, default=str) + "\n"
        with self._lock:
            with open(path, "a") as f:
                f.write(line)

    def _read_entries(
        self, path: Path, limit: int, order_by: str | None = None
    ) -> list[dict[str, Any]]:
        if not path.exists():
            return []

        entries = []
        try:
            with open(path) as f:
                for line in f:
                    line = line.strip()
                    if line:
                        entries.append(json.loads(line))
        except Exception as e:
            logger.error(f"Failed to read audit log {path}: {e}")
            return []

        if order_by:
            entries.sort(key=lambda e: str(e.get(order_by, "")))

        # Return newest first
        return list(reversed(entries[-limit:]))

    def get_recent_entries(self, limit: int = 100) -> list[dict[str, Any]]:
        """Get recent tool operation entries, newest first."""
        return self._read_entries(self.log_file, limit)

    def get_recent_script_records(self, limit: int = 20) -> list[dict[str, Any]]:
        """Get recent script audit records, newest submission first."""
        return self._read_entries(self.script_log_file, limit, order_by="timestamp")


# Global audit logger instance
_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance.

    Returns:
        The AuditLogger singleton instance.
    """
    global _audit_logger
    if _audit_logger is None:
        from ..config import get_config

        _audit_logger = AuditLogger(log_dir=get_config().audit_dir)
    return _audit_logger


def audit_tool_call(tool: str):
    """Decorator to automatically audit tool calls.

    Args:
        tool: Name of the tool being decorated.

    Returns:
        Decorator function.
    """
    import functools
    import time

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            audit = get_audit_logger()
            start_time = time.time()

            try:
                result = await func(*args, **kwargs)
                duration_ms = (time.time() - start_time) * 1000

                # Generate result summary
                if isinstance(result, str):
                    summary = result[:200] if len(result) > 200 else result
                elif isinstance(result, dict):
                    summary = f"Dict with keys: {list(result.keys())}"
                elif isinstance(result, list):
                    summary = f"List with {len(result)} items"
                else:
                    summary = str(type(result).__name__)

                audit.log_operation(
                    tool=tool,
                    params=kwargs,
                    result_summary=summary,
                    success=True,
                    duration_ms=duration_ms,
                )

                return result

            except Exception as e:
                duration_ms = (time.time() - start_time) * 1000
                audit.log_operation(
                    tool=tool,
                    params=kwargs,
                    success=False,
                    error=str(e),
                    duration_ms=duration_ms,
                )
                raise

        return wrapper
    return decorator
