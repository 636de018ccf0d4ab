"""
Background script submission for Foundry MCP.

ScriptRunner takes a ScriptExecutionRequest through
Submitted -> Analyzed -> Blocked | Approved -> Dispatched -> Completed | Failed,
and writes exactly one audit record per submission.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .audit import AuditLogger, ScriptOutcome
from .connection import ConnectionManager
from .errors import ErrorKind, ServiceNowError
from .script_guard import ExecutionMode, ScriptExecutionRequest, ScriptGuard

logger = logging.getLogger(__name__)


@dataclass
class ScriptResult:
    """Result returned to the caller for one submission."""

    status: str  # "completed", "failed" or "blocked"
    execution_id: str
    mode: str
    output: str | None = None
    mutations_blocked_count: int = 0
    mutations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error_kind: str | None = None
    message: str | None = None
    suggestion: str | None = None
    matched_category: str | None = None
    duration_ms: float = 0.0
    audit_record_ref: str = ""


class ScriptRunner:
    """Screens, dispatches and audits background scripts."""

    def __init__(
        self,
        connections: ConnectionManager,
        guard: ScriptGuard,
        audit: AuditLogger,
    ):
        self.connections = connections
        self.guard = guard
        self.audit = audit

    async def submit(
        self,
        request: ScriptExecutionRequest,
        instance: str | None = None,
    ) -> ScriptResult:
        """Submit a script against the named (or active) instance.

        Blocked scripts never reach the instance and are never retried.
        Every call produces exactly one audit record.

        Args:
            request: Script, mode, timeout, scope and description.
            instance: Instance to run against. Defaults to the active one.

        Returns:
            ScriptResult describing the outcome.
        """
        submitted_at = datetime.now(timezone.utc)
        start = time.monotonic()
        mode = ExecutionMode(request.mode)
        session = self.connections.get_session(instance)
        actor = session.user_name if session else None
        target = session.instance_url if session else instance

        analysis = self.guard.analyze(request.script, mode)

        if not analysis.approved:
            logger.warning(
                f"Blocked {mode.value} script ({analysis.matched_category}): {analysis.reason}"
            )
            error = analysis.to_error()
            outcome = ScriptOutcome(
                status="blocked",
                duration_ms=(time.monotonic() - start) * 1000,
                blocked_reason=analysis.reason,
                matched_category=analysis.matched_category,
                mutations_blocked_count=analysis.mutation_count,
                error_kind=error.kind.value,
            )
            record = self.audit.record(
                request, outcome, actor=actor, instance=target, submitted_at=submitted_at
            )
            return ScriptResult(
                status="blocked",
                execution_id=record.execution_id,
                mode=mode.value,
                mutations_blocked_count=analysis.mutation_count,
                mutations=list(analysis.mutations),
                warnings=list(analysis.warnings),
                error_kind=error.kind.value,
                message=error.message,
                suggestion=error.suggestion,
                matched_category=analysis.matched_category,
                duration_ms=outcome.duration_ms,
                audit_record_ref=record.execution_id,
            )

        client = self.connections.resolve_client(instance)
        if client is None:
            error = ServiceNowError(
                ErrorKind.CONNECTION_FAILED,
                "Not connected to ServiceNow",
                suggestion="Use servicenow_connect first",
            )
            return self._failed(
                request, error, start, submitted_at, actor, target, analysis.warnings
            )

        self.connections.touch(instance)
        dispatched = self.guard.prepare(request.script, mode)

        try:
            output = await client.execute_script(
                dispatched,
                timeout_seconds=request.timeout_seconds,
                description=request.description,
                scope=request.scope,
            )
        except ServiceNowError as e:
            return self._failed(
                request, e, start, submitted_at, actor, target, analysis.warnings
            )

        intercepted = output.mutations if mode is not ExecutionMode.EXECUTE else []
        duration_ms = (time.monotonic() - start) * 1000

        if output.error:
            error = ServiceNowError(
                ErrorKind.SCRIPT_ERROR,
                f"Script error: {output.error}",
                details={"output": output.text},
            )
            return self._failed(
                request, error, start, submitted_at, actor, target, analysis.warnings,
                output=output.text, mutations=intercepted,
            )

        record = self.audit.record(
            request,
            ScriptOutcome(
                status="success",
                duration_ms=duration_ms,
                mutations_blocked_count=len(intercepted),
            ),
            actor=actor,
            instance=target,
            submitted_at=submitted_at,
        )
        return ScriptResult(
            status="completed",
            execution_id=record.execution_id,
            mode=mode.value,
            output=output.text,
            mutations_blocked_count=len(intercepted),
            mutations=list(intercepted),
            warnings=list(analysis.warnings),
            duration_ms=duration_ms,
            audit_record_ref=record.execution_id,
        )

    def _failed(
        self,
        request: ScriptExecutionRequest,
        error: ServiceNowError,
        start: float,
        submitted_at: datetime,
        actor: str | None,
        target: str | None,
        warnings: list[str],
        output: str | None = None,
        mutations: list[str] | None = None,
    ) -> ScriptResult:
        duration_ms = (time.monotonic() - start) * 1000
        mutations = mutations or []
        record = self.audit.record(
            request,
            ScriptOutcome(
                status="failure",
                duration_ms=duration_ms,
                mutations_blocked_count=len(mutations),
                error_kind=error.kind.value,
            ),
            actor=actor,
            instance=target,
            submitted_at=submitted_at,
        )
        return ScriptResult(
            status="failed",
            execution_id=record.execution_id,
            mode=ExecutionMode(request.mode).value,
            output=output,
            mutations_blocked_count=len(mutations),
            mutations=list(mutations),
            warnings=list(warnings),
            error_kind=error.kind.value,
            message=error.message,
            suggestion=error.suggestion,
            duration_ms=duration_ms,
            audit_record_ref=record.execution_id,
        )
