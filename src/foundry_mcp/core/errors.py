"""
Error taxonomy for Foundry MCP.

Every failure surfaced to an MCP client is a ServiceNowError carrying one
ErrorKind from a closed set, a human-readable message and, where one
applies, a remediation suggestion.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of error kinds."""

    # Connection
    CONNECTION_FAILED = "connection_failed"
    AUTHENTICATION_FAILED = "authentication_failed"
    TOKEN_EXPIRED = "token_expired"
    INSTANCE_UNAVAILABLE = "instance_unavailable"
    INVALID_INSTANCE = "invalid_instance"

    # Permission
    ACL_DENIED = "acl_denied"
    ROLE_REQUIRED = "role_required"
    TABLE_NOT_ACCESSIBLE = "table_not_accessible"

    # Execution
    SCRIPT_TIMEOUT = "script_timeout"
    SCRIPT_ERROR = "script_error"
    SCRIPT_BLOCKED = "script_blocked"
    QUERY_ERROR = "query_error"

    # Rate limiting
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"

    # Safety
    DANGEROUS_OPERATION = "dangerous_operation"
    SENSITIVE_DATA = "sensitive_data"

    UNKNOWN_ERROR = "unknown_error"


# Transient kinds retried by ServiceNowClient.request_with_retry
RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset({
    ErrorKind.INSTANCE_UNAVAILABLE,
    ErrorKind.TOKEN_EXPIRED,
    ErrorKind.RATE_LIMITED,
})


class ServiceNowError(Exception):
    """Base exception for ServiceNow integration errors."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
        suggestion: str | None = None,
    ):
        super().__init__(message)
        self._kind = kind
        self._message = message
        self._details = dict(details) if details else {}
        self._suggestion = suggestion

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def message(self) -> str:
        return self._message

    @property
    def details(self) -> dict[str, Any]:
        return dict(self._details)

    @property
    def suggestion(self) -> str | None:
        return self._suggestion

    @property
    def status_code(self) -> int | None:
        """HTTP status code, when the error came from an HTTP response."""
        return self._details.get("status")

    def __repr__(self) -> str:
        return f"ServiceNowError({self._kind.value!r}, {self._message!r})"
