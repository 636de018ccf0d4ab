"""
Core infrastructure modules for Foundry MCP.

- errors: Error taxonomy shared by every component
- auth: Credential resolution and profile store
- client: ServiceNow REST client with retry logic
- connection: Session registry
- script_guard: Script safety screening and execution modes
- script_runner: Script submission state machine
- audit: Operation and script audit logging
- context: Server context wiring
"""

from .audit import AuditLogger, AuditRecord, ScriptOutcome, get_audit_logger
from .auth import (
    AuthParams,
    AuthType,
    BasicAuth,
    CredentialProfile,
    CredentialResolver,
    CredentialStore,
    OAuthAuth,
    TokenAuth,
    build_auth_config,
)
from .client import RetryPolicy, ServiceNowClient, normalize_instance_url
from .connection import ConnectionManager, ConnectionResult, ConnectionSession
from .context import ServerContext, build_context
from .errors import ErrorKind, ServiceNowError
from .script_guard import ExecutionMode, ScriptExecutionRequest, ScriptGuard
from .script_runner import ScriptResult, ScriptRunner

__all__ = [
    "AuditLogger",
    "AuditRecord",
    "AuthParams",
    "AuthType",
    "BasicAuth",
    "ConnectionManager",
    "ConnectionResult",
    "ConnectionSession",
    "CredentialProfile",
    "CredentialResolver",
    "CredentialStore",
    "ErrorKind",
    "ExecutionMode",
    "OAuthAuth",
    "RetryPolicy",
    "ScriptExecutionRequest",
    "ScriptGuard",
    "ScriptOutcome",
    "ScriptResult",
    "ScriptRunner",
    "ServerContext",
    "ServiceNowClient",
    "ServiceNowError",
    "TokenAuth",
    "build_auth_config",
    "build_context",
    "get_audit_logger",
    "normalize_instance_url",
]
