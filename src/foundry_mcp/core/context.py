"""
Server context for Foundry MCP.

Bundles the connection registry, script guard, audit logger and script
runner so tool handlers receive them explicitly.
"""

from dataclasses import dataclass

from ..config import Config
from .audit import AuditLogger
from .auth import CredentialResolver, CredentialStore
from .client import RetryPolicy
from .connection import ConnectionManager
from .script_guard import ScriptGuard
from .script_runner import ScriptRunner


@dataclass
class ServerContext:
    """State shared by every tool handler of one server."""

    config: Config
    connections: ConnectionManager
    guard: ScriptGuard
    audit: AuditLogger
    scripts: ScriptRunner


def build_context(config: Config, audit: AuditLogger) -> ServerContext:
    """Wire up a ServerContext from configuration.

    Args:
        config: Loaded configuration.
        audit: Audit logger shared with the tool-call decorator.

    Returns:
        A fresh ServerContext with an empty session registry.
    """
    connections = ConnectionManager(
        resolver=CredentialResolver(CredentialStore(config.credentials_path)),
        timeout=float(config.http_settings["timeout"]),
        retry_policy=RetryPolicy.from_settings(config.retry_settings),
        script_poll_delay=float(config.script_settings["poll_delay"]),
    )
    guard = ScriptGuard()
    return ServerContext(
        config=config,
        connections=connections,
        guard=guard,
        audit=audit,
        scripts=ScriptRunner(connections, guard, audit),
    )
