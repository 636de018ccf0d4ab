"""
ServiceNow connection management tools for Foundry MCP.

Connect to instances with basic, OAuth or token auth (explicitly or via a
named credential profile), disconnect, and inspect session state.
"""

from mcp.server.fastmcp import FastMCP

from ..core.audit import audit_tool_call
from ..core.auth import AuthParams, CredentialStore
from ..core.context import ServerContext
from ..core.errors import ServiceNowError
from .base import format_error


def _roles_preview(roles: list[str], shown: int = 5) -> str:
    preview = ", ".join(roles[:shown]) or "(none)"
    if len(roles) > shown:
        preview += f" (+{len(roles) - shown} more)"
    return preview


def _stored_profiles(store: CredentialStore | None) -> str | None:
    """One-line summary of the credential store's profiles, if it can be read."""
    if store is None or not store.path.exists():
        return None
    try:
        names = store.list_profiles()
        default = store.default_profile
    except ServiceNowError:
        return None
    if not names:
        return None
    return ", ".join(f"{n} (default)" if n == default else n for n in names)


def register_connection_tools(mcp: FastMCP, context: ServerContext) -> None:
    """Register ServiceNow connection tools with the MCP server.

    Args:
        mcp: The FastMCP server instance.
        context: Shared server state.
    """
    connections = context.connections

    @mcp.tool()
    @audit_tool_call("servicenow_connect")
    async def servicenow_connect(
        instance: str = "",
        auth_type: str | None = None,
        profile: str | None = None,
        username: str | None = None,
        password: str | None = None,
        token: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> str:
        """Connect to a ServiceNow instance.

        The new session becomes the active one. Reconnecting to the same
        instance replaces the existing session.

        Args:
            instance: Instance URL, e.g. "dev12345.service-now.com".
            auth_type: "basic" (default), "oauth" or "token".
            profile: Credential profile name from the credentials file.
                An empty string (or auth_type="profile") selects the
                store's default profile.
            username: Username for basic auth.
            password: Password for basic auth.
            token: Bearer token for token auth.
            client_id: OAuth client ID.
            client_secret: OAuth client secret.

        Returns:
            Session summary or the reason the connection failed.
        """
        params = AuthParams(
            instance=instance,
            auth_type=auth_type,
            profile=profile,
            username=username,
            password=password,
            token=token,
            client_id=client_id,
            client_secret=client_secret,
        )
        result = await connections.connect(params)

        if not result.success or result.session is None:
            if result.error is not None:
                return format_error(result.error, prefix="Connection failed")
            return f"Connection failed: {result.message}"

        session = result.session
        return (
            "Connected to ServiceNow instance\n\n"
            f"Instance: {session['instance_url']}\n"
            f"Version: {session['instance_version']}\n"
            f"User: {session['user']}\n"
            f"Roles: {_roles_preview(session['roles'])}\n\n"
            "You can now query tables, read system logs and run scripts."
        )

    @mcp.tool()
    @audit_tool_call("servicenow_disconnect")
    async def servicenow_disconnect(instance: str | None = None) -> str:
        """Disconnect from a ServiceNow instance.

        Args:
            instance: Instance to disconnect. Defaults to the active session.

        Returns:
            Confirmation message.
        """
        if not connections.is_connected() and not connections.list_sessions():
            return "Not connected to any ServiceNow instance."

        target = instance or connections.get_status()["active_instance"]
        if await connections.disconnect(instance):
            message = f"Disconnected from {target}"
            active = connections.get_status()["active_instance"]
            if active:
                message += f"\nActive instance is now {active}"
            return message
        return "No matching session found to disconnect."

    @mcp.tool()
    @audit_tool_call("servicenow_status")
    async def servicenow_status() -> str:
        """Show the current ServiceNow connection status.

        Returns:
            Active instance, user, version and any other open sessions.
        """
        status = connections.get_status()
        if not status["connected"]:
            message = (
                "Not connected to any ServiceNow instance.\n\n"
                "To connect, use servicenow_connect with:\n"
                '- instance: Your instance URL (e.g., "dev12345.service-now.com")\n'
                '- auth_type: "basic", "token" or "oauth"\n'
                "- Credentials for that auth type, or profile to use a stored profile"
            )
            profiles = _stored_profiles(connections.resolver.store)
            if profiles:
                message += f"\n\nStored profiles: {profiles}"
            return message

        session = connections.get_active_session()
        lines = [
            "ServiceNow Connection Status\n",
            f"Active Instance: {status['active_instance']}",
            f"Version: {status['version']}",
            f"User: {status['user']}",
        ]
        if session is not None:
            lines.append(f"Auth Type: {session.auth_type.value}")
            lines.append(f"Connected Since: {session.created_at.isoformat()}")
            lines.append(f"Last Activity: {session.last_used.isoformat()}")

        others = [
            s for s in connections.list_sessions()
            if s.instance_url != status["active_instance"]
        ]
        if others:
            lines.append(f"\nOther Sessions: {len(others)}")
            for other in others:
                lines.append(f"  - {other.instance_url} ({other.user_name})")

        return "\n".join(lines)
