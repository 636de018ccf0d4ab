"""
MCP Tools for ServiceNow integration.

- connection: Session tools (servicenow_connect, servicenow_disconnect, servicenow_status)
- query: Read-only tools (servicenow_query, servicenow_syslogs)
- script: Background scripts behind the script guard (servicenow_script, servicenow_audit_log)
- instance: Version, build and feature detection (servicenow_instance)
"""

from .connection import register_connection_tools
from .instance import register_instance_tools
from .query import register_query_tools
from .script import register_script_tools

__all__ = [
    "register_connection_tools",
    "register_instance_tools",
    "register_query_tools",
    "register_script_tools",
]
