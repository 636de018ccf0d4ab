"""
Foundry MCP - Model Context Protocol server for ServiceNow.

This package provides an MCP server that lets AI assistants connect to
ServiceNow instances, query tables and system logs, and run background
scripts behind a safety guardrail with an audit trail.
"""

__version__ = "0.1.0"
