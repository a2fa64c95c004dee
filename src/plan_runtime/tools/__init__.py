from .base import Tool, schema_from_callable
from .registry import ToolRegistry, fetch_scope_rule, hinted_parameters_rule
from .mcp import MCPProxyTool, list_mcp_tools, register_mcp_server

__all__ = [
    "Tool",
    "schema_from_callable",
    "ToolRegistry",
    "fetch_scope_rule",
    "hinted_parameters_rule",
    "MCPProxyTool",
    "list_mcp_tools",
    "register_mcp_server",
]
