from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Dict, List, Mapping, Optional, TypeVar
from urllib.parse import urlparse, urlunparse

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from ..core.Exceptions import ToolDefinitionError, ToolInvocationError
from .base import Tool

logger = logging.getLogger(__name__)

# ───────────────────────────────────────────────────────────────────────────────
# Public API
# ───────────────────────────────────────────────────────────────────────────────
__all__ = [
    "MCPProxyTool",
    "list_mcp_tools",
    "alist_mcp_tools",
    "call_mcp_tool",
    "register_mcp_server",
]


def _normalize_mcp_url(url: str) -> str:
    """Point a bare server URL at the ``/mcp`` mount path.

    - "http://localhost:8000"     -> "http://localhost:8000/mcp"
    - "http://localhost:8000/mcp" -> unchanged
    """
    parts = urlparse(str(url))
    if not parts.path or parts.path == "/":
        parts = parts._replace(path="/mcp")
    return urlunparse(parts)


# ───────────────────────────────────────────────────────────────────────────────
# MCP helper functions (generic, class-independent)
# ───────────────────────────────────────────────────────────────────────────────
T = TypeVar("T")


def _run_coro_sync(coro: Awaitable[T]) -> T:
    """Run a coroutine from sync code, even when a loop is already running.

    Without a running loop this is ``asyncio.run``; inside one, the coroutine
    runs on a fresh loop in a worker thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    result_box: List[T] = []
    error_box: List[BaseException] = []

    def runner() -> None:
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            result_box.append(loop.run_until_complete(coro))
        except BaseException as exc:  # noqa: BLE001
            error_box.append(exc)
        finally:
            loop.close()

    thread = threading.Thread(target=runner, daemon=True)
    thread.start()
    thread.join()

    if error_box:
        raise error_box[0]
    if not result_box:
        raise RuntimeError("Coroutine completed without result")
    return result_box[0]


def _field(obj: Any, key: str) -> Any:
    value = getattr(obj, key, None)
    if value is None and isinstance(obj, Mapping):
        value = obj.get(key)
    return value


async def alist_mcp_tools(
    server_url: str,
    headers: Optional[Mapping[str, str]] = None,
) -> Dict[str, Dict[str, Any]]:
    """List tools on an MCP server over streamable HTTP.

    Returns a mapping of tool name to ``{"name", "description",
    "input_schema"}``.
    """
    server_url = _normalize_mcp_url(server_url)
    headers_dict: Optional[Dict[str, str]] = dict(headers) if headers else None

    async with streamablehttp_client(server_url, headers=headers_dict) as (read_stream, write_stream, _):
        async with ClientSession(read_stream, write_stream) as session:
            await session.initialize()
            tools_resp = await session.list_tools()

    # Newer SDKs return a ListToolsResult with `.tools`
    tools = getattr(tools_resp, "tools", tools_resp)
    result: Dict[str, Dict[str, Any]] = {}
    for tool in tools or []:
        name = _field(tool, "name")
        if not name:
            continue
        description = _field(tool, "description")
        result[str(name)] = {
            "name": str(name),
            "description": str(description) if description is not None else "",
            "input_schema": _field(tool, "inputSchema"),
        }
    return result


def list_mcp_tools(
    server_url: str,
    headers: Optional[Mapping[str, str]] = None,
) -> Dict[str, Dict[str, Any]]:
    """Synchronous form of :func:`alist_mcp_tools`."""
    return _run_coro_sync(alist_mcp_tools(server_url, headers))


def _normalize_call_result(raw: Any) -> Any:
    """Prefer structured content, then joined text blocks, then the raw object."""
    if _field(raw, "isError"):
        texts = [_field(c, "text") for c in (_field(raw, "content") or [])]
        message = " ".join(t for t in texts if t) or "MCP tool reported an error"
        raise ToolInvocationError(message)
    structured = _field(raw, "structuredContent")
    if structured is not None:
        return structured
    content = _field(raw, "content")
    if content:
        texts = [_field(c, "text") for c in content]
        texts = [t for t in texts if t is not None]
        if texts:
            return texts[0] if len(texts) == 1 else texts
    return raw


async def call_mcp_tool(
    server_url: str,
    tool_name: str,
    inputs: Mapping[str, Any],
    headers: Optional[Mapping[str, str]] = None,
) -> Any:
    """Call one MCP tool once and return its normalized result."""
    headers_dict: Optional[Dict[str, str]] = dict(headers) if headers else None
    try:
        async with streamablehttp_client(server_url, headers=headers_dict) as (read_stream, write_stream, _):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                raw = await session.call_tool(tool_name, arguments=dict(inputs))
    except Exception as exc:  # noqa: BLE001
        # MCP/network errors surface as ToolInvocationError like any tool failure.
        raise ToolInvocationError(
            f"Error calling MCP tool '{tool_name}' at '{server_url}': {exc}"
        ) from exc
    return _normalize_call_result(raw)


# ───────────────────────────────────────────────────────────────────────────────
# MCP-Proxy Tool
# ───────────────────────────────────────────────────────────────────────────────
class MCPProxyTool(Tool):
    """Proxy a single MCP server tool as a normal dict-first Tool.

    The server's ``inputSchema`` becomes the tool's input schema, so the
    action state machine and argument validation work unchanged.
    """

    def __init__(
        self,
        server_url: str,
        tool_name: str,
        *,
        metadata: Optional[Mapping[str, Any]] = None,
        description: str = "",
        headers: Optional[Dict[str, str]] = None,
        category: Optional[str] = None,
    ) -> None:
        self._server_url = _normalize_mcp_url(str(server_url))
        self._headers: Dict[str, str] = dict(headers or {})

        if metadata is None:
            try:
                all_tools = list_mcp_tools(self._server_url, headers=self._headers)
            except Exception as exc:
                raise ToolDefinitionError(
                    f"Failed to connect to MCP server on '{server_url}': {exc}"
                ) from exc
            if tool_name not in all_tools:
                raise ToolDefinitionError(
                    f"MCPProxyTool: tool {tool_name!r} not found on MCP server {self._server_url!r}"
                )
            metadata = all_tools[tool_name]
        self._mcpdata: Dict[str, Any] = dict(metadata)

        input_schema = self._mcpdata.get("input_schema")
        if not isinstance(input_schema, Mapping):
            input_schema = {"type": "object", "properties": {}}

        super().__init__(
            function=self._call,
            name=tool_name,
            description=(self._mcpdata.get("description") or description).strip() or "undescribed MCP tool",
            input_schema=input_schema,
            category=category,
            namespace="mcp",
        )

    @property
    def server_url(self) -> str:
        return self._server_url

    async def _call(self, **inputs: Any) -> Any:
        return await call_mcp_tool(self._server_url, self.name, inputs, headers=self._headers)

    async def execute(self, kwargs: Dict[str, Any]) -> Any:
        return await self._call(**kwargs)


async def register_mcp_server(
    registry: Any,
    server_url: str,
    headers: Optional[Mapping[str, str]] = None,
    *,
    category: Optional[str] = "MCP",
) -> List[MCPProxyTool]:
    """Discover every tool on ``server_url`` and register a proxy for each."""
    discovered = await alist_mcp_tools(server_url, headers)
    proxies: List[MCPProxyTool] = []
    for name, meta in discovered.items():
        proxy = MCPProxyTool(server_url, name, metadata=meta, headers=dict(headers or {}), category=category)
        registry.register(proxy, replace=True)
        proxies.append(proxy)
    logger.info("register_mcp_server: %d tool(s) from %s", len(proxies), _normalize_mcp_url(server_url))
    return proxies
