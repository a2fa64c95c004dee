import asyncio
import logging

from plan_runtime.data.store import DependencyStore
from plan_runtime.plans.executor import PlanExecutor
from plan_runtime.plans.models import Plan, Run
from plan_runtime.tools.mcp import register_mcp_server
from plan_runtime.tools.registry import ToolRegistry

logging.basicConfig(level=logging.INFO)

# Start any streamable-HTTP MCP server first, e.g. on http://localhost:8000
MCP_URL = "http://localhost:8000"


async def main() -> None:
    registry = ToolRegistry()
    proxies = await register_mcp_server(registry, MCP_URL)
    print("MCP tools:", [p.name for p in proxies])
    if not proxies:
        return

    first = proxies[0]
    plan = Plan.from_dict([{"id": "s1", "tool": first.name, "args": {}}])
    run = await PlanExecutor(DependencyStore(), registry).execute(Run(plan=plan))
    print(run.status.value, run.results["s1"].raw_output or run.results["s1"].error)


asyncio.run(main())
