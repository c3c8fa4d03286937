from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Optional

from mcp.server.fastmcp import FastMCP

from vector_rules.app import Services, build_services
from vector_rules.config.settings import AppConfig
from vector_rules.errors import RuleServiceError
from vector_rules.models import MatchList, RuleList, RuleTypeList

LOG = logging.getLogger("vector_rules.server")


def _json_payload(model) -> dict:
    return model.model_dump(mode="json")


async def run_tool(call: Callable[[threading.Event], Any], timeout: Optional[float]) -> dict:
    """
    Run a blocking service call in a worker thread.

    On timeout the call's cancellation event is set so it stops at its next
    checkpoint without committing, and a ``cancelled`` error is returned.
    Service errors are returned as ``{"error": {"kind", "message"}}``.
    """
    cancel = threading.Event()
    try:
        result = await asyncio.wait_for(asyncio.to_thread(call, cancel), timeout=timeout)
    except asyncio.TimeoutError:
        cancel.set()
        LOG.warning("Tool call timed out after %ss", timeout)
        return {"error": {"kind": "cancelled", "message": f"timed out after {timeout}s"}}
    except RuleServiceError as exc:
        LOG.info("Tool call failed: %s (%s)", exc, exc.kind)
        return {"error": exc.to_dict()}
    if result is None:
        return {}
    if isinstance(result, dict):
        return result
    return _json_payload(result)


def build_server(
    services: Services, timeout: Optional[float] = 30.0, default_results: int = 10
) -> FastMCP:
    server = FastMCP("vector-rules")
    rules = services.rules
    rule_types = services.rule_types

    @server.tool(
        description="Return the stored rules most similar to the given natural-language queries."
    )
    async def retrieve_similar_rules(
        queries: list[str], n: Optional[int] = None, ruleType: Optional[str] = None
    ) -> dict:
        limit = default_results if n is None else n
        return await run_tool(
            lambda cancel: MatchList(
                matches=rules.retrieve_similar(queries, rule_type=ruleType, n=limit, cancel=cancel)
            ),
            timeout,
        )

    @server.tool(description="Create a rule of an existing rule type; its embedding is computed on write.")
    async def create_rule(ruleType: str, content: Any) -> dict:
        return await run_tool(lambda cancel: rules.create_rule(ruleType, content, cancel=cancel), timeout)

    @server.tool(description="Get a rule by id.")
    async def get_rule(ruleId: int) -> dict:
        return await run_tool(lambda cancel: rules.get_rule(ruleId), timeout)

    @server.tool(description="Replace a rule's type and content and recompute its embedding.")
    async def update_rule(ruleId: int, ruleType: str, content: Any) -> dict:
        return await run_tool(
            lambda cancel: rules.update_rule(ruleId, ruleType, content, cancel=cancel), timeout
        )

    @server.tool(description="Delete a rule and its vector.")
    async def delete_rule(ruleId: int) -> dict:
        def call(cancel: threading.Event) -> dict:
            rules.delete_rule(ruleId, cancel=cancel)
            return {"deleted": ruleId}

        return await run_tool(call, timeout)

    @server.tool(description="List rules, newest first, optionally filtered by rule type.")
    async def list_rules(ruleType: Optional[str] = None, limit: int = 10, offset: int = 0) -> dict:
        return await run_tool(
            lambda cancel: RuleList(
                rules=rules.list_rules(ruleType, limit=limit, offset=offset), limit=limit, offset=offset
            ),
            timeout,
        )

    @server.tool(description="Create a rule type (category).")
    async def create_rule_type(name: str) -> dict:
        return await run_tool(lambda cancel: rule_types.create_rule_type(name), timeout)

    @server.tool(description="Get a rule type by id.")
    async def get_rule_type(ruleTypeId: int) -> dict:
        return await run_tool(lambda cancel: rule_types.get_rule_type(ruleTypeId), timeout)

    @server.tool(description="Rename a rule type.")
    async def update_rule_type(ruleTypeId: int, name: str) -> dict:
        return await run_tool(lambda cancel: rule_types.update_rule_type(ruleTypeId, name), timeout)

    @server.tool(description="Delete a rule type that no rule references.")
    async def delete_rule_type(ruleTypeId: int) -> dict:
        def call(cancel: threading.Event) -> dict:
            rule_types.delete_rule_type(ruleTypeId)
            return {"deleted": ruleTypeId}

        return await run_tool(call, timeout)

    @server.tool(description="List rule types ordered by name.")
    async def list_rule_types(limit: int = 10, offset: int = 0) -> dict:
        return await run_tool(
            lambda cancel: RuleTypeList(
                ruleTypes=rule_types.list_rule_types(limit=limit, offset=offset), limit=limit, offset=offset
            ),
            timeout,
        )

    @server.tool(description="Report service health and the number of indexed rules.")
    async def health() -> dict:
        return await run_tool(lambda cancel: {"status": "ok", "indexed": services.index.count()}, timeout)

    return server


def main() -> None:
    config = AppConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    services = build_services(config)
    server = build_server(
        services,
        timeout=config.request_timeout_s,
        default_results=config.retrieval.default_results,
    )
    try:
        server.run()
    finally:
        services.close()


if __name__ == "__main__":
    main()
