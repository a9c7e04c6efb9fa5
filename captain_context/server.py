from __future__ import annotations

import logging
import os
from typing import Optional

from captain_context.config import AppConfig
from captain_context.pipeline import ContextPipeline, build_pipeline

LOG_LEVEL = os.environ.get("CAPTAIN_CONTEXT_LOG_LEVEL", "INFO").upper()

try:
    from mcp.server.fastmcp import FastMCP
except ImportError as exc:  # pragma: no cover - dependency is optional at import time
    FastMCP = None
    _IMPORT_ERROR = exc
else:
    _IMPORT_ERROR = None


def _require_server() -> "FastMCP":
    if FastMCP is None:
        raise SystemExit(
            "The mcp package is required to run the server. "
            "Install it with `pip install 'captain-context[server]'`."
        ) from _IMPORT_ERROR
    return FastMCP("captain-context-server")


def build_server(pipeline: Optional[ContextPipeline] = None) -> "FastMCP":
    server = _require_server()
    if pipeline is None:
        pipeline = build_pipeline(AppConfig.from_env())

    @server.tool(
            description="Retrieve ranked, deduplicated knowledge-base context for a query, packed to the token budget."
    )
    async def retrieve_context(query: str) -> dict:
        packed = await pipeline.run(query)
        return packed.to_dict()

    @server.tool(
            description="Probe the embedding provider and vector index and report per-dependency health."
    )
    async def pipeline_health() -> dict:
        report = await pipeline.health_check()
        return report.to_dict()

    @server.tool(
            description="List configuration issues of the running pipeline (empty when consistent)."
    )
    def validate_configuration() -> dict:
        issues = pipeline.validate_configuration()
        return {"valid": not issues, "issues": issues, "config": pipeline.config.to_dict()}

    return server


def main() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    server = build_server()
    server.run()


if __name__ == "__main__":
    main()
