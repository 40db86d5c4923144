"""Free marketplace search skill; the search backend is supplied by the caller."""

import logging

from ..exceptions import ToolExecutionError
from ..module_registry import ModuleRegistry
from ..runtime import ExecutionRuntime

logger = logging.getLogger(__name__)

MODULE_NAME = "skills.marketplace"

MAX_RESULTS = 50


async def search_marketplace(runtime: ExecutionRuntime, query: str, limit: int = 10) -> list:
    """Search the tool marketplace for listings matching a free-text query."""
    if not query or not query.strip():
        raise ValueError("Search query cannot be empty.")
    if runtime.marketplace_search is None:
        raise ToolExecutionError("search_marketplace", "no marketplace search service is configured")

    limit = max(1, min(int(limit), MAX_RESULTS))
    logger.debug(f"Marketplace search: {query!r} (limit={limit})")
    results = await runtime.marketplace_search(query.strip(), limit)
    return list(results)[:limit]


def register(registry: ModuleRegistry) -> None:
    marketplace = registry.module(MODULE_NAME, "Search the tool marketplace (free).")
    marketplace.capability(
        output_description="list of {id, name, description, price, kind, category, is_verified}",
    )(search_marketplace)
