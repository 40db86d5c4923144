"""
Built-in skill modules

skills.weather and skills.marketplace are free and always importable;
skills.http and skills.mcp reach paid tools and only work for tool ids in the
request's authorization map.
"""

from ..module_registry import ModuleRegistry
from . import http, marketplace, mcp, weather

WEATHER_MODULE = weather.MODULE_NAME
MARKETPLACE_MODULE = marketplace.MODULE_NAME
HTTP_MODULE = http.MODULE_NAME
MCP_MODULE = mcp.MODULE_NAME

FREE_MODULES = (WEATHER_MODULE, MARKETPLACE_MODULE)
PAID_MODULES = (HTTP_MODULE, MCP_MODULE)


def build_registry() -> ModuleRegistry:
    """A frozen registry holding every built-in module"""
    registry = ModuleRegistry()
    for skill in (weather, marketplace, http, mcp):
        skill.register(registry)
    return registry.freeze()


_default_registry = build_registry()


def default_registry() -> ModuleRegistry:
    return _default_registry


def allowed_modules_for(authorized_kinds: set[str] | frozenset[str] = frozenset()) -> list[str]:
    """Free modules plus the paid modules needed for the given tool kinds ("http", "mcp")"""
    modules = list(FREE_MODULES)
    if "http" in authorized_kinds:
        modules.append(HTTP_MODULE)
    if "mcp" in authorized_kinds:
        modules.append(MCP_MODULE)
    return modules


__all__ = [
    "WEATHER_MODULE",
    "MARKETPLACE_MODULE",
    "HTTP_MODULE",
    "MCP_MODULE",
    "FREE_MODULES",
    "PAID_MODULES",
    "build_registry",
    "default_registry",
    "allowed_modules_for",
]
