"""
Module registry - the skill modules sandboxed scripts may import

A skill module is a named bundle of capabilities. Scripts import
capabilities with `from <module name> import <capability>`; the sandbox
resolves those names against this registry and binds each capability to the
per-request ExecutionRuntime.
"""

import inspect
import json
import logging
import types
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Union, get_args, get_origin, get_type_hints

from .exceptions import CapabilityViolationError, RegistryFrozenError
from .runtime import ExecutionRuntime

logger = logging.getLogger(__name__)


_PYTHON_TYPE_TO_JSON_SCHEMA: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
    type(None): "null",
}

_JSON_SCHEMA_TO_PYTHON: dict[str, str] = {
    "string": "str",
    "integer": "int",
    "number": "float",
    "boolean": "bool",
    "array": "list",
    "object": "dict",
}


def _python_type_to_json_schema(py_type: Any) -> dict[str, Any]:
    """Convert a Python annotation to a JSON Schema type definition"""
    if py_type in _PYTHON_TYPE_TO_JSON_SCHEMA:
        return {"type": _PYTHON_TYPE_TO_JSON_SCHEMA[py_type]}

    origin = get_origin(py_type)
    args = get_args(py_type)

    if origin is list:
        schema: dict[str, Any] = {"type": "array"}
        if args:
            schema["items"] = _python_type_to_json_schema(args[0])
        return schema

    if origin is dict:
        return {"type": "object"}

    # Optional[X], X | None, X | Y
    if origin is Union or isinstance(py_type, types.UnionType):
        non_none = [t for t in args if t is not type(None)]
        json_types = [_python_type_to_json_schema(t).get("type", "string") for t in non_none]
        if len(json_types) == 1:
            return {"type": json_types[0]}
        return {"type": json_types}

    return {"type": "string"}


@dataclass
class Capability:
    """
    One callable exposed by a skill module.

    `func` takes the ExecutionRuntime as its first positional argument; the
    remaining parameters are what the script passes.
    """
    name: str
    func: Callable
    description: str
    input_schema: dict
    output_description: str = ""

    def bind(self, runtime: ExecutionRuntime) -> Callable:
        """Close over runtime; the sandbox runs the returned coroutine function for script calls"""
        func = self.func
        name = self.name

        async def capability(*args, **kwargs) -> Any:
            logger.debug(f"Capability call: {name}({kwargs or args})")
            result = func(runtime, *args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        capability.__name__ = name
        capability.__qualname__ = name
        capability.__doc__ = self.description
        return capability

    def to_stub_signature(self) -> str:
        """Signature shown to the model when it writes scripts"""
        params = []
        props = self.input_schema.get("properties", {})
        required = self.input_schema.get("required", [])

        for param_name, param_info in props.items():
            json_type = param_info.get("type", "any")
            if isinstance(json_type, list):
                py_type = " | ".join(_JSON_SCHEMA_TO_PYTHON.get(t, "Any") for t in json_type)
            else:
                py_type = _JSON_SCHEMA_TO_PYTHON.get(json_type, "Any")

            if param_name in required:
                params.append(f"{param_name}: {py_type}")
            else:
                params.append(f"{param_name}: {py_type} = {param_info.get('default')!r}")

        return f"async def {self.name}({', '.join(params)}) -> Any"


@dataclass
class SkillModule:
    """A named, versionless bundle of capabilities"""
    name: str
    description: str = ""
    requires_payment: bool = False
    capabilities: dict[str, Capability] = field(default_factory=dict)
    _frozen: bool = field(default=False, repr=False)

    def capability(
        self,
        name: str | None = None,
        description: str | None = None,
        input_schema: dict | None = None,
        output_description: str = "",
    ) -> Callable:
        """
        Decorator: register a capability implementation

        Usage:
            weather = registry.module("skills.weather", "Weather forecasts")

            @weather.capability(output_description="dict with current/hourly/daily")
            async def get_weather(runtime, city: str | None = None) -> dict:
                ...
        """
        def decorator(func: Callable) -> Callable:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Module '{self.name}' is frozen; register capabilities at startup."
                )
            capability_name = name or func.__name__
            doc = description or inspect.getdoc(func) or f"Capability: {capability_name}"
            schema = input_schema or infer_input_schema(func)

            self.capabilities[capability_name] = Capability(
                name=capability_name,
                func=func,
                description=doc.strip(),
                input_schema=schema,
                output_description=output_description,
            )
            return func

        return decorator

    def get(self, name: str) -> Capability | None:
        return self.capabilities.get(name)

    def bind(self, runtime: ExecutionRuntime) -> dict[str, Callable]:
        """Bind every capability of the module to runtime"""
        return {name: cap.bind(runtime) for name, cap in self.capabilities.items()}

    def freeze(self) -> None:
        self._frozen = True
        self.capabilities = MappingProxyType(dict(self.capabilities))  # type: ignore[assignment]


def infer_input_schema(func: Callable) -> dict:
    """Infer a JSON Schema from a capability signature, skipping the runtime argument"""
    sig = inspect.signature(func)
    try:
        hints = get_type_hints(func)
    except (NameError, TypeError):
        hints = {}

    properties: dict[str, Any] = {}
    required: list[str] = []

    params = list(sig.parameters.values())[1:]
    for param in params:
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue

        if param.name in hints:
            prop = _python_type_to_json_schema(hints[param.name])
        else:
            prop = {"type": "string"}

        if param.default is inspect.Parameter.empty:
            required.append(param.name)
        else:
            prop["default"] = param.default

        properties[param.name] = prop

    return {
        "type": "object",
        "properties": properties,
        "required": required,
    }


class ModuleRegistry:
    """
    Skill module registry

    Process-wide static state: modules are registered at startup, after which
    freeze() turns the registry read-only.
    """

    def __init__(self):
        self._modules: dict[str, SkillModule] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def module(self, name: str, description: str = "", requires_payment: bool = False) -> SkillModule:
        """Create and register an empty module, returning it for capability registration"""
        skill_module = SkillModule(name=name, description=description, requires_payment=requires_payment)
        self.register_module(skill_module)
        return skill_module

    def register_module(self, skill_module: SkillModule) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"Registry is frozen; cannot register '{skill_module.name}'.")
        if skill_module.name in self._modules:
            raise ValueError(f"Module '{skill_module.name}' is already registered")
        self._modules[skill_module.name] = skill_module

    def freeze(self) -> "ModuleRegistry":
        for skill_module in self._modules.values():
            skill_module.freeze()
        self._modules = MappingProxyType(dict(self._modules))  # type: ignore[assignment]
        self._frozen = True
        return self

    def get(self, name: str) -> SkillModule | None:
        return self._modules.get(name)

    def names(self) -> list[str]:
        return list(self._modules.keys())

    def get_all(self) -> list[SkillModule]:
        return list(self._modules.values())

    def __contains__(self, name: object) -> bool:
        return name in self._modules

    def resolve(self, names: Iterable[str]) -> dict[str, SkillModule]:
        """Map an allow-list onto registered modules, preserving order"""
        resolved: dict[str, SkillModule] = {}
        for name in names:
            skill_module = self._modules.get(name)
            if skill_module is None:
                raise CapabilityViolationError(f'Module "{name}" is not registered as a skill.')
            resolved[name] = skill_module

        if not resolved:
            raise CapabilityViolationError("No allowed modules were provided for execution.")
        return resolved

    def generate_modules_documentation(self, names: Iterable[str] | None = None) -> str:
        """Render import lines and capability stubs for prompts"""
        selected = self.get_all() if names is None else list(self.resolve(names).values())
        docs = []
        for skill_module in selected:
            imports = ", ".join(skill_module.capabilities)
            lines = [
                f"### {skill_module.name}" + (" (paid)" if skill_module.requires_payment else ""),
            ]
            if skill_module.description:
                lines.append(skill_module.description)
            lines.append(f"```python\nfrom {skill_module.name} import {imports}\n```")
            for cap in skill_module.capabilities.values():
                lines.append(f"- `{cap.to_stub_signature()}`: {cap.description}")
                if cap.output_description:
                    lines.append(f"  **Output:** {cap.output_description}")
            docs.append("\n".join(lines))
        return "\n\n".join(docs)

    def to_json(self, names: Iterable[str] | None = None) -> str:
        selected = self.get_all() if names is None else list(self.resolve(names).values())
        return json.dumps([
            {
                "module": m.name,
                "requires_payment": m.requires_payment,
                "capabilities": [
                    {
                        "name": c.name,
                        "description": c.description,
                        "input_schema": c.input_schema,
                        "output_description": c.output_description,
                    }
                    for c in m.capabilities.values()
                ],
            }
            for m in selected
        ])

    def snapshot(self) -> Mapping[str, SkillModule]:
        return MappingProxyType(dict(self._modules))
