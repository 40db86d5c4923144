"""
Skill Sandbox - run one AI-authored script against an allow-list of skill modules

Processing steps for every execution:
1. Extract the script body (a fenced ```python block, or the whole text)
2. Parse it and validate imports / attribute access before anything runs:
   - imports outside the allow-list are capability violations
   - only `from <module> import a, b` is accepted; aliases, star and
     namespace imports are unsupported syntax
   - dunder, frame and event-loop attribute access is a capability violation
   - `str.format` and private attributes are unsupported syntax
3. Remove the accepted imports and collect the imported capability names
4. Start a runner process (see script_runner), hand it the rewritten tree
   and kill it once the wall-clock deadline passes
5. Serve capability calls from the runner on the caller's event loop and
   wrap the reported return value (or failure) into an ExecutionResult

Capabilities run in this process, on the loop that created their services
(HTTP transports, MCP clients, search backends). The runner only sees their
return values.

Script output never reaches the host's stdout: `print` and `console.*` are
streamed back as log lines and returned with the result.
"""

import ast
import asyncio
import json
import logging
import multiprocessing
import os
import pickle
import re
import threading
import time as time_module
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from . import script_runner
from .exceptions import (
    CapabilityViolationError,
    CodeExecutionError,
    ExecutionTimeoutError,
    MissingEntryPointError,
    SandboxError,
    UnsupportedSyntaxError,
)
from .module_registry import Capability, ModuleRegistry, SkillModule
from .runtime import ExecutionRuntime
from .script_runner import SCRIPT_FILENAME

logger = logging.getLogger(__name__)

CODE_BLOCK_REGEX = re.compile(r"```[ \t]*([\w+.-]*)[ \t]*\r?\n(.*?)```", re.DOTALL)

# Attribute names that lead from ordinary objects to frames, code, globals or an event loop
FORBIDDEN_ATTRIBUTES = {
    "cr_frame", "cr_code", "cr_await",
    "gi_frame", "gi_code", "gi_yieldfrom",
    "ag_frame", "ag_code", "ag_await",
    "f_globals", "f_locals", "f_builtins", "f_back", "f_code",
    "tb_frame", "tb_next",
    "co_code", "func_globals",
    "get_loop", "_loop", "get_event_loop", "get_running_loop",
    "subprocess_shell", "subprocess_exec", "run_in_executor",
    "create_connection", "create_server", "create_datagram_endpoint",
    "getaddrinfo", "sock_connect",
}

# str.format resolves attribute paths that are only known at runtime
FORMAT_ATTRIBUTES = {"format", "format_map"}

ALLOWED_DUNDER_NAMES = {"__name__"}

# Importing these is redundant: the script globals already provide them
PREBOUND_HELPERS = {"asyncio", "json", "math", "datetime"}

FORMAT_DUNDER_REGEX = re.compile(r"\{[^{}]*\.__\w*")


def _start_method() -> str:
    return "forkserver" if "forkserver" in multiprocessing.get_all_start_methods() else "spawn"


_MP_CONTEXT = multiprocessing.get_context(_start_method())
if _MP_CONTEXT.get_start_method() == "forkserver":
    # Runners fork from a server that has already imported this package
    _MP_CONTEXT.set_forkserver_preload([script_runner.__name__])


class FailureKind(str, Enum):
    """Why an execution failed"""
    CAPABILITY_VIOLATION = "capability_violation"
    UNSUPPORTED_SYNTAX = "unsupported_syntax"
    SYNTAX_ERROR = "syntax_error"
    MISSING_ENTRY_POINT = "missing_entry_point"
    RUNTIME_ERROR = "runtime_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"

    @property
    def retryable(self) -> bool:
        return self not in (
            FailureKind.CAPABILITY_VIOLATION,
            FailureKind.CANCELLED,
            FailureKind.INTERNAL_ERROR,
        )


@dataclass
class ExecutionResult:
    """Outcome of one sandbox execution: either success with data, or failure with error"""
    success: bool
    data: Any = None
    error: str | None = None
    logs: list[str] = field(default_factory=list)
    duration_ms: int = 0
    failure_kind: FailureKind | None = None

    @classmethod
    def ok(cls, data: Any, logs: list[str], duration_ms: int) -> "ExecutionResult":
        return cls(success=True, data=data, logs=logs, duration_ms=duration_ms)

    @classmethod
    def fail(
        cls,
        error: str,
        logs: list[str],
        duration_ms: int,
        kind: FailureKind = FailureKind.RUNTIME_ERROR,
    ) -> "ExecutionResult":
        return cls(success=False, error=error, logs=logs, duration_ms=duration_ms, failure_kind=kind)

    @property
    def is_timeout(self) -> bool:
        return self.failure_kind is FailureKind.TIMEOUT


@dataclass
class SandboxConfig:
    """Sandbox configuration"""
    timeout_ms: int = 5000
    max_log_lines: int = 500
    max_log_chars: int = 20000
    # How long a runner process may take to start; not part of timeout_ms
    startup_timeout_ms: int = 10000

    @classmethod
    def from_env(cls) -> "SandboxConfig":
        return cls(
            timeout_ms=int(os.environ.get("SKILL_SANDBOX_TIMEOUT_MS", cls.timeout_ms)),
            max_log_lines=int(os.environ.get("SKILL_SANDBOX_MAX_LOG_LINES", cls.max_log_lines)),
            max_log_chars=int(os.environ.get("SKILL_SANDBOX_MAX_LOG_CHARS", cls.max_log_chars)),
            startup_timeout_ms=int(os.environ.get("SKILL_SANDBOX_STARTUP_TIMEOUT_MS", cls.startup_timeout_ms)),
        )


def extract_code(text: str) -> str:
    """Return the first fenced code block, or the whole text when there is none"""
    match = CODE_BLOCK_REGEX.search(text)
    if match:
        return match.group(2).strip()
    return text.strip()


def _is_dunder(name: str) -> bool:
    return name.startswith("__") and name.endswith("__") and len(name) > 4


class _ScriptValidator(ast.NodeVisitor):
    """First pass: capability boundary. Any finding here is a policy breach."""

    def __init__(self, allowed: Iterable[str]):
        self.allowed = set(allowed)
        # Retryable findings; reported only if nothing worse is found
        self.redundant_imports: list[str] = []
        self.unsupported: list[str] = []

    def _check_module(self, module: str, level: int = 0) -> None:
        if level == 0 and module in self.allowed:
            return
        if level == 0 and module in PREBOUND_HELPERS:
            self.redundant_imports.append(module)
            return
        raise CapabilityViolationError(
            f'Import "{"." * level}{module}" is not permitted in this execution context.'
        )

    def validate(self, tree: ast.AST) -> None:
        self.visit(tree)
        if self.redundant_imports:
            names = ", ".join(sorted(set(self.redundant_imports)))
            raise UnsupportedSyntaxError(
                f"Do not import {names}: asyncio, json, math, datetime, date and timedelta "
                "are already available in the sandbox. Remove the import."
            )
        if self.unsupported:
            raise UnsupportedSyntaxError(self.unsupported[0])

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self._check_module(alias.name)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        self._check_module(node.module or "", node.level)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if _is_dunder(node.attr) or node.attr in FORBIDDEN_ATTRIBUTES:
            raise CapabilityViolationError(
                f"Access to '.{node.attr}' is forbidden (line {node.lineno})."
            )
        if node.attr in FORMAT_ATTRIBUTES:
            self.unsupported.append(
                f"'.{node.attr}' is not available in the sandbox (line {node.lineno}). "
                "Use f-strings instead."
            )
        elif node.attr.startswith("_"):
            self.unsupported.append(
                f"Private attribute '.{node.attr}' is not available in the sandbox "
                f"(line {node.lineno}). Use public names."
            )
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if _is_dunder(node.id) and node.id not in ALLOWED_DUNDER_NAMES:
            raise CapabilityViolationError(
                f"Access to '{node.id}' is forbidden (line {node.lineno})."
            )

    def visit_Constant(self, node: ast.Constant) -> None:
        if isinstance(node.value, str) and FORMAT_DUNDER_REGEX.search(node.value):
            raise CapabilityViolationError(
                f"Format strings may not reach dunder attributes (line {node.lineno})."
            )


class _ImportRewriter(ast.NodeTransformer):
    """
    Second pass: turn accepted imports into pre-bound names.

    Collects {local name: Capability} and replaces each import statement with
    `pass`, so no module resolution ever happens inside the script.
    """

    def __init__(self, modules: dict[str, SkillModule]):
        self.modules = modules
        self.bindings: dict[str, Capability] = {}

    def visit_Import(self, node: ast.Import) -> ast.AST:
        name = node.names[0].name
        raise UnsupportedSyntaxError(
            f'Unsupported import syntax "import {name}". '
            f'Use simple named imports: from {name} import <capability>.'
        )

    def visit_ImportFrom(self, node: ast.ImportFrom) -> ast.AST:
        skill_module = self.modules[node.module]
        if not node.names:
            raise UnsupportedSyntaxError("Empty import specifier list is not allowed.")

        for alias in node.names:
            if alias.name == "*":
                raise UnsupportedSyntaxError(
                    f'Unsupported import syntax "from {node.module} import *". '
                    "Import each capability by name."
                )
            if alias.asname and alias.asname != alias.name:
                raise UnsupportedSyntaxError(
                    f'Unsupported import syntax "{alias.name} as {alias.asname}". '
                    "Use simple named imports without aliases."
                )

            capability = skill_module.get(alias.name)
            if capability is None:
                raise ImportError(
                    f"Module '{node.module}' has no capability '{alias.name}'. "
                    f"Available: {', '.join(skill_module.capabilities) or '(none)'}"
                )

            bound = self.bindings.get(alias.name)
            if bound is not None and bound is not capability:
                raise UnsupportedSyntaxError(
                    f'Name "{alias.name}" is imported from more than one module.'
                )
            self.bindings[alias.name] = capability

        return ast.copy_location(ast.Pass(), node)


def _portable_error(error: Exception) -> Any:
    """The exception itself when it survives pickling, else (type name, message)"""
    try:
        pickle.loads(pickle.dumps(error))
    except Exception:
        return (type(error).__name__, str(error))
    return error


def _encode_reply(call_id: Any, ok: bool, value: Any) -> bytes:
    try:
        return pickle.dumps(("result", call_id, ok, value))
    except Exception as e:
        error = ("TypeError", f"Capability result cannot be passed to the script: {e}")
        return pickle.dumps(("result", call_id, False, error))


def _pump_messages(connection, loop: asyncio.AbstractEventLoop, messages: asyncio.Queue) -> None:
    """Forward runner messages to the host loop; None marks the end of the stream"""
    try:
        while True:
            try:
                raw = connection.recv_bytes()
            except (EOFError, OSError):
                break
            try:
                message = json.loads(raw)
            except ValueError:
                message = None
            if not isinstance(message, dict):
                message = {"type": "invalid"}
            loop.call_soon_threadsafe(messages.put_nowait, message)
        loop.call_soon_threadsafe(messages.put_nowait, None)
    except RuntimeError:
        logger.debug("Host loop closed before the runner stream ended")
    finally:
        connection.close()


class SkillSandbox:
    """
    Skill Sandbox

    Usage:
        sandbox = SkillSandbox()
        runtime = ExecutionRuntime(authorized={})
        result = await sandbox.execute(
            "from skills.weather import get_weather\\n"
            "async def main():\\n"
            "    return await get_weather(city='Paris')",
            ["skills.weather"],
            runtime,
        )
    """

    def __init__(
        self,
        registry: ModuleRegistry | None = None,
        config: SandboxConfig | None = None
    ):
        if registry is None:
            from .skills import default_registry
            registry = default_registry()
        self.registry = registry
        self.config = config or SandboxConfig()

    def compile_script(self, source: str, modules: dict[str, SkillModule]) -> tuple[ast.Module, dict[str, Capability]]:
        """Validate and rewrite source; returns the rewritten tree and its import bindings"""
        tree = ast.parse(source, filename=SCRIPT_FILENAME, mode="exec")
        _ScriptValidator(modules.keys()).validate(tree)

        rewriter = _ImportRewriter(modules)
        tree = ast.fix_missing_locations(rewriter.visit(tree))
        # Surfaces compile-time errors such as 'return' outside a function
        compile(tree, SCRIPT_FILENAME, "exec")
        return tree, rewriter.bindings

    async def execute(
        self,
        script_text: str,
        allowed_modules: Iterable[str],
        runtime: ExecutionRuntime,
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """
        Execute one script

        Args:
            script_text: AI-authored source, optionally fenced
            allowed_modules: module names this request may import
            runtime: per-attempt runtime context handed to capabilities
            timeout_ms: wall-clock budget, defaults to config.timeout_ms

        Returns:
            ExecutionResult; this method does not raise for script problems
        """
        start_time = time_module.monotonic()
        timeout_ms = timeout_ms or self.config.timeout_ms
        logs: list[str] = []

        def elapsed_ms() -> int:
            return int((time_module.monotonic() - start_time) * 1000)

        def failure(error: str, kind: FailureKind) -> ExecutionResult:
            return ExecutionResult.fail(error, list(logs), elapsed_ms(), kind)

        try:
            modules = self.registry.resolve(allowed_modules)
            source = extract_code(script_text)
            tree, bindings = self.compile_script(source, modules)
        except CapabilityViolationError as e:
            logger.info(f"Capability violation rejected before execution: {e}")
            return failure(str(e), FailureKind.CAPABILITY_VIOLATION)
        except UnsupportedSyntaxError as e:
            return failure(str(e), FailureKind.UNSUPPORTED_SYNTAX)
        except SyntaxError as e:
            return failure(f"SyntaxError at line {e.lineno}: {e.msg}", FailureKind.SYNTAX_ERROR)
        except ImportError as e:
            return failure(f"ImportError: {e}", FailureKind.RUNTIME_ERROR)
        except Exception as e:
            logger.exception("Sandbox could not be prepared")
            return failure(f"Sandbox could not be prepared: {type(e).__name__}", FailureKind.INTERNAL_ERROR)

        try:
            data = await self._run_in_process(tree, bindings, runtime, timeout_ms, logs)
        except ExecutionTimeoutError as e:
            logger.info(f"Script timed out after {timeout_ms} ms")
            return failure(str(e), FailureKind.TIMEOUT)
        except MissingEntryPointError as e:
            return failure(str(e), FailureKind.MISSING_ENTRY_POINT)
        except CodeExecutionError as e:
            logger.debug(f"Script execution error: {e}")
            return failure(str(e), FailureKind.RUNTIME_ERROR)
        except Exception as e:
            logger.exception("Script runner failed")
            return failure(f"Script runner failed: {type(e).__name__}: {e}", FailureKind.INTERNAL_ERROR)

        return ExecutionResult.ok(data, list(logs), elapsed_ms())

    async def _run_in_process(
        self,
        tree: ast.Module,
        bindings: dict[str, Capability],
        runtime: ExecutionRuntime,
        timeout_ms: int,
        logs: list[str],
    ) -> Any:
        """Run the script in a runner process; raises ExecutionTimeoutError or the script's own failure"""
        loop = asyncio.get_running_loop()
        requests_reader, requests_writer = _MP_CONTEXT.Pipe(duplex=False)
        responses_reader, responses_writer = _MP_CONTEXT.Pipe(duplex=False)
        process = _MP_CONTEXT.Process(
            target=script_runner.run_script,
            args=(
                tree,
                sorted(bindings),
                self.config.max_log_lines,
                self.config.max_log_chars,
                requests_writer,
                responses_reader,
            ),
            name="skill-sandbox",
            daemon=True,
        )

        try:
            await asyncio.to_thread(process.start)
        except BaseException:
            for connection in (requests_reader, requests_writer, responses_reader, responses_writer):
                connection.close()
            raise
        # The runner owns these ends now; closing ours lets its exit show up as EOF
        requests_writer.close()
        responses_reader.close()

        messages: asyncio.Queue = asyncio.Queue()
        threading.Thread(
            target=_pump_messages,
            args=(requests_reader, loop, messages),
            name="skill-sandbox-reader",
            daemon=True,
        ).start()

        calls: set[asyncio.Task] = set()
        try:
            await self._wait_for_ready(messages)
            deadline = loop.time() + timeout_ms / 1000

            while True:
                try:
                    message = await asyncio.wait_for(messages.get(), max(deadline - loop.time(), 0))
                except asyncio.TimeoutError:
                    raise ExecutionTimeoutError(timeout_ms)

                if message is None:
                    await asyncio.to_thread(process.join, 1.0)
                    raise CodeExecutionError(
                        f"Script process exited unexpectedly (exit code {process.exitcode})"
                    )

                kind = message.get("type")
                if kind == "log":
                    logs.append(str(message.get("text", "")))
                elif kind == "call":
                    task = asyncio.create_task(
                        self._serve_call(message, bindings, runtime, responses_writer)
                    )
                    calls.add(task)
                    task.add_done_callback(calls.discard)
                elif kind == "done":
                    return self._outcome(message)
                else:
                    logger.warning(f"Ignoring unexpected runner message: {kind!r}")
        finally:
            for task in list(calls):
                task.cancel()
            await self._stop(process)
            responses_writer.close()

    async def _wait_for_ready(self, messages: asyncio.Queue) -> None:
        try:
            message = await asyncio.wait_for(messages.get(), self.config.startup_timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise SandboxError(f"Script runner did not start within {self.config.startup_timeout_ms} ms")
        if message is None or message.get("type") != "ready":
            raise SandboxError("Script runner exited before it was ready")

    async def _serve_call(
        self,
        message: dict,
        bindings: dict[str, Capability],
        runtime: ExecutionRuntime,
        responses,
    ) -> None:
        """Run one capability requested by the runner and send back its result or error"""
        call_id = message.get("id")
        name = message.get("name")
        try:
            capability = bindings.get(name)
            if capability is None:
                raise CapabilityViolationError(f"Capability '{name}' was not imported by this script")
            args = message.get("args") or []
            kwargs = message.get("kwargs") or {}
            reply = _encode_reply(call_id, True, await capability.bind(runtime)(*args, **kwargs))
        except Exception as e:
            reply = _encode_reply(call_id, False, _portable_error(e))

        try:
            responses.send_bytes(reply)
        except OSError:
            logger.debug(f"Runner exited before the result of '{name}' was delivered")

    @staticmethod
    def _outcome(message: dict) -> Any:
        if message.get("success"):
            return message.get("data")
        error = str(message.get("error") or "Script failed")
        if message.get("kind") == FailureKind.MISSING_ENTRY_POINT.value:
            raise MissingEntryPointError(error)
        raise CodeExecutionError(error)

    @staticmethod
    async def _stop(process) -> None:
        if process.pid is None:
            return
        if process.is_alive():
            process.kill()
        await asyncio.to_thread(process.join, 5.0)
