"""
Script runner - the child-process side of one sandbox execution

SkillSandbox starts one runner process per execution and talks to it over two
one-way pipes:

    runner -> host (JSON):
        {"type": "ready"}
        {"type": "log", "text": ...}
        {"type": "call", "id": n, "name": ..., "args": [...], "kwargs": {...}}
        {"type": "done", "success": true, "data": ...}
        {"type": "done", "success": false, "kind": ..., "error": ...}

    host -> runner (pickle):
        ("result", id, ok, value_or_error)

Capabilities, the ExecutionRuntime and every credential stay in the host
process; the runner only holds proxies that forward calls over the pipe.
Runner messages are JSON so the host never unpickles bytes written next to
untrusted code.
"""

import asyncio
import builtins
import inspect
import itertools
import json
import logging
import math
import pickle
import threading
from datetime import date, datetime, timedelta
from types import SimpleNamespace
from typing import Any, Callable, Iterable

from .exceptions import MissingEntryPointError

logger = logging.getLogger(__name__)

SCRIPT_FILENAME = "<skill_script>"
SCRIPT_MODULE_NAME = "skill_script"

TRUNCATION_MARKER = "... (log output truncated)"

ALLOWED_BUILTIN_NAMES = {
    "abs", "all", "any", "ascii", "bin", "bool", "bytes", "callable", "chr",
    "dict", "divmod", "enumerate", "filter", "float", "format", "frozenset",
    "hash", "hex", "int", "isinstance", "issubclass", "iter", "len", "list",
    "map", "max", "min", "next", "oct", "ord", "pow", "range", "repr",
    "reversed", "round", "set", "slice", "sorted", "str", "sum", "tuple", "zip",
    "hasattr", "object", "super", "property", "staticmethod", "classmethod",
    # Exceptions
    "Exception", "ArithmeticError", "AssertionError", "AttributeError",
    "IndexError", "KeyError", "LookupError", "NameError", "NotImplementedError",
    "RuntimeError", "StopIteration", "StopAsyncIteration", "TimeoutError",
    "TypeError", "ValueError", "ZeroDivisionError",
    # Needed by class statements
    "__build_class__",
}

_SAFE_BUILTINS = {
    name: getattr(builtins, name)
    for name in ALLOWED_BUILTIN_NAMES
    if hasattr(builtins, name)
}


class ScriptConsole:
    """Logger handed to scripts; lines are capped and forwarded to an optional sink"""

    def __init__(
        self,
        max_lines: int = 500,
        max_chars: int = 20000,
        sink: Callable[[str], None] | None = None,
    ):
        self.max_lines = max_lines
        self.max_chars = max_chars
        self._sink = sink
        self._lines: list[str] = []
        self._chars = 0
        self._truncated = False

    def _emit(self, line: str) -> None:
        self._lines.append(line)
        if self._sink is not None:
            self._sink(line)

    def _append(self, text: str) -> None:
        if self._truncated:
            return
        if len(self._lines) >= self.max_lines or self._chars + len(text) > self.max_chars:
            self._truncated = True
            self._emit(TRUNCATION_MARKER)
            return
        self._chars += len(text)
        self._emit(text)

    @staticmethod
    def _join(args: tuple) -> str:
        return " ".join(str(a) for a in args)

    def log(self, *args) -> None:
        self._append(self._join(args))

    info = log
    debug = log
    warn = log
    warning = log
    error = log

    def print(self, *args, sep: str | None = " ", end: str | None = "\n", **kwargs) -> None:
        self._append((" " if sep is None else sep).join(str(a) for a in args))

    def snapshot(self) -> list[str]:
        return list(self._lines)


# asyncio helpers exposed to scripts. They are coroutine functions, so a script
# only ever holds coroutines and plain results, never a future or its loop.

async def _gather(*aws, return_exceptions: bool = False) -> list:
    return list(await asyncio.gather(*aws, return_exceptions=return_exceptions))


async def _sleep(delay: float, result: Any = None) -> Any:
    return await asyncio.sleep(delay, result)


async def _wait_for(aw, timeout: float | None) -> Any:
    return await asyncio.wait_for(aw, timeout)


def make_asyncio_facade() -> SimpleNamespace:
    return SimpleNamespace(
        gather=_gather,
        sleep=_sleep,
        wait_for=_wait_for,
        TimeoutError=asyncio.TimeoutError,
    )


def make_json_facade() -> SimpleNamespace:
    return SimpleNamespace(dumps=json.dumps, loads=json.loads, JSONDecodeError=json.JSONDecodeError)


def _rebuild_error(payload: Any) -> BaseException:
    """Host errors arrive as the exception itself, or as (type name, message)"""
    if isinstance(payload, BaseException):
        return payload
    name, message = payload
    return type(str(name), (Exception,), {})(message)


class _HostChannel:
    """Runner end of the two pipes"""

    def __init__(self, requests, responses):
        self._requests = requests
        self._responses = responses
        self._pending: dict[int, asyncio.Future] = {}
        self._call_ids = itertools.count(1)
        self._loop: asyncio.AbstractEventLoop | None = None

    def send(self, message: dict) -> None:
        self._requests.send_bytes(json.dumps(message, default=str).encode("utf-8"))

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        threading.Thread(target=self._read_results, name="skill-runner-results", daemon=True).start()

    def _read_results(self) -> None:
        while True:
            try:
                _, call_id, ok, payload = pickle.loads(self._responses.recv_bytes())
            except (EOFError, OSError):
                return
            try:
                self._loop.call_soon_threadsafe(self._resolve, call_id, ok, payload)
            except RuntimeError:
                # Script finished and its loop is closed
                return

    def _resolve(self, call_id: int, ok: bool, payload: Any) -> None:
        future = self._pending.pop(call_id, None)
        if future is None or future.done():
            return
        if ok:
            future.set_result(payload)
        else:
            future.set_exception(_rebuild_error(payload))

    async def call(self, name: str, args: tuple, kwargs: dict) -> Any:
        call_id = next(self._call_ids)
        future = self._loop.create_future()
        self._pending[call_id] = future
        self.send({"type": "call", "id": call_id, "name": name, "args": list(args), "kwargs": kwargs})
        return await future


def _capability_proxy(channel: _HostChannel, name: str) -> Callable:
    async def capability(*args, **kwargs) -> Any:
        return await channel.call(name, args, kwargs)

    capability.__name__ = name
    return capability


def build_script_globals(binding_names: Iterable[str], console: ScriptConsole, channel: _HostChannel) -> dict:
    safe_builtins = dict(_SAFE_BUILTINS)
    safe_builtins["print"] = console.print

    exec_globals = {
        "__builtins__": safe_builtins,
        "__name__": SCRIPT_MODULE_NAME,
        "console": console,
        "asyncio": make_asyncio_facade(),
        "json": make_json_facade(),
        "math": math,
        "datetime": datetime,
        "date": date,
        "timedelta": timedelta,
    }
    for name in binding_names:
        exec_globals[name] = _capability_proxy(channel, name)
    return exec_globals


async def _invoke(code: Any, exec_globals: dict, channel: _HostChannel) -> Any:
    channel.attach(asyncio.get_running_loop())
    exec(code, exec_globals)
    main = exec_globals.get("main")
    if not callable(main):
        raise MissingEntryPointError()
    result = main()
    if inspect.isawaitable(result):
        result = await result
    return result


def run_script(
    tree: Any,
    binding_names: list[str],
    max_log_lines: int,
    max_log_chars: int,
    requests,
    responses,
) -> None:
    """Process entry point: run one validated script tree and report the outcome"""
    channel = _HostChannel(requests, responses)
    console = ScriptConsole(
        max_log_lines,
        max_log_chars,
        sink=lambda text: channel.send({"type": "log", "text": text}),
    )
    code = compile(tree, SCRIPT_FILENAME, "exec")
    exec_globals = build_script_globals(binding_names, console, channel)
    channel.send({"type": "ready"})

    try:
        data = asyncio.run(_invoke(code, exec_globals, channel))
    except MissingEntryPointError as e:
        channel.send({"type": "done", "success": False, "kind": "missing_entry_point", "error": str(e)})
        return
    except Exception as e:
        channel.send({"type": "done", "success": False, "kind": "runtime_error", "error": f"{type(e).__name__}: {e}"})
        return

    try:
        channel.send({"type": "done", "success": True, "data": data})
    except (TypeError, ValueError) as e:
        channel.send({
            "type": "done",
            "success": False,
            "kind": "runtime_error",
            "error": f"main() returned a value that is not JSON-serializable: {e}",
        })
