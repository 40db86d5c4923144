"""Unit tests for the skill sandbox: validation, execution, logs and deadlines."""

import asyncio

import pytest

from sandboxed_skills import ExecutionRuntime, FailureKind, SandboxConfig, SkillSandbox
from sandboxed_skills.sandbox import extract_code
from sandboxed_skills.script_runner import TRUNCATION_MARKER, ScriptConsole

from conftest import FAKE_DATA_MODULE, FAKE_WEATHER_MODULE, _run, fenced

WEATHER_ONLY = [FAKE_WEATHER_MODULE]


def _execute(sandbox: SkillSandbox, code: str, allowed=WEATHER_ONLY, runtime=None, timeout_ms=None):
    runtime = runtime or ExecutionRuntime()
    return _run(sandbox.execute(code, allowed, runtime, timeout_ms=timeout_ms))


class TestExtractCode:
    def test_fenced_python_block(self) -> None:
        text = "Here you go:\n```python\nasync def main():\n    return 1\n```\nDone."
        assert extract_code(text) == "async def main():\n    return 1"

    def test_unfenced_text_is_used_whole(self) -> None:
        assert extract_code("  def main():\n    return 1\n") == "def main():\n    return 1"


class TestSuccessfulExecution:
    def test_async_main_calls_capability(self, sandbox) -> None:
        code = fenced(
            "from skills.weather import fake_get_weather\n"
            "async def main():\n"
            "    forecast = await fake_get_weather(city='Paris')\n"
            "    return {'temp': forecast['current']['temperature_celsius']}"
        )
        result = _execute(sandbox, code)
        assert result.success is True
        assert result.data == {"temp": 21.5}
        assert result.error is None
        assert result.failure_kind is None

    def test_sync_main(self, sandbox) -> None:
        result = _execute(sandbox, "def main():\n    return [1, 2, 3]")
        assert result.success is True
        assert result.data == [1, 2, 3]

    def test_print_and_console_are_captured(self, sandbox) -> None:
        code = (
            "async def main():\n"
            "    print('hello', 42)\n"
            "    console.log('from console')\n"
            "    console.error('bad', 'news')\n"
            "    return None"
        )
        result = _execute(sandbox, code)
        assert result.success is True
        assert result.logs == ["hello 42", "from console", "bad news"]

    def test_prebound_helpers_are_available(self, sandbox) -> None:
        code = (
            "async def main():\n"
            "    a, b = await asyncio.gather(asyncio.sleep(0, 1), asyncio.sleep(0, 2))\n"
            "    return {'sum': a + b, 'root': math.sqrt(16), 'text': json.dumps({'x': 1}),\n"
            "            'later': (date(2024, 1, 1) + timedelta(days=1)).isoformat()}"
        )
        result = _execute(sandbox, code)
        assert result.success is True
        assert result.data == {"sum": 3, "root": 4.0, "text": '{"x": 1}', "later": "2024-01-02"}

    def test_asyncio_helpers_return_plain_values(self, sandbox) -> None:
        code = (
            "async def main():\n"
            "    values = await asyncio.gather(asyncio.sleep(0, 'a'), asyncio.sleep(0, 'b'))\n"
            "    late = await asyncio.wait_for(asyncio.sleep(0, 'c'), 1)\n"
            "    return {'values': values, 'is_list': isinstance(values, list), 'late': late}"
        )
        result = _execute(sandbox, code)
        assert result.success is True
        assert result.data == {"values": ["a", "b"], "is_list": True, "late": "c"}

    def test_helper_changes_do_not_leak_between_runs(self, sandbox) -> None:
        first = _execute(sandbox, "def main():\n    asyncio.sleep = None\n    json.dumps = None\n    return 1")
        assert first.success is True
        second = _execute(sandbox, "async def main():\n    return json.dumps(await asyncio.sleep(0, 2))")
        assert second.success is True
        assert second.data == "2"

    def test_class_definitions_work(self, sandbox) -> None:
        code = (
            "class Point:\n"
            "    def __init__(self, x):\n"
            "        self.x = x\n"
            "def main():\n"
            "    return Point(3).x"
        )
        result = _execute(sandbox, code)
        assert result.success is True
        assert result.data == 3

    def test_capability_records_into_runtime(self, sandbox) -> None:
        runtime = ExecutionRuntime()
        code = (
            "from skills.data import fake_list_items\n"
            "async def main():\n"
            "    data = await fake_list_items(count=3)\n"
            "    return len(data['items'])"
        )
        result = _execute(sandbox, code, allowed=[FAKE_WEATHER_MODULE, FAKE_DATA_MODULE], runtime=runtime)
        assert result.success is True
        assert result.data == 3
        assert len(runtime.call_history) == 1
        assert runtime.call_history[0].tool_name == "list_items"


class TestCapabilityBoundary:
    def test_import_outside_allow_list(self, sandbox) -> None:
        code = (
            "from skills.data import fake_list_items\n"
            "async def main():\n"
            "    print('never runs')\n"
            "    return await fake_list_items()"
        )
        result = _execute(sandbox, code)
        assert result.success is False
        assert result.failure_kind is FailureKind.CAPABILITY_VIOLATION
        assert not result.failure_kind.retryable
        assert "skills.data" in result.error
        assert result.logs == []

    def test_stdlib_import_is_violation(self, sandbox) -> None:
        result = _execute(sandbox, "import os\ndef main():\n    return os.getcwd()")
        assert result.failure_kind is FailureKind.CAPABILITY_VIOLATION

    def test_relative_import_is_violation(self, sandbox) -> None:
        result = _execute(sandbox, "from . import secrets\ndef main():\n    return 1")
        assert result.failure_kind is FailureKind.CAPABILITY_VIOLATION

    def test_unregistered_allowed_module(self, sandbox) -> None:
        result = _execute(sandbox, "def main():\n    return 1", allowed=["skills.nope"])
        assert result.failure_kind is FailureKind.CAPABILITY_VIOLATION

    @pytest.mark.parametrize(
        "expression",
        [
            "().__class__",
            "__import__('os')",
            "(lambda: 1).__globals__",
            "'{0.__class__}'.format(1)",
        ],
    )
    def test_dunder_access_is_violation(self, sandbox, expression) -> None:
        result = _execute(sandbox, f"def main():\n    return {expression}")
        assert result.failure_kind is FailureKind.CAPABILITY_VIOLATION

    def test_frame_attributes_are_violation(self, sandbox) -> None:
        code = "async def helper():\n    return 1\ndef main():\n    return helper().cr_frame"
        result = _execute(sandbox, code)
        assert result.failure_kind is FailureKind.CAPABILITY_VIOLATION

    @pytest.mark.parametrize(
        "expression",
        [
            "asyncio.gather().get_loop()",
            "asyncio.sleep(0)._loop",
            "asyncio.gather().get_loop().subprocess_shell",
            "console.run_in_executor",
            "console.create_connection",
            "console.getaddrinfo",
        ],
    )
    def test_event_loop_is_unreachable(self, sandbox, expression) -> None:
        code = f"async def main():\n    print('never runs')\n    return {expression}"
        result = _execute(sandbox, code)
        assert result.success is False
        assert result.failure_kind is FailureKind.CAPABILITY_VIOLATION
        assert result.logs == []

    def test_runtime_built_format_string_is_rejected(self, sandbox) -> None:
        code = (
            "from skills.weather import fake_get_weather\n"
            "def main():\n"
            "    print('never runs')\n"
            "    u = '_' + '_'\n"
            "    field_name = '{0.' + u + 'closure' + u + '[0].cell_contents}'\n"
            "    return field_name.format(fake_get_weather)"
        )
        result = _execute(sandbox, code)
        assert result.success is False
        assert result.failure_kind is FailureKind.UNSUPPORTED_SYNTAX
        assert "f-strings" in result.error
        assert result.logs == []

    @pytest.mark.parametrize("call", ["str.format('{0}', 1)", "'{x}'.format_map({'x': 1})"])
    def test_format_methods_are_unsupported(self, sandbox, call) -> None:
        result = _execute(sandbox, f"def main():\n    return {call}")
        assert result.failure_kind is FailureKind.UNSUPPORTED_SYNTAX
        assert result.failure_kind.retryable

    def test_fstrings_still_work(self, sandbox) -> None:
        result = _execute(sandbox, "def main():\n    city = 'Paris'\n    return f'{city}: {21.5:.1f}'")
        assert result.success is True
        assert result.data == "Paris: 21.5"

    def test_private_attributes_are_unsupported(self, sandbox) -> None:
        result = _execute(sandbox, "def main():\n    return console._lines")
        assert result.failure_kind is FailureKind.UNSUPPORTED_SYNTAX
        assert "_lines" in result.error

    def test_dangerous_builtins_are_missing(self, sandbox) -> None:
        result = _execute(sandbox, "def main():\n    return open('/etc/passwd').read()")
        assert result.failure_kind is FailureKind.RUNTIME_ERROR
        assert result.error.startswith("NameError")


class TestUnsupportedSyntax:
    @pytest.mark.parametrize(
        "import_line",
        [
            "from skills.weather import fake_get_weather as gw",
            "from skills.weather import *",
            "import skills.weather",
        ],
    )
    def test_unsupported_import_forms(self, sandbox, import_line) -> None:
        result = _execute(sandbox, f"{import_line}\ndef main():\n    return 1")
        assert result.success is False
        assert result.failure_kind is FailureKind.UNSUPPORTED_SYNTAX
        assert result.failure_kind.retryable

    def test_prebound_helper_import_gets_hint(self, sandbox) -> None:
        result = _execute(sandbox, "import json\ndef main():\n    return json.dumps(1)")
        assert result.failure_kind is FailureKind.UNSUPPORTED_SYNTAX
        assert "already available" in result.error

    def test_violation_wins_over_helper_import(self, sandbox) -> None:
        result = _execute(sandbox, "import json\nimport os\ndef main():\n    return 1")
        assert result.failure_kind is FailureKind.CAPABILITY_VIOLATION

    def test_unknown_capability_name(self, sandbox) -> None:
        result = _execute(sandbox, "from skills.weather import get_forecast\ndef main():\n    return 1")
        assert result.failure_kind is FailureKind.RUNTIME_ERROR
        assert result.error.startswith("ImportError")
        assert "fake_get_weather" in result.error


class TestFailures:
    def test_syntax_error(self, sandbox) -> None:
        result = _execute(sandbox, "async def main(:\n    return 1")
        assert result.failure_kind is FailureKind.SYNTAX_ERROR
        assert result.error.startswith("SyntaxError at line 1")

    def test_missing_main(self, sandbox) -> None:
        result = _execute(sandbox, "def helper():\n    return 1")
        assert result.failure_kind is FailureKind.MISSING_ENTRY_POINT
        assert "main" in result.error

    def test_exception_keeps_logs(self, sandbox) -> None:
        code = (
            "async def main():\n"
            "    console.log('step 1')\n"
            "    raise ValueError('boom')"
        )
        result = _execute(sandbox, code)
        assert result.success is False
        assert result.failure_kind is FailureKind.RUNTIME_ERROR
        assert result.error == "ValueError: boom"
        assert result.logs == ["step 1"]

    def test_capability_error_reaches_script(self, sandbox) -> None:
        code = (
            "from skills.weather import fake_get_weather\n"
            "async def main():\n"
            "    return await fake_get_weather()"
        )
        result = _execute(sandbox, code)
        assert result.failure_kind is FailureKind.RUNTIME_ERROR
        assert result.error.startswith("ValueError: Please provide")

    def test_script_timeout_error_is_not_a_deadline(self, sandbox) -> None:
        result = _execute(sandbox, "def main():\n    raise TimeoutError('upstream slow')")
        assert result.failure_kind is FailureKind.RUNTIME_ERROR
        assert result.error == "TimeoutError: upstream slow"

    def test_host_error_keeps_its_type_name(self, sandbox) -> None:
        code = (
            "from skills.http import call_http_tool\n"
            "async def main():\n"
            "    return await call_http_tool(tool_id='tool_missing')"
        )
        result = _execute(sandbox, code, allowed=[FAKE_WEATHER_MODULE, "skills.http"])
        assert result.failure_kind is FailureKind.RUNTIME_ERROR
        assert result.error.startswith("ToolAuthorizationError: Tool tool_missing is not authorized")

    def test_unserializable_result(self, sandbox) -> None:
        code = "def main():\n    data = {}\n    data['self'] = data\n    return data"
        result = _execute(sandbox, code)
        assert result.failure_kind is FailureKind.RUNTIME_ERROR
        assert "not JSON-serializable" in result.error


class TestDeadline:
    def test_busy_loop_times_out(self, sandbox) -> None:
        code = (
            "async def main():\n"
            "    console.log('spinning')\n"
            "    while True:\n"
            "        pass"
        )
        result = _execute(sandbox, code, timeout_ms=200)
        assert result.success is False
        assert result.is_timeout
        assert result.error == "Execution timed out after 200 ms"
        assert result.logs == ["spinning"]
        assert result.duration_ms < 5000

    def test_long_sleep_times_out(self, sandbox) -> None:
        result = _execute(sandbox, "async def main():\n    await asyncio.sleep(30)", timeout_ms=200)
        assert result.is_timeout

    def test_bare_except_cannot_swallow_deadline(self, sandbox) -> None:
        code = (
            "def main():\n"
            "    while True:\n"
            "        try:\n"
            "            pass\n"
            "        except:\n"
            "            pass"
        )
        result = _execute(sandbox, code, timeout_ms=200)
        assert result.is_timeout

    def test_single_long_c_call_times_out(self, sandbox) -> None:
        code = "def main():\n    x = 7 ** (10 ** 7)\n    return 1"
        result = _execute(sandbox, code, timeout_ms=200)
        assert result.is_timeout
        assert result.error == "Execution timed out after 200 ms"
        assert result.duration_ms < 5000

    def test_caller_loop_keeps_running_during_c_call(self, sandbox) -> None:
        code = "def main():\n    x = 7 ** (10 ** 7)\n    return 1"

        async def scenario():
            ticks = 0

            async def ticker() -> None:
                nonlocal ticks
                while True:
                    await asyncio.sleep(0.01)
                    ticks += 1

            task = asyncio.create_task(ticker())
            result = await sandbox.execute(code, WEATHER_ONLY, ExecutionRuntime(), timeout_ms=300)
            task.cancel()
            return result, ticks

        result, ticks = _run(scenario())
        assert result.is_timeout
        assert ticks >= 10


class TestLogCapture:
    def test_logs_are_truncated(self, registry) -> None:
        sandbox = SkillSandbox(registry, SandboxConfig(max_log_lines=5))
        code = "def main():\n    for i in range(20):\n        print(i)\n    return 'ok'"
        result = _execute(sandbox, code)
        assert result.success is True
        assert result.logs == ["0", "1", "2", "3", "4", TRUNCATION_MARKER]

    def test_console_char_budget(self) -> None:
        console = ScriptConsole(max_lines=100, max_chars=10)
        console.log("12345")
        console.log("678901")
        console.log("more")
        assert console.snapshot() == ["12345", TRUNCATION_MARKER]


class TestSandboxConfig:
    def test_from_env_reads_every_field(self, monkeypatch) -> None:
        monkeypatch.setenv("SKILL_SANDBOX_TIMEOUT_MS", "1500")
        monkeypatch.setenv("SKILL_SANDBOX_MAX_LOG_LINES", "7")
        monkeypatch.setenv("SKILL_SANDBOX_MAX_LOG_CHARS", "300")
        monkeypatch.setenv("SKILL_SANDBOX_STARTUP_TIMEOUT_MS", "4000")
        config = SandboxConfig.from_env()
        assert config == SandboxConfig(timeout_ms=1500, max_log_lines=7, max_log_chars=300, startup_timeout_ms=4000)

    def test_from_env_defaults(self, monkeypatch) -> None:
        for name in (
            "SKILL_SANDBOX_TIMEOUT_MS",
            "SKILL_SANDBOX_MAX_LOG_LINES",
            "SKILL_SANDBOX_MAX_LOG_CHARS",
            "SKILL_SANDBOX_STARTUP_TIMEOUT_MS",
        ):
            monkeypatch.delenv(name, raising=False)
        assert SandboxConfig.from_env() == SandboxConfig()
