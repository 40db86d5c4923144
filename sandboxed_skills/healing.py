"""
Self-healing controller

Drives bounded retries over the SkillSandbox:
1. EXECUTING  - run the current script with a freshly scoped runtime
2. CORRECTING - the run failed: ask the language model for a fixed script
3. REFLECTING - the run succeeded but the detector flagged the result:
   ask the language model to repair the data handling
4. DONE       - return the last result

Corrections and reflections share one retry budget, so a run never performs
more than max_retries + 1 executions. A replacement is adopted only when it
differs from the current script; an identical answer ends the loop at once.
Nothing here raises for script or model failures: the caller always gets a
HealingOutcome.
"""

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Awaitable, Callable, Iterable, Mapping

from .detector import DetectorConfig, SuspicionReport, check
from .prompts import (
    ERROR_CORRECTION_USER_MESSAGE,
    FILTERED_TO_EMPTY_USER_MESSAGE,
    REFLECTION_USER_MESSAGE,
    TIMEOUT_CORRECTION_USER_MESSAGE,
    build_tool_schema_info,
    error_correction_prompt,
    extract_code_block,
    filtered_to_empty_prompt,
    reflection_prompt,
)
from .runtime import CallRecord, CapabilityAuthorization, ExecutionRuntime, ProgressSink
from .sandbox import ExecutionResult, FailureKind, SandboxConfig, SkillSandbox, extract_code

logger = logging.getLogger(__name__)


class HealingState(str, Enum):
    EXECUTING = "executing"
    CORRECTING = "correcting"
    REFLECTING = "reflecting"
    DONE = "done"


@dataclass
class HealingConfig:
    """Self-healing configuration"""
    max_retries: int = 2  # shared by corrections and reflections
    timeout_ms: int = 5000
    detector: DetectorConfig = field(default_factory=DetectorConfig)

    @classmethod
    def from_env(cls) -> "HealingConfig":
        return cls(
            max_retries=int(os.environ.get("SKILL_HEALING_MAX_RETRIES", cls.max_retries)),
            timeout_ms=int(os.environ.get("SKILL_SANDBOX_TIMEOUT_MS", cls.timeout_ms)),
            detector=DetectorConfig.from_env(),
        )


@dataclass(frozen=True)
class CompletionRequest:
    """What the controller hands to the language model"""
    system: str
    prompt: str
    purpose: str  # "correction" | "reflection"


CompletionFn = Callable[[CompletionRequest], "str | Awaitable[str]"]


@dataclass
class HealingOutcome:
    """Final verdict of one self-healing run"""
    result: ExecutionResult
    final_code: str
    attempt_count: int
    call_history: list[CallRecord]
    model_calls: int = 0
    transitions: list[HealingState] = field(default_factory=list)
    suspicion: SuspicionReport | None = None

    @property
    def success(self) -> bool:
        return self.result.success


@dataclass
class _HealingSession:
    """Mutable state of one run; discarded when run() returns"""
    current_code: str
    runtime: ExecutionRuntime
    attempt: int = 0
    call_history: list[CallRecord] = field(default_factory=list)
    result: ExecutionResult | None = None
    suspicion: SuspicionReport | None = None
    model_calls: int = 0
    transitions: list[HealingState] = field(default_factory=list)
    cancel_event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class SelfHealingController:
    """
    Self-healing execution loop

    Usage:
        controller = SelfHealingController(completion_fn=AnthropicCompletion())
        outcome = await controller.run(
            code,
            ["skills.weather"],
            authorized_capabilities={},
        )
        print(outcome.result.success, outcome.attempt_count)
    """

    def __init__(
        self,
        completion_fn: CompletionFn,
        sandbox: SkillSandbox | None = None,
        config: HealingConfig | None = None
    ):
        self.completion_fn = completion_fn
        self.sandbox = sandbox or SkillSandbox()
        self.config = config or HealingConfig()

    async def run(
        self,
        initial_code: str,
        allowed_modules: Iterable[str],
        authorized_capabilities: Mapping[str, CapabilityAuthorization] | None = None,
        *,
        runtime: ExecutionRuntime | None = None,
        progress: ProgressSink | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> HealingOutcome:
        """
        Execute a script, repairing it when it crashes or returns suspicious data

        Args:
            initial_code: AI-authored script, optionally fenced
            allowed_modules: module names the script may import
            authorized_capabilities: tool id -> paid authorization; counters are
                incremented in place
            runtime: template runtime carrying collaborator services
            progress: progress sink, overrides the template's
            cancel_event: when set, no new attempt is started

        Returns:
            HealingOutcome with the last result and the code that produced it
        """
        allowed_modules = list(allowed_modules)
        authorized = authorized_capabilities if authorized_capabilities is not None else {}

        base_runtime = runtime or ExecutionRuntime()
        base_runtime = replace(
            base_runtime,
            authorized=authorized,
            progress=progress or base_runtime.progress,
            call_history=[],
            attempt=0,
        )

        session = _HealingSession(current_code=initial_code, runtime=base_runtime, cancel_event=cancel_event)
        state = HealingState.EXECUTING

        while state is not HealingState.DONE:
            session.transitions.append(state)
            if state is HealingState.EXECUTING:
                state = await self._execute(session, allowed_modules)
            elif state is HealingState.CORRECTING:
                state = await self._correct(session)
            elif state is HealingState.REFLECTING:
                state = await self._reflect(session)
        session.transitions.append(HealingState.DONE)

        result = session.result
        if result is None:
            result = ExecutionResult.fail(
                "Execution cancelled before the first attempt started", [], 0, FailureKind.CANCELLED
            )

        session.runtime.emit("done", "success" if result.success else (result.error or "failed"))
        logger.info(
            f"Self-healing finished: success={result.success}, attempt={session.attempt}, "
            f"model_calls={session.model_calls}"
        )

        return HealingOutcome(
            result=result,
            final_code=session.current_code,
            attempt_count=session.attempt,
            call_history=list(session.call_history),
            model_calls=session.model_calls,
            transitions=session.transitions,
            suspicion=session.suspicion,
        )

    async def _execute(
        self,
        session: _HealingSession,
        allowed_modules: list[str],
    ) -> HealingState:
        if session.cancelled:
            logger.info(f"Request cancelled; not starting attempt {session.attempt}")
            return HealingState.DONE

        seed = session.call_history if session.attempt > 0 else []
        attempt_runtime = session.runtime.next_attempt(seed, attempt=session.attempt)
        session.runtime = attempt_runtime

        if session.attempt > 0:
            logger.info(f"Self-heal: retry attempt {session.attempt}")
        attempt_runtime.emit("executing")

        result = await self.sandbox.execute(
            session.current_code,
            allowed_modules,
            attempt_runtime,
            timeout_ms=self.config.timeout_ms,
        )
        session.result = result
        if attempt_runtime.call_history:
            session.call_history = attempt_runtime.call_history

        retries_left = session.attempt < self.config.max_retries

        if not result.success:
            if not result.failure_kind.retryable:
                logger.info(f"Not retrying {result.failure_kind.value}: {result.error}")
                return HealingState.DONE
            if not retries_left:
                logger.info(f"Retry budget exhausted; last error: {result.error}")
                return HealingState.DONE
            logger.info(f"Self-heal: execution failed on attempt {session.attempt}: {result.error}")
            return HealingState.CORRECTING

        if retries_left and session.call_history:
            report = check(result.data, session.call_history, self.config.detector)
            session.suspicion = report
            if report.suspicious:
                logger.info(f"Reflection: {report.reason} (null paths: {report.null_paths})")
                return HealingState.REFLECTING

        return HealingState.DONE

    async def _correct(self, session: _HealingSession) -> HealingState:
        result = session.result
        session.runtime.emit("fixing", result.error or "")

        timed_out = result.failure_kind is FailureKind.TIMEOUT
        request = CompletionRequest(
            system=error_correction_prompt(
                code=extract_code(session.current_code),
                error=result.error or "",
                logs=result.logs,
                call_history=session.call_history or None,
                tool_schemas=build_tool_schema_info(session.runtime.authorized),
                timed_out=timed_out,
            ),
            prompt=TIMEOUT_CORRECTION_USER_MESSAGE if timed_out else ERROR_CORRECTION_USER_MESSAGE,
            purpose="correction",
        )
        return await self._adopt(session, request)

    async def _reflect(self, session: _HealingSession) -> HealingState:
        result = session.result
        report = session.suspicion
        session.runtime.emit("reflecting", report.reason)

        schemas = build_tool_schema_info(session.runtime.authorized)
        code = extract_code(session.current_code)
        if report.filtered_to_empty is not None:
            system = filtered_to_empty_prompt(code, result.data, report.filtered_to_empty, session.call_history, schemas)
            prompt = FILTERED_TO_EMPTY_USER_MESSAGE
        else:
            system = reflection_prompt(code, result.data, report.null_paths, session.call_history, schemas)
            prompt = REFLECTION_USER_MESSAGE

        return await self._adopt(session, CompletionRequest(system=system, prompt=prompt, purpose="reflection"))

    async def _adopt(self, session: _HealingSession, request: CompletionRequest) -> HealingState:
        """Ask the model for a replacement; adopt it only if it changes the script"""
        fixed = await self._complete(session, request)
        if fixed is None:
            logger.info(f"No usable {request.purpose} from the model; keeping the last result")
            return HealingState.DONE

        if session.cancelled:
            logger.info(f"Request cancelled; discarding {request.purpose}")
            return HealingState.DONE

        if fixed == extract_code(session.current_code):
            logger.info(f"Model returned identical code during {request.purpose}; stopping")
            return HealingState.DONE

        logger.info(f"Adopting {request.purpose} for attempt {session.attempt + 1}")
        session.current_code = fixed
        session.attempt += 1
        return HealingState.EXECUTING

    async def _complete(self, session: _HealingSession, request: CompletionRequest) -> str | None:
        session.model_calls += 1
        try:
            reply = self.completion_fn(request)
            if inspect.isawaitable(reply):
                reply = await reply
        except Exception as e:
            logger.warning(f"Language model call failed during {request.purpose}: {e}")
            return None
        return extract_code_block(reply or "")


async def execute_with_self_healing(
    initial_code: str,
    allowed_modules: Iterable[str],
    authorized_capabilities: Mapping[str, CapabilityAuthorization] | None,
    completion_fn: CompletionFn,
    max_retries: int | None = None,
    sandbox: SkillSandbox | None = None,
    config: HealingConfig | None = None,
    **kwargs,
) -> HealingOutcome:
    """
    Convenience wrapper: one controller, one run

    Without an explicit config or sandbox, both are read from the environment;
    max_retries, when given, overrides the configured budget.
    """
    config = config or HealingConfig.from_env()
    if max_retries is not None:
        config = replace(config, max_retries=max_retries)
    controller = SelfHealingController(
        completion_fn,
        sandbox=sandbox or SkillSandbox(config=SandboxConfig.from_env()),
        config=config,
    )
    return await controller.run(initial_code, allowed_modules, authorized_capabilities, **kwargs)
