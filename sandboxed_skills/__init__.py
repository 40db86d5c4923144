# Sandboxed Skills
# Run AI-authored scripts against allow-listed skill modules and repair them
# automatically when they crash or return suspicious data

from .detector import DetectorConfig, SuspicionReport, check, has_non_empty_data
from .healing import (
    CompletionRequest,
    HealingConfig,
    HealingOutcome,
    HealingState,
    SelfHealingController,
    execute_with_self_healing,
)
from .llm import AnthropicCompletion, CompletionConfig
from .mediator import build_mediator_text
from .module_registry import Capability, ModuleRegistry, SkillModule
from .prompts import skill_coding_prompt
from .runtime import (
    CallRecord,
    CapabilityAuthorization,
    ExecutionRuntime,
    ProgressEvent,
    ToolListing,
    ToolOperation,
)
from .sandbox import ExecutionResult, FailureKind, SandboxConfig, SkillSandbox
from .skills import default_registry
from .exceptions import (
    SandboxError,
    CapabilityViolationError,
    UnsupportedSyntaxError,
    MissingEntryPointError,
    ExecutionTimeoutError,
    CodeExecutionError,
    ToolAuthorizationError,
    ToolExecutionError,
    RegistryFrozenError,
)

__all__ = [
    # Core
    "SelfHealingController",
    "execute_with_self_healing",
    "HealingConfig",
    "HealingOutcome",
    "HealingState",
    "CompletionRequest",
    # Sandbox
    "SkillSandbox",
    "SandboxConfig",
    "ExecutionResult",
    "FailureKind",
    # Detector
    "DetectorConfig",
    "SuspicionReport",
    "check",
    "has_non_empty_data",
    # Skill modules
    "ModuleRegistry",
    "SkillModule",
    "Capability",
    "default_registry",
    # Runtime context
    "ExecutionRuntime",
    "CapabilityAuthorization",
    "CallRecord",
    "ProgressEvent",
    "ToolListing",
    "ToolOperation",
    # Language model and summaries
    "AnthropicCompletion",
    "CompletionConfig",
    "build_mediator_text",
    "skill_coding_prompt",
    # Exceptions
    "SandboxError",
    "CapabilityViolationError",
    "UnsupportedSyntaxError",
    "MissingEntryPointError",
    "ExecutionTimeoutError",
    "CodeExecutionError",
    "ToolAuthorizationError",
    "ToolExecutionError",
    "RegistryFrozenError",
]
