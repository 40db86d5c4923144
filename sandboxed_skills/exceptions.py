"""Exceptions raised inside the sandbox and by skill implementations."""


class SandboxError(Exception):
    """Base class for sandbox-related errors"""
    pass


class CapabilityViolationError(SandboxError):
    """A script tried to reach something outside its allow-list"""
    pass


class UnsupportedSyntaxError(SandboxError):
    """An import form the sandbox does not rewrite (aliases, star, namespace)"""
    pass


class MissingEntryPointError(SandboxError):
    """The script does not define a callable named main"""
    def __init__(self, message: str = "No main() function found. Define a function named main."):
        super().__init__(message)


class ExecutionTimeoutError(SandboxError):
    """Execution exceeded its wall-clock budget"""
    def __init__(self, timeout_ms: int, operation: str = "Execution"):
        self.timeout_ms = timeout_ms
        self.operation = operation
        super().__init__(f"{operation} timed out after {timeout_ms} ms")


class ToolAuthorizationError(SandboxError):
    """A paid tool was called without a usable authorization entry"""
    def __init__(self, tool_id: str, message: str):
        self.tool_id = tool_id
        super().__init__(message)


class ToolExecutionError(SandboxError):
    """A capability failed while talking to its backing service"""
    def __init__(self, tool_name: str, message: str, original_error: Exception | None = None):
        self.tool_name = tool_name
        self.original_error = original_error
        super().__init__(f"Tool '{tool_name}' execution failed: {message}")


class RegistryFrozenError(SandboxError):
    """The module registry no longer accepts registrations"""
    pass


class CodeExecutionError(SandboxError):
    """The script raised, or its process died; the message is what the script reported"""
    pass
