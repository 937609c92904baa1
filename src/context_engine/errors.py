"""
Error taxonomy for the context engine.

Every error carries a ``kind`` plus the offending key or item so callers can
decide whether to retry, shrink their input, or fail the request.
"""

from typing import Any


class ContextEngineError(Exception):
    """Base class for all engine errors."""

    kind = "engine_error"


class ContextOverflow(ContextEngineError):
    """The budget cannot be met even after full optimization."""

    kind = "context_overflow"

    def __init__(self, total_tokens: int, budget: int):
        self.total_tokens = total_tokens
        self.budget = budget
        super().__init__(
            f"Context needs {total_tokens} tokens after optimization but the budget is {budget}"
        )


class ItemTooLarge(ContextEngineError):
    """A single candidate item exceeds the whole budget."""

    kind = "item_too_large"

    def __init__(self, item: Any, budget: int):
        self.item = item
        self.budget = budget
        super().__init__(
            f"Item from '{getattr(item, 'source', 'unknown')}' costs "
            f"{getattr(item, 'token_count', '?')} tokens, budget is {budget}"
        )


class SessionNotFound(ContextEngineError):
    """The session is not tracked in the active index."""

    kind = "session_not_found"

    def __init__(self, session_id: str, reason: str = "not tracked"):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session '{session_id}' {reason}")


class ToolError(ContextEngineError):
    """Base class for tool-layer errors."""

    kind = "tool_error"

    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(message)


class DuplicateTool(ToolError):
    kind = "duplicate_tool"

    def __init__(self, name: str):
        super().__init__(name, f"Tool '{name}' is already registered")


class ToolNotFound(ToolError):
    kind = "tool_not_found"

    def __init__(self, name: str):
        super().__init__(name, f"Tool '{name}' not found")


class InvalidParameters(ToolError):
    kind = "invalid_parameters"

    def __init__(self, name: str, errors: list[dict[str, Any]]):
        self.errors = errors
        details = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ())) or '<root>'}: {e.get('msg', '')}"
            for e in errors
        )
        super().__init__(name, f"Invalid parameters for tool '{name}': {details}")


class ToolExecutionError(ToolError):
    """The tool raised; the original exception is chained as ``__cause__``."""

    kind = "tool_execution_error"

    def __init__(self, name: str, error: BaseException):
        self.error = error
        super().__init__(name, f"Tool '{name}' failed: {error}")


class StorageUnavailable(ContextEngineError):
    kind = "storage_unavailable"

    def __init__(self, tier: str, key: str | None = None, reason: str = ""):
        self.tier = tier
        self.key = key
        self.reason = reason
        target = f"{tier}:{key}" if key else tier
        super().__init__(f"Storage unavailable for {target}" + (f": {reason}" if reason else ""))


class ComplianceOperationFailed(ContextEngineError):
    """A delete/export/anonymize did not complete and must be retried."""

    kind = "compliance_operation_failed"

    def __init__(self, operation: str, user_id: str, reason: str = ""):
        self.operation = operation
        self.user_id = user_id
        super().__init__(
            f"Compliance operation '{operation}' for user '{user_id}' did not complete"
            + (f": {reason}" if reason else "")
        )


class ExternalCallTimeout(ContextEngineError):
    """An external capability did not answer within the caller's timeout."""

    kind = "external_call_timeout"

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"External call '{operation}' timed out after {timeout}s")
