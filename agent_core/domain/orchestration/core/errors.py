from typing import Any, Dict, List, Optional


class AgentError(Exception):
    """Base error raised by the agent core"""

    def __init__(self, message: str, code: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.stage = stage


class CancellationError(AgentError):
    """The call chain was aborted for a reason other than a bail"""

    def __init__(self, message: str = "Operation cancelled", reason: Any = None):
        super().__init__(message, code="OPERATION_CANCELLED", stage="execution")
        self.reason = reason


class AbortedError(AgentError):
    """An await was interrupted by the abort signal"""

    def __init__(self, reason: Any):
        super().__init__(getattr(reason, "message", None) or "Operation aborted", code="ABORTED")
        self.reason = reason


class ToolDeniedError(AgentError):
    """A pre-execution check refused to run a tool"""

    def __init__(self, tool_name: str, message: Optional[str] = None, code: str = "TOOL_FORBIDDEN"):
        super().__init__(message or f"Tool '{tool_name}' was denied", code=code, stage="tool_execution")
        self.tool_name = tool_name


class ToolParameterError(AgentError):
    """Tool arguments did not match the tool's parameter schema"""

    def __init__(self, tool_name: str, errors: List[str]):
        super().__init__(
            f"Invalid arguments for tool '{tool_name}': {'; '.join(errors)}",
            code="TOOL_PARAMETERS_INVALID",
            stage="tool_execution"
        )
        self.tool_name = tool_name
        self.validation_errors = errors


class ToolOutputValidationError(AgentError):
    """Tool output did not match the declared output schema"""

    def __init__(self, message: str, validation_errors: List[Dict[str, Any]], actual_output: Any):
        super().__init__(f"Output validation failed: {message}", code="TOOL_OUTPUT_INVALID", stage="tool_execution")
        self.validation_errors = validation_errors
        self.actual_output = actual_output


class GuardrailRejectedError(AgentError):
    """A guardrail blocked the input or output of a call"""

    def __init__(self, guardrail_name: str, message: Optional[str] = None, direction: str = "output"):
        super().__init__(
            message or f"Guardrail '{guardrail_name}' blocked the {direction}",
            code="GUARDRAIL_BLOCKED",
            stage=f"{direction}_guardrail"
        )
        self.guardrail_name = guardrail_name
        self.direction = direction
