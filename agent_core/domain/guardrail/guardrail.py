from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import inspect

from pydantic import BaseModel, Field

from agent_core.domain.models.agent_state import UsageInfo
from agent_core.domain.models.operation_context import OperationContext
from agent_core.domain.orchestration.core.errors import GuardrailRejectedError


class GuardrailAction(str, Enum):
    """What a guardrail decided"""
    ALLOW = "allow"
    MODIFY = "modify"
    BLOCK = "block"


class GuardrailResult(BaseModel):
    """Verdict of one guardrail on one value"""
    passed: bool = Field(default=True)
    action: GuardrailAction = Field(default=GuardrailAction.ALLOW)
    modified_output: Any = Field(None, description="Replacement value when action is modify")
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class GuardrailContext:
    """Everything a guardrail may inspect besides the value"""
    agent: Any
    operation_context: OperationContext
    operation: str
    direction: str
    usage: Optional[UsageInfo] = None
    finish_reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def context(self) -> Dict[Any, Any]:
        return self.operation_context.context


GuardrailHandler = Callable[[Any, GuardrailContext], Union[GuardrailResult, Dict[str, Any], bool, None, Awaitable[Any]]]


@dataclass
class Guardrail:
    name: str
    handler: GuardrailHandler
    description: str = ""
    tags: List[str] = field(default_factory=list)


def create_input_guardrail(name: str, handler: GuardrailHandler, description: str = "") -> Guardrail:
    return Guardrail(name=name, handler=handler, description=description, tags=["input"])


def create_output_guardrail(name: str, handler: GuardrailHandler, description: str = "") -> Guardrail:
    return Guardrail(name=name, handler=handler, description=description, tags=["output"])


def _normalize_result(raw: Any) -> GuardrailResult:
    if raw is None:
        return GuardrailResult()
    if isinstance(raw, GuardrailResult):
        return raw
    if isinstance(raw, bool):
        return GuardrailResult(passed=raw, action=GuardrailAction.ALLOW if raw else GuardrailAction.BLOCK)
    if isinstance(raw, dict):
        return GuardrailResult(**raw)
    raise TypeError(f"Unsupported guardrail result: {type(raw).__name__}")


async def run_guardrails(guardrails: List[Guardrail], value: Any, ctx: GuardrailContext) -> Any:
    """Run guardrails in order; each sees the previous one's output"""

    oc = ctx.operation_context
    current = value

    for guardrail in guardrails:
        span = oc.trace_context.create_child_span(
            f"guardrail:{guardrail.name}",
            "guardrail",
            input=current,
            attributes={"guardrail.direction": ctx.direction, "guardrail.operation": ctx.operation}
        )

        try:
            raw = guardrail.handler(current, ctx)
            if inspect.isawaitable(raw):
                raw = await raw
            result = _normalize_result(raw)
        except Exception as e:
            oc.trace_context.end_child_span(span, "error", error=e)
            raise

        if not result.passed or result.action == GuardrailAction.BLOCK:
            error = GuardrailRejectedError(guardrail.name, result.message, direction=ctx.direction)
            oc.trace_context.end_child_span(span, "blocked", error=error, attributes={"guardrail.action": "block"})
            oc.logger.warning(
                "Guardrail blocked value",
                guardrail=guardrail.name,
                direction=ctx.direction,
                reason=result.message
            )
            raise error

        if result.action == GuardrailAction.MODIFY:
            oc.logger.debug("Guardrail modified value", guardrail=guardrail.name, direction=ctx.direction)
            current = result.modified_output

        oc.trace_context.end_child_span(span, "completed", output=current, attributes={"guardrail.action": result.action.value})

    return current


async def run_input_guardrails(
    value: Any,
    oc: OperationContext,
    guardrails: List[Guardrail],
    operation: str,
    agent: Any
) -> Any:
    if not guardrails:
        return value

    ctx = GuardrailContext(agent=agent, operation_context=oc, operation=operation, direction="input")
    return await run_guardrails(guardrails, value, ctx)


async def run_output_guardrails(
    value: Any,
    oc: OperationContext,
    guardrails: List[Guardrail],
    operation: str,
    agent: Any,
    usage: Optional[UsageInfo] = None,
    finish_reason: Optional[str] = None,
    warnings: Optional[List[str]] = None
) -> Any:
    if not guardrails:
        return value

    ctx = GuardrailContext(
        agent=agent,
        operation_context=oc,
        operation=operation,
        direction="output",
        usage=usage,
        finish_reason=finish_reason,
        warnings=list(warnings or [])
    )
    return await run_guardrails(guardrails, value, ctx)
