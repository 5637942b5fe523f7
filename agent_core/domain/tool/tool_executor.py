# Execution with hooks, tracing & error containment
from typing import Any, Awaitable, Callable, Dict, Optional
import inspect
import time
import uuid

from agent_core.domain.llm.protocol import ToolCallOptions
from agent_core.domain.models.operation_context import OperationContext
from agent_core.domain.orchestration.core.errors import ToolDeniedError, ToolParameterError
from agent_core.domain.orchestration.core.hooks import AgentHooks
from agent_core.domain.tool.error_utils import build_tool_error_result
from agent_core.domain.tool.tool import Tool, ToolExecutionContext
from agent_core.domain.tool.tool_validator import ToolParameterValidator, validate_tool_output
from agent_core.infrastructure.observability.logging import agent_logger, metrics


class ToolExecutionWrapper:
    """Runs tools for the model loop

    A tool failure never escapes: it is turned into an error payload the model
    can read. A denial from `on_tool_start` additionally aborts the whole call
    chain.
    """

    def __init__(self, agent: Any):
        self.agent = agent

    def create_execute(
        self,
        tool: Tool,
        oc: OperationContext,
        hooks: AgentHooks
    ) -> Callable[[Dict[str, Any], Optional[ToolCallOptions]], Awaitable[Any]]:
        """Bind a tool to an operation"""

        async def execute(args: Dict[str, Any], options: Optional[ToolCallOptions] = None) -> Any:
            return await self.execute_tool(tool, args, options or ToolCallOptions(), oc, hooks)

        return execute

    async def execute_tool(
        self,
        tool: Tool,
        args: Dict[str, Any],
        options: ToolCallOptions,
        oc: OperationContext,
        hooks: AgentHooks
    ) -> Any:
        """Execute a single tool call"""

        tool_call_id = options.tool_call_id or str(uuid.uuid4())
        span = oc.trace_context.create_child_span(
            f"tool.execution:{tool.name}",
            "tool",
            input=args,
            attributes={
                "tool.name": tool.name,
                "tool.call.id": tool_call_id,
                "tool.description": tool.description,
                "tool.parameters": tool.parameters,
            }
        )
        execution_context = ToolExecutionContext(
            operation_context=oc,
            tool_name=tool.name,
            tool_call_id=tool_call_id,
            messages=options.messages,
            abort_signal=options.abort_signal or oc.abort_signal,
            span=span
        )
        started = time.monotonic()

        try:
            await hooks.call(
                "on_tool_start",
                agent=self.agent,
                tool=tool,
                context=oc,
                args=args,
                options=execution_context
            )

            validation = ToolParameterValidator.validate_tool_call(tool, args)
            if not validation.is_valid:
                raise ToolParameterError(tool.name, validation.errors)

            result = tool.execute(args, execution_context)
            if inspect.isawaitable(result):
                result = await oc.abort_signal.race(result)

            validated = validate_tool_output(tool, result)

            oc.trace_context.end_child_span(span, "completed", output=result)
            await hooks.call(
                "on_tool_end",
                agent=self.agent,
                tool=tool,
                output=validated,
                error=None,
                context=oc,
                options=execution_context
            )

            self._record(oc, tool, tool_call_id, args, started, output=result)
            return result

        except Exception as error:
            error_result = build_tool_error_result(error, tool_call_id, tool.name)
            oc.trace_context.end_child_span(span, "error", output=error_result, error=error)

            try:
                await hooks.call(
                    "on_tool_end",
                    agent=self.agent,
                    tool=tool,
                    output=None,
                    error=error,
                    context=oc,
                    options=execution_context
                )
            except Exception:
                oc.logger.error("on_tool_end hook failed", tool_name=tool.name, exc_info=True)

            if isinstance(error, ToolDeniedError):
                oc.logger.warning("Tool execution denied", tool_name=tool.name, reason=error.message)
                oc.abort_controller.abort(error)

            self._record(oc, tool, tool_call_id, args, started, error=error)
            return error_result

    def _record(
        self,
        oc: OperationContext,
        tool: Tool,
        tool_call_id: str,
        args: Dict[str, Any],
        started: float,
        output: Any = None,
        error: Optional[BaseException] = None
    ):
        duration_ms = (time.monotonic() - started) * 1000

        agent_logger.log_tool_execution(
            tool_name=tool.name,
            operation_id=oc.operation_id,
            tool_call_id=tool_call_id,
            input_data=args,
            output_data=output,
            duration_ms=duration_ms,
            success=error is None,
            error=str(error) if error is not None else None
        )
        metrics.record_latency("tool_execution", duration_ms, tags={"tool": tool.name})
