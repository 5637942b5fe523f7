from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type, Union
import asyncio
import inspect
import json
import time

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langfuse import Langfuse
from pydantic import BaseModel

from agent_core.domain.context.memory.memory_manager import MemoryManager
from agent_core.domain.context.memory.protocol import Memory
from agent_core.domain.context.operation_context_factory import OperationContextFactory
from agent_core.domain.guardrail.guardrail import Guardrail, run_input_guardrails, run_output_guardrails
from agent_core.domain.llm.protocol import LanguageModel, ModelRequest, PreparedTool, StepResult
from agent_core.domain.models.agent_state import AgentState, BailedResult, FinishReason, UsageInfo
from agent_core.domain.models.operation_context import BAILED_RESULT_KEY, STEP_RESULTS_KEY, OperationContext
from agent_core.domain.orchestration.core.abort import AbortReason, Bailed, is_bail
from agent_core.domain.orchestration.core.errors import AbortedError, CancellationError
from agent_core.domain.orchestration.core.hooks import AgentHooks, merge_hooks
from agent_core.domain.orchestration.core.options import GenerationOptions
from agent_core.domain.orchestration.core.registry import AgentRegistry
from agent_core.domain.orchestration.core.results import (
    GenerateObjectResult,
    GenerateTextResult,
    StreamObjectResult,
    StreamTextResult,
)
from agent_core.domain.orchestration.core.step_recorder import StepRecorder
from agent_core.domain.orchestration.core.stream_run import StreamRun
from agent_core.domain.orchestration.subagent.subagent_manager import SubAgentManager
from agent_core.domain.tool.tool import Tool, ToolExecutionContext, Toolkit
from agent_core.domain.tool.tool_executor import ToolExecutionWrapper
from agent_core.domain.tool.tool_registry import ToolManager
from agent_core.infrastructure.config.settings import AgentSettings, get_settings
from agent_core.infrastructure.observability.langfuse_tracing import build_langfuse_client, message_summaries
from agent_core.infrastructure.observability.logging import agent_logger, metrics

TERMINAL_HOOKS_KEY = "terminal_hooks_called"
STARTED_KEY = "start_hooks_called"
BAIL_FINISH_REASON = FinishReason.STOP.value

AgentInput = Union[str, BaseMessage, List[BaseMessage]]
ToolItems = List[Union[Tool, Toolkit]]


@dataclass
class PreparedExecution:
    """Model, messages and tools resolved for one call"""
    model: LanguageModel
    messages: List[BaseMessage]
    tools: Dict[str, PreparedTool]
    instructions: str
    max_steps: int
    schema: Optional[Type[BaseModel]] = None


def _input_messages(input: AgentInput) -> List[BaseMessage]:
    if isinstance(input, str):
        return [HumanMessage(content=input)]
    if isinstance(input, BaseMessage):
        return [input]
    if isinstance(input, list) and all(isinstance(message, BaseMessage) for message in input):
        return list(input)
    raise TypeError(f"Unsupported agent input: {type(input).__name__}")


def _hook_messages(result: Any, default: List[BaseMessage]) -> List[BaseMessage]:
    if result is None:
        return default
    if isinstance(result, dict):
        return list(result.get("messages", default))
    return list(result)


async def _resolve_dynamic(value: Any, oc: OperationContext) -> Any:
    if callable(value):
        value = value(context=oc.context)
        if inspect.isawaitable(value):
            value = await value
    return value


def _find_bail(step: StepResult) -> Optional[Dict[str, Any]]:
    for result in step.tool_results:
        if not isinstance(result.output, list):
            continue
        for item in result.output:
            if isinstance(item, dict) and item.get("bailed") is True:
                return item
    return None


class Agent:
    """LLM agent: instructions, tools, guardrails, memory and sub-agents around a model

    Every entry point creates its own OperationContext. Delegated calls share
    the parent's context map, step list and abort controller, so cancelling a
    supervisor cancels the whole chain and a sub-agent can end it with a bail.
    """

    def __init__(
        self,
        name: str,
        instructions: Union[str, Callable[..., Any]],
        model: Union[LanguageModel, Callable[..., Any]],
        id: Optional[str] = None,
        purpose: Optional[str] = None,
        tools: Union[ToolItems, Callable[..., Any], None] = None,
        sub_agents: Optional[List["Agent"]] = None,
        memory: Optional[Memory] = None,
        hooks: Optional[AgentHooks] = None,
        input_guardrails: Optional[List[Guardrail]] = None,
        output_guardrails: Optional[List[Guardrail]] = None,
        context: Optional[Dict[Any, Any]] = None,
        max_steps: Optional[int] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        tracer: Optional[Langfuse] = None,
        registry: Optional[AgentRegistry] = None,
        settings: Optional[AgentSettings] = None
    ):
        self.id = id or name
        self.name = name
        self.instructions = instructions
        self.purpose = purpose
        self.hooks = hooks or AgentHooks()
        self.input_guardrails = list(input_guardrails or [])
        self.output_guardrails = list(output_guardrails or [])
        self.max_steps = max_steps
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.settings = settings or get_settings()
        self.tracer = tracer or build_langfuse_client(self.settings)
        self.registry = registry
        self._model = model

        self._dynamic_tools: Optional[Callable[..., Any]] = None
        if callable(tools):
            self._dynamic_tools = tools
            tools = None
        self.tool_manager = ToolManager(tools or [])

        self.memory_manager = MemoryManager(
            memory,
            agent_id=self.id,
            agent_name=self.name,
            history_limit=self.settings.memory_history_limit
        )
        self.step_recorder = StepRecorder(self.memory_manager)
        self.sub_agent_manager = SubAgentManager(self, sub_agents, registry=registry)
        self.tool_wrapper = ToolExecutionWrapper(self)
        self.context_factory = OperationContextFactory(
            agent_id=self.id,
            agent_name=self.name,
            tracer=self.tracer,
            memory_manager=self.memory_manager,
            default_context=context,
            persist_debounce_ms=self.settings.memory_persist_debounce_ms
        )

        if registry is not None:
            registry.register_agent(self)

    # Entry points

    async def generate_text(self, input: AgentInput, **options) -> GenerateTextResult:
        """Run the model loop to completion and return the final text"""

        opts = GenerationOptions(**options)
        operation = "generate_text"
        started = time.monotonic()
        oc = self.context_factory.create(input, opts, operation)
        hooks = merge_hooks(self.hooks, opts.hooks)
        listener = self._setup_abort_listener(oc, hooks)

        try:
            input = await run_input_guardrails(input, oc, self.input_guardrails + opts.input_guardrails, operation, self)
            prepared = await self._prepare_execution(input, oc, opts, hooks)
            await self._begin(oc, hooks)

            llm_span = self._start_llm_span(oc, operation, prepared, opts, stream=False)
            try:
                result = await prepared.model.generate_text(
                    self._build_request(prepared, opts, oc, on_step_finish=self._create_step_handler(oc, hooks))
                )
            except Exception as e:
                self.end_llm_span(oc, llm_span, error=e)
                raise
            self.end_llm_span(oc, llm_span, usage=result.usage, finish_reason=result.finish_reason, output=result.text)

            if oc.cancellation_error is not None:
                raise oc.cancellation_error

            self.step_recorder.record_step_results(result.steps, oc)
            await oc.persist_queue.flush(oc.buffer, oc)

            bailed = oc.bailed_result
            text = bailed.response if bailed is not None else result.text
            finish_reason = BAIL_FINISH_REASON if bailed is not None else result.finish_reason
            text = await run_output_guardrails(
                text,
                oc,
                self.output_guardrails + opts.output_guardrails,
                operation,
                self,
                usage=result.usage,
                finish_reason=finish_reason,
                warnings=result.warnings
            )

            output = GenerateTextResult(
                text=text,
                usage=result.usage,
                finish_reason=finish_reason,
                steps=result.steps,
                warnings=result.warnings,
                context=oc.context,
                operation_id=oc.operation_id,
                bailed=bailed is not None
            )
            return await self.complete_operation(oc, hooks, output, output.text, prepared.max_steps, started, operation)

        except Exception as error:
            if isinstance(error, AbortedError) and is_bail(error.reason):
                try:
                    return await self._complete_bailed_text(oc, hooks, opts, started, operation)
                except Exception as e:
                    error = e

            await self.flush_quietly(oc)
            await self.handle_error(error, oc, hooks)

        finally:
            oc.abort_signal.remove_listener(listener)
            await self.flush_quietly(oc)
            oc.trace_context.flush()

    async def stream_text(self, input: AgentInput, **options) -> StreamTextResult:
        """Start the model loop and return live streams plus awaitable results"""

        run = await self._start_stream("stream_text", input, options)
        return StreamTextResult(run)

    async def generate_object(self, input: AgentInput, schema: Type[BaseModel], **options) -> GenerateObjectResult:
        """Ask the model for a structured answer validated against `schema`"""

        opts = GenerationOptions(**options)
        operation = "generate_object"
        started = time.monotonic()
        oc = self.context_factory.create(input, opts, operation)
        hooks = merge_hooks(self.hooks, opts.hooks)
        listener = self._setup_abort_listener(oc, hooks)

        try:
            input = await run_input_guardrails(input, oc, self.input_guardrails + opts.input_guardrails, operation, self)
            prepared = await self._prepare_execution(input, oc, opts, hooks, with_tools=False, schema=schema)
            await self._begin(oc, hooks)

            llm_span = self._start_llm_span(oc, operation, prepared, opts, stream=False)
            try:
                result = await prepared.model.generate_object(self._build_request(prepared, opts, oc))
            except Exception as e:
                self.end_llm_span(oc, llm_span, error=e)
                raise
            self.end_llm_span(oc, llm_span, usage=result.usage, finish_reason=result.finish_reason)

            if oc.cancellation_error is not None:
                raise oc.cancellation_error

            value = await run_output_guardrails(
                result.object,
                oc,
                self.output_guardrails + opts.output_guardrails,
                operation,
                self,
                usage=result.usage,
                finish_reason=result.finish_reason,
                warnings=result.warnings
            )
            await self.remember_object(oc, value, result.usage)

            output = GenerateObjectResult(
                object=value,
                usage=result.usage,
                finish_reason=result.finish_reason,
                warnings=result.warnings,
                context=oc.context,
                operation_id=oc.operation_id
            )
            return await self.complete_operation(oc, hooks, output, value, prepared.max_steps, started, operation)

        except Exception as error:
            await self.flush_quietly(oc)
            await self.handle_error(error, oc, hooks)

        finally:
            oc.abort_signal.remove_listener(listener)
            await self.flush_quietly(oc)
            oc.trace_context.flush()

    async def stream_object(self, input: AgentInput, schema: Type[BaseModel], **options) -> StreamObjectResult:
        """Stream partial objects; `object()` resolves to the validated answer"""

        run = await self._start_stream("stream_object", input, options, schema=schema)
        return StreamObjectResult(run)

    async def _start_stream(
        self,
        operation: str,
        input: AgentInput,
        options: Dict[str, Any],
        schema: Optional[Type[BaseModel]] = None
    ) -> StreamRun:
        opts = GenerationOptions(**options)
        object_mode = schema is not None
        started = time.monotonic()
        oc = self.context_factory.create(input, opts, operation)
        hooks = merge_hooks(self.hooks, opts.hooks)
        listener = self._setup_abort_listener(oc, hooks)

        try:
            input = await run_input_guardrails(input, oc, self.input_guardrails + opts.input_guardrails, operation, self)
            prepared = await self._prepare_execution(
                input, oc, opts, hooks, with_tools=not object_mode, schema=schema
            )
            await self._begin(oc, hooks)

            llm_span = self._start_llm_span(oc, operation, prepared, opts, stream=True)
            run = StreamRun(
                self,
                oc,
                hooks,
                opts,
                prepared,
                llm_span,
                output_guardrails=self.output_guardrails + opts.output_guardrails,
                abort_listener=listener,
                started=started,
                operation=operation,
                object_mode=object_mode
            )
            request = self._build_request(
                prepared,
                opts,
                oc,
                on_step_finish=None if object_mode else self._create_step_handler(oc, hooks),
                on_finish=run.on_finish,
                on_error=run.on_error
            )

            if object_mode:
                run.attach(prepared.model.stream_object(request))
            else:
                run.attach(prepared.model.stream_text(request))
            return run

        except Exception as error:
            oc.abort_signal.remove_listener(listener)
            await self.flush_quietly(oc)
            try:
                await self.handle_error(error, oc, hooks)
            finally:
                oc.trace_context.flush()
            raise

    # Preparation

    async def _prepare_execution(
        self,
        input: AgentInput,
        oc: OperationContext,
        opts: GenerationOptions,
        hooks: AgentHooks,
        with_tools: bool = True,
        schema: Optional[Type[BaseModel]] = None
    ) -> PreparedExecution:
        model = await self._resolve_model(oc)

        history, _ = await self.memory_manager.prepare_conversation_context(
            oc, input, limit=opts.context_limit, semantic=opts.semantic_memory
        )
        input_messages = _input_messages(input)
        oc.buffer.ingest(history, mark_as_context=True)
        oc.buffer.ingest(input_messages)

        conversation = history + input_messages
        conversation = _hook_messages(
            await hooks.call("on_prepare_messages", messages=conversation, agent=self, context=oc),
            conversation
        )

        instructions = await self._build_instructions(oc)
        oc.trace_context.set_instructions(instructions)
        messages = ([SystemMessage(content=instructions)] if instructions else []) + conversation
        messages = _hook_messages(
            await hooks.call("on_prepare_model_messages", messages=messages, agent=self, context=oc),
            messages
        )

        tools = await self._prepare_tools(oc, opts, hooks) if with_tools else {}

        oc.logger.debug(
            "Execution prepared",
            history_count=len(history),
            message_count=len(messages),
            tools=sorted(tools)
        )
        return PreparedExecution(
            model=model,
            messages=messages,
            tools=tools,
            instructions=instructions,
            max_steps=self._max_steps_for(opts),
            schema=schema
        )

    async def _resolve_model(self, oc: OperationContext) -> LanguageModel:
        if hasattr(self._model, "generate_text"):
            return self._model
        return await _resolve_dynamic(self._model, oc)

    async def _build_instructions(self, oc: OperationContext) -> str:
        instructions = await _resolve_dynamic(self.instructions, oc) or ""

        toolkit_instructions = self.tool_manager.get_toolkit_instructions()
        if toolkit_instructions:
            instructions = f"{instructions}\n\n{toolkit_instructions}" if instructions else toolkit_instructions

        return self.sub_agent_manager.generate_supervisor_system_message(instructions)

    async def _prepare_tools(
        self,
        oc: OperationContext,
        opts: GenerationOptions,
        hooks: AgentHooks
    ) -> Dict[str, PreparedTool]:
        """Static, dynamic and runtime tools plus delegation and working memory"""

        extra: List[Tool] = []
        if self._dynamic_tools is not None:
            extra.extend(await _resolve_dynamic(self._dynamic_tools, oc) or [])
        extra.extend(opts.tools)
        if self.sub_agent_manager.has_sub_agents():
            extra.append(self.sub_agent_manager.create_delegate_tool(hooks))
        extra.extend(self.memory_manager.create_working_memory_tools())

        return self.tool_manager.prepare_tools_for_execution(
            lambda tool: self.tool_wrapper.create_execute(tool, oc, hooks),
            extra
        )

    def _max_steps_for(self, opts: GenerationOptions) -> int:
        if opts.max_steps:
            return opts.max_steps
        if self.max_steps:
            return self.max_steps

        default = self.settings.default_max_steps
        if self.sub_agent_manager.has_sub_agents():
            return default * (len(self.sub_agent_manager.sub_agents) + 1)
        return default

    def _build_request(
        self,
        prepared: PreparedExecution,
        opts: GenerationOptions,
        oc: OperationContext,
        on_step_finish: Optional[Callable] = None,
        on_finish: Optional[Callable] = None,
        on_error: Optional[Callable] = None
    ) -> ModelRequest:
        return ModelRequest(
            messages=prepared.messages,
            tools=prepared.tools,
            temperature=opts.temperature if opts.temperature is not None else self.temperature,
            max_output_tokens=opts.max_output_tokens or self.max_output_tokens,
            top_p=opts.top_p,
            stop_sequences=opts.stop_sequences,
            max_steps=prepared.max_steps,
            stop_when=opts.stop_when,
            abort_signal=oc.abort_signal,
            on_step_finish=on_step_finish,
            on_finish=on_finish,
            on_error=on_error,
            schema=prepared.schema,
            provider_options=opts.provider_options
        )

    # Per-step handling

    def _create_step_handler(self, oc: OperationContext, hooks: AgentHooks) -> Callable:
        async def on_step_finish(step: StepResult):
            oc.system_context.setdefault(STEP_RESULTS_KEY, []).append(step)
            step_index = len(oc.system_context[STEP_RESULTS_KEY]) - 1

            if step.text:
                agent_logger.log_step(oc.operation_id, self.name, "text", {"step_index": step_index, "length": len(step.text)})
            for call in step.tool_calls:
                agent_logger.log_step(oc.operation_id, self.name, "tool_call", {"step_index": step_index, "tool_name": call.tool_name})
            for result in step.tool_results:
                agent_logger.log_step(oc.operation_id, self.name, "tool_result", {"step_index": step_index, "tool_name": result.tool_name})

            oc.buffer.add_model_messages(step.response_messages)
            oc.persist_queue.schedule_save(oc.buffer, oc)

            bail = _find_bail(step)
            if bail is not None:
                bailed = BailedResult(
                    agent_name=bail.get("agent_name") or "unknown",
                    response=str(bail.get("response") or "")
                )
                oc.system_context[BAILED_RESULT_KEY] = bailed
                oc.logger.info("Sub-agent bailed, ending the call chain", sub_agent=bailed.agent_name)
                agent_logger.log_agent_event("bailed", self.name, oc.operation_id, {"sub_agent": bailed.agent_name})
                oc.abort_controller.abort(Bailed(agent_name=bailed.agent_name, response=bailed.response))
                return

            self.step_recorder.record_step_results(None, oc)
            await hooks.call("on_step_finish", agent=self, step=step, context=oc)

        return on_step_finish

    # Termination

    def _setup_abort_listener(self, oc: OperationContext, hooks: AgentHooks) -> Callable[[AbortReason], None]:
        def on_abort(reason: AbortReason):
            oc.is_active = False

            if is_bail(reason):
                oc.trace_context.set_attributes({
                    "agent.bailed": True,
                    "agent.bailed.sub_agent": reason.agent_name,
                })
                return

            if oc.cancellation_error is None:
                error = CancellationError(reason.message or "Operation cancelled", reason=reason.reason)
                if isinstance(reason.reason, BaseException):
                    error.__cause__ = reason.reason
                oc.cancellation_error = error

            oc.logger.warning("Operation cancelled", reason=oc.cancellation_error.message)
            metrics.increment_counter("operations.cancelled", tags={"agent": self.name})
            oc.trace_context.end("cancelled", error=oc.cancellation_error, attributes={"agent.cancelled": True})
            # before on_start, the failure path reports the cancellation
            if oc.system_context.get(STARTED_KEY):
                oc.track(asyncio.ensure_future(self._notify_cancelled(oc, hooks)))

        oc.abort_signal.add_listener(on_abort)
        return on_abort

    async def _begin(self, oc: OperationContext, hooks: AgentHooks):
        """on_start, unless the call was cancelled while it was being prepared"""

        if oc.cancellation_error is None:
            await hooks.call("on_start", agent=self, context=oc)
        oc.system_context[STARTED_KEY] = True

        if oc.cancellation_error is not None:
            raise oc.cancellation_error

    async def _notify_cancelled(self, oc: OperationContext, hooks: AgentHooks):
        try:
            await self._dispatch_terminal(oc, hooks, output=None, error=oc.cancellation_error)
        except Exception as e:
            oc.logger.error("on_end hook failed after cancellation", error=str(e))

    async def _dispatch_terminal(
        self,
        oc: OperationContext,
        hooks: AgentHooks,
        output: Any = None,
        error: Optional[BaseException] = None,
        notify_error: bool = False
    ):
        """on_end (and on_error for failures), at most once per operation"""

        if oc.system_context.get(TERMINAL_HOOKS_KEY):
            return
        oc.system_context[TERMINAL_HOOKS_KEY] = True

        await hooks.call(
            "on_end",
            agent=self,
            output=output,
            error=error,
            conversation_id=oc.conversation_id,
            context=oc
        )
        if notify_error and error is not None:
            await hooks.call("on_error", agent=self, error=error, context=oc)

    async def complete_operation(
        self,
        oc: OperationContext,
        hooks: AgentHooks,
        output: Any,
        trace_output: Any,
        max_steps: int,
        started: float,
        operation: str
    ) -> Any:
        """Success terminal phase shared by every entry point"""

        oc.output = trace_output
        trace = oc.trace_context
        trace.set_output(trace_output.model_dump() if isinstance(trace_output, BaseModel) else trace_output)
        trace.set_usage(output.usage)
        trace.set_finish_reason(output.finish_reason)
        trace.set_stop_condition_met(len(getattr(output, "steps", []) or []), max_steps)

        await self._dispatch_terminal(oc, hooks, output=output)
        trace.end("completed", attributes={"agent.bailed": output.bailed} if output.bailed else None)

        duration_ms = (time.monotonic() - started) * 1000
        metrics.record_latency(operation, duration_ms, tags={"agent": self.name})
        oc.logger.info(
            "Operation completed",
            operation=operation,
            finish_reason=output.finish_reason,
            bailed=output.bailed,
            duration_ms=round(duration_ms, 2)
        )
        return output

    async def _complete_bailed_text(
        self,
        oc: OperationContext,
        hooks: AgentHooks,
        opts: GenerationOptions,
        started: float,
        operation: str
    ) -> GenerateTextResult:
        bailed = oc.bailed_result
        self.step_recorder.record_step_results(None, oc)
        await self.flush_quietly(oc)

        usage = self.accumulated_usage(oc)
        text = await run_output_guardrails(
            bailed.response,
            oc,
            self.output_guardrails + opts.output_guardrails,
            operation,
            self,
            usage=usage,
            finish_reason=BAIL_FINISH_REASON
        )

        output = GenerateTextResult(
            text=text,
            usage=usage,
            finish_reason=BAIL_FINISH_REASON,
            steps=self.recorded_steps(oc),
            context=oc.context,
            operation_id=oc.operation_id,
            bailed=True
        )
        return await self.complete_operation(oc, hooks, output, output.text, self._max_steps_for(opts), started, operation)

    async def handle_error(self, error: BaseException, oc: OperationContext, hooks: AgentHooks):
        """Failure terminal phase; always raises"""

        if not oc.is_active and oc.cancellation_error is not None:
            await oc.wait_for_pending()
            await self._notify_cancelled(oc, hooks)
            if error is oc.cancellation_error:
                raise error
            raise oc.cancellation_error from error

        oc.trace_context.end("error", error=error)
        oc.logger.error(
            "Operation failed",
            error=str(error),
            error_type=type(error).__name__,
            stage=getattr(error, "stage", None)
        )
        metrics.increment_counter("operations.failed", tags={"agent": self.name})

        try:
            await self._dispatch_terminal(oc, hooks, error=error, notify_error=True)
        except Exception as hook_error:
            oc.logger.error("Error hooks failed", error=str(hook_error))

        raise error

    async def flush_quietly(self, oc: OperationContext):
        try:
            await oc.persist_queue.flush(oc.buffer, oc)
        except Exception as e:
            oc.logger.debug("Flush after failure did not complete", error=str(e))

    # Shared helpers

    def _llm_span_attributes(self, operation: str, prepared: PreparedExecution, opts: GenerationOptions, stream: bool) -> Dict[str, Any]:
        return {
            "llm.operation": operation,
            "llm.stream": stream,
            "llm.messages.count": len(prepared.messages),
            "llm.tools": sorted(prepared.tools),
            "llm.tools.count": len(prepared.tools),
            "llm.stop": opts.stop_sequences,
            "llm.provider_options": opts.provider_options or None,
        }

    def _start_llm_span(self, oc: OperationContext, operation: str, prepared: PreparedExecution, opts: GenerationOptions, stream: bool):
        return oc.trace_context.create_generation(
            f"llm:{operation}",
            model=self.get_model_name(prepared.model),
            input=message_summaries(prepared.messages),
            model_parameters={
                "temperature": opts.temperature if opts.temperature is not None else self.temperature,
                "max_output_tokens": opts.max_output_tokens or self.max_output_tokens,
                "top_p": opts.top_p,
                "max_steps": prepared.max_steps,
            },
            attributes=self._llm_span_attributes(operation, prepared, opts, stream)
        )

    def end_llm_span(
        self,
        oc: OperationContext,
        span: Any,
        usage: Optional[UsageInfo] = None,
        finish_reason: Optional[str] = None,
        output: Any = None,
        error: Optional[BaseException] = None
    ):
        if isinstance(error, AbortedError) and is_bail(error.reason):
            error = None
            finish_reason = BAIL_FINISH_REASON

        if usage is not None:
            span.update(usage_details={
                "input": usage.prompt_tokens,
                "output": usage.completion_tokens,
                "total": usage.total_tokens,
            })

        oc.trace_context.end_child_span(
            span,
            "error" if error is not None else "completed",
            output=output,
            error=error,
            attributes={"llm.finish_reason": finish_reason} if finish_reason else None
        )

    def accumulated_usage(self, oc: OperationContext) -> UsageInfo:
        usage = UsageInfo()
        for step in oc.system_context.get(STEP_RESULTS_KEY, []):
            usage = usage + step.usage
        return usage

    def recorded_steps(self, oc: OperationContext) -> List[StepResult]:
        return list(oc.system_context.get(STEP_RESULTS_KEY, []))

    async def remember_object(self, oc: OperationContext, value: Any, usage: Optional[UsageInfo]):
        """Keep a structured answer in history as an assistant message"""

        raw = value.model_dump() if isinstance(value, BaseModel) else value
        content = json.dumps(raw, default=str)

        message = AIMessage(content=content)
        oc.buffer.add_model_messages([message])
        self.step_recorder.record_step_results(
            [StepResult(text=content, usage=usage, response_messages=[message])], oc
        )
        await oc.persist_queue.flush(oc.buffer, oc)

    # Management

    def to_tool(self, name: Optional[str] = None, description: Optional[str] = None) -> Tool:
        """Expose this agent as a tool other agents can call"""

        async def execute(args: Dict[str, Any], ctx: ToolExecutionContext) -> str:
            oc = ctx.operation_context
            metadata = oc.agent_metadata
            result = await self.generate_text(
                args["prompt"],
                parent_operation_context=oc,
                parent_agent_id=metadata.agent_id if metadata is not None else None,
                parent_span=ctx.span
            )
            return result.text

        return Tool(
            name=name or f"{self.id}_tool",
            description=description or self.purpose or f"Ask the {self.name} agent",
            parameters={
                "type": "object",
                "properties": {
                    "prompt": {"type": "string", "description": f"Request for the {self.name} agent"}
                },
                "required": ["prompt"]
            },
            execute=execute
        )

    def add_tools(self, items: ToolItems):
        self.tool_manager.add_items(items)

    def remove_tools(self, names: List[str]):
        for tool_name in names:
            self.tool_manager.remove_tool(tool_name)

    def get_tools(self) -> List[Tool]:
        return self.tool_manager.get_tools()

    def add_sub_agent(self, agent: "Agent"):
        self.sub_agent_manager.add_sub_agent(agent)

    def remove_sub_agent(self, agent_id: str) -> bool:
        return self.sub_agent_manager.remove_sub_agent(agent_id)

    def get_model_name(self, model: Any = None) -> str:
        model = model or self._model
        model_id = getattr(model, "model_id", None)
        if model_id:
            return model_id
        return "dynamic" if callable(model) else type(model).__name__

    def get_full_state(self) -> AgentState:
        """Snapshot of the agent's configuration"""

        return AgentState(
            id=self.id,
            name=self.name,
            purpose=self.purpose,
            instructions=self.instructions if isinstance(self.instructions, str) else None,
            model=self.get_model_name(),
            node_id=f"agent_{self.id}",
            tools=[tool.get_info() for tool in self.tool_manager.get_tools()],
            sub_agents=[agent.get_full_state().model_dump() for agent in self.sub_agent_manager.get_sub_agents()],
            memory={
                "enabled": self.memory_manager.enabled,
                "vector_support": self.memory_manager.has_vector_support(),
                "working_memory_support": self.memory_manager.has_working_memory_support(),
            },
            guardrails={
                "input": [guardrail.name for guardrail in self.input_guardrails],
                "output": [guardrail.name for guardrail in self.output_guardrails],
            }
        )

    def __repr__(self) -> str:
        return f"Agent(id={self.id!r}, name={self.name!r})"
