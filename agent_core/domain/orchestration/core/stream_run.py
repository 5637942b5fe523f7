from typing import Any, Callable, List, Optional, TYPE_CHECKING
import asyncio
import inspect

from agent_core.domain.guardrail.guardrail import Guardrail, run_output_guardrails
from agent_core.domain.llm.protocol import StreamPart
from agent_core.domain.models.agent_state import FinishReason
from agent_core.domain.models.operation_context import OperationContext
from agent_core.domain.orchestration.core.abort import is_bail
from agent_core.domain.orchestration.core.errors import AbortedError
from agent_core.domain.orchestration.core.hooks import AgentHooks
from agent_core.domain.orchestration.core.options import GenerationOptions
from agent_core.domain.orchestration.core.results import GenerateObjectResult, GenerateTextResult
from agent_core.domain.streaming.guardrail_stream import GuardrailPipeline, accumulated_text, last_object

if TYPE_CHECKING:
    from agent_core.domain.orchestration.core.main_agent import Agent, PreparedExecution


class StreamRun:
    """Terminal phase of one streaming call

    The model collaborator calls `on_finish` or `on_error` once its stream has
    ended. Whichever runs first settles the call: the other is ignored, and
    `completion` carries the final result or the error the caller sees.
    """

    def __init__(
        self,
        agent: "Agent",
        oc: OperationContext,
        hooks: AgentHooks,
        options: GenerationOptions,
        prepared: "PreparedExecution",
        llm_span: Any,
        output_guardrails: List[Guardrail],
        abort_listener: Callable,
        started: float,
        operation: str,
        object_mode: bool = False
    ):
        self.agent = agent
        self.oc = oc
        self.hooks = hooks
        self.options = options
        self.prepared = prepared
        self.llm_span = llm_span
        self.output_guardrails = output_guardrails
        self.abort_listener = abort_listener
        self.started = started
        self.operation = operation
        self.object_mode = object_mode

        self.model_stream: Any = None
        self.pipeline: Optional[GuardrailPipeline] = None
        self.completion: asyncio.Future = asyncio.get_running_loop().create_future()

        self._settled = False
        self._span_open = True
        self._driver: Optional[asyncio.Task] = None

    def attach(self, model_stream: Any):
        self.model_stream = model_stream
        if not self.output_guardrails:
            return

        self.pipeline = GuardrailPipeline(
            source=model_stream.full_stream,
            run_guardrails=self._check_output,
            abort_signal=self.oc.abort_signal,
            bail_lookup=lambda: self.oc.bailed_result,
            resolve_value=last_object if self.object_mode else accumulated_text,
            channel_size=self.agent.settings.stream_channel_size
        )

    async def _check_output(self, value: Any, finish_part: Optional[StreamPart]) -> Any:
        finish_reason = finish_part.finish_reason if finish_part is not None else None
        if self.oc.bailed_result is not None:
            finish_reason = FinishReason.STOP.value

        return await run_output_guardrails(
            value,
            self.oc,
            self.output_guardrails,
            self.operation,
            self.agent,
            usage=finish_part.usage if finish_part is not None else None,
            finish_reason=finish_reason
        )

    async def wait(self) -> Any:
        """Drive the stream if nobody reads it and wait for the terminal phase"""

        if self._driver is None:
            if self.pipeline is not None:
                self.pipeline.start()
            self._driver = asyncio.ensure_future(self.model_stream.consume_stream())
        return await asyncio.shield(self.completion)

    async def on_finish(self, final: Any):
        if self._settled:
            return
        self._settled = True

        oc = self.oc
        if oc.cancellation_error is not None and oc.bailed_result is None:
            await self._fail(oc.cancellation_error)
            return

        try:
            output = await self._finish(final)
        except Exception as e:
            await self._fail(e)
            return

        self.completion.set_result(output)
        self._release()

    async def on_error(self, error: BaseException):
        if self._settled:
            return
        self._settled = True

        if isinstance(error, AbortedError) and is_bail(error.reason):
            try:
                output = await self._finish(None)
            except Exception as e:
                await self._fail(e)
                return

            self.completion.set_result(output)
            self._release()
            return

        await self._fail(error)

    async def _finish(self, final: Any) -> Any:
        agent = self.agent
        oc = self.oc

        usage = final.usage if final is not None else agent.accumulated_usage(oc)
        finish_reason = final.finish_reason if final is not None else "stop"
        self._end_span(usage=usage, finish_reason=finish_reason)

        await oc.persist_queue.flush(oc.buffer, oc)

        bailed = oc.bailed_result
        if self.pipeline is not None:
            value = await self.pipeline.finalize()
        elif bailed is not None:
            value = bailed.response
        elif self.object_mode:
            value = final.object
        else:
            value = final.text

        if bailed is not None:
            finish_reason = FinishReason.STOP.value

        if self.object_mode:
            schema = self.prepared.schema
            if schema is not None and isinstance(value, dict):
                value = schema.model_validate(value)
            await agent.remember_object(oc, value, usage)
            output = GenerateObjectResult(
                object=value,
                usage=usage,
                finish_reason=finish_reason,
                warnings=list(getattr(final, "warnings", None) or []),
                context=oc.context,
                operation_id=oc.operation_id,
                bailed=bailed is not None
            )
            trace_output = output.object
        else:
            steps = final.steps if final is not None else None
            agent.step_recorder.record_step_results(steps, oc)
            output = GenerateTextResult(
                text=value,
                usage=usage,
                finish_reason=finish_reason,
                steps=agent.recorded_steps(oc),
                warnings=list(getattr(final, "warnings", None) or []),
                context=oc.context,
                operation_id=oc.operation_id,
                bailed=bailed is not None
            )
            trace_output = output.text

        await agent.complete_operation(oc, self.hooks, output, trace_output, self.prepared.max_steps, self.started, self.operation)

        if self.options.on_finish is not None:
            result = self.options.on_finish(output)
            if inspect.isawaitable(result):
                await result

        return output

    async def _fail(self, error: BaseException):
        self._settled = True
        self._end_span(error=error)
        await self.agent.flush_quietly(self.oc)

        try:
            await self.agent.handle_error(error, self.oc, self.hooks)
        except Exception as raised:
            self.completion.set_exception(raised)
        finally:
            self._release()

    def _end_span(self, usage: Any = None, finish_reason: Optional[str] = None, error: Optional[BaseException] = None):
        if not self._span_open:
            return
        self._span_open = False
        self.agent.end_llm_span(self.oc, self.llm_span, usage=usage, finish_reason=finish_reason, error=error)

    def _release(self):
        self.oc.abort_signal.remove_listener(self.abort_listener)
        self.oc.trace_context.flush()
