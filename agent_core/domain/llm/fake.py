"""Scripted language model

Replays a fixed script instead of calling a provider, while honouring the
full model collaborator contract: multi-step tool loop, step callbacks,
abort handling and streaming. Used by the test suite and for local runs.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union
import asyncio
import json
import re
import uuid

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage

from agent_core.domain.llm.protocol import (
    ModelRequest,
    ObjectGenerationResult,
    StepResult,
    StreamPart,
    TextGenerationResult,
    ToolCall,
    ToolCallOptions,
    ToolResult,
)
from agent_core.domain.models.agent_state import UsageInfo
from agent_core.domain.orchestration.core.abort import AbortSignal
from agent_core.domain.orchestration.core.errors import AbortedError
from agent_core.domain.streaming.stream_channel import StreamChannel


@dataclass
class ScriptedToolCall:
    tool_name: str
    args: Dict[str, Any] = field(default_factory=dict)
    tool_call_id: Optional[str] = None


@dataclass
class ScriptedStep:
    """What the model produces in one step"""
    text: str = ""
    tool_calls: List[ScriptedToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: UsageInfo = field(default_factory=lambda: UsageInfo(prompt_tokens=10, completion_tokens=5, total_tokens=15))
    object: Any = None
    delay: float = 0.0
    error: Optional[BaseException] = None


@dataclass
class ScriptedResponse:
    """Steps consumed by a single model call"""
    steps: List[ScriptedStep] = field(default_factory=list)


ScriptEntry = Union[ScriptedResponse, List[ScriptedStep], ScriptedStep, str]

Emit = Optional[Callable[[StreamPart], Awaitable[None]]]


def _split_chunks(text: str) -> List[str]:
    return re.findall(r"\S+\s*|\s+", text)


def _tool_message_content(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, default=str)


class ScriptedModel:
    """Language model that replays scripted responses in order"""

    def __init__(self, responses: Sequence[ScriptEntry], model_id: str = "scripted-model"):
        self.model_id = model_id
        self._responses = [self._normalize(entry) for entry in responses]
        self._index = 0
        self.requests: List[ModelRequest] = []

    @staticmethod
    def _normalize(entry: ScriptEntry) -> ScriptedResponse:
        if isinstance(entry, ScriptedResponse):
            return entry
        if isinstance(entry, ScriptedStep):
            return ScriptedResponse(steps=[entry])
        if isinstance(entry, str):
            return ScriptedResponse(steps=[ScriptedStep(text=entry)])
        return ScriptedResponse(steps=list(entry))

    def _next_response(self, request: ModelRequest) -> ScriptedResponse:
        if self._index >= len(self._responses):
            raise ValueError("ScriptedModel has no responses left")

        self.requests.append(request)
        response = self._responses[self._index]
        self._index += 1
        return response

    async def generate_text(self, request: ModelRequest) -> TextGenerationResult:
        return await self._run_steps(request, self._next_response(request), emit=None)

    def stream_text(self, request: ModelRequest) -> "ScriptedStreamResult":
        response = self._next_response(request)
        return ScriptedStreamResult(request, lambda emit: self._run_steps(request, response, emit))

    async def generate_object(self, request: ModelRequest) -> ObjectGenerationResult:
        response = self._next_response(request)
        return await self._run_object(request, response, emit=None)

    def stream_object(self, request: ModelRequest) -> "ScriptedStreamResult":
        response = self._next_response(request)
        return ScriptedStreamResult(request, lambda emit: self._run_object(request, response, emit))

    async def _run_steps(self, request: ModelRequest, response: ScriptedResponse, emit: Emit) -> TextGenerationResult:
        signal = request.abort_signal
        messages: List[BaseMessage] = list(request.messages)
        steps: List[StepResult] = []

        for index, scripted in enumerate(response.steps):
            if index >= request.max_steps:
                break

            await self._before_step(scripted, signal)

            if emit:
                await emit(StreamPart(type="start-step"))
                for chunk in _split_chunks(scripted.text):
                    await emit(StreamPart(type="text-delta", text=chunk))

            calls = [
                ToolCall(
                    tool_call_id=call.tool_call_id or f"call_{uuid.uuid4().hex[:12]}",
                    tool_name=call.tool_name,
                    args=dict(call.args)
                )
                for call in scripted.tool_calls
            ]
            response_messages: List[BaseMessage] = [
                AIMessage(
                    content=scripted.text,
                    tool_calls=[{"name": c.tool_name, "args": c.args, "id": c.tool_call_id} for c in calls]
                )
            ]

            results = []
            for call in calls:
                if emit:
                    await emit(StreamPart(
                        type="tool-call",
                        tool_call_id=call.tool_call_id,
                        tool_name=call.tool_name,
                        args=call.args
                    ))

                output = await self._execute_tool(request, call, messages, signal)
                results.append(ToolResult(
                    tool_call_id=call.tool_call_id,
                    tool_name=call.tool_name,
                    args=call.args,
                    output=output
                ))
                response_messages.append(ToolMessage(
                    content=_tool_message_content(output),
                    tool_call_id=call.tool_call_id,
                    name=call.tool_name
                ))

                if emit:
                    await emit(StreamPart(
                        type="tool-result",
                        tool_call_id=call.tool_call_id,
                        tool_name=call.tool_name,
                        args=call.args,
                        output=output
                    ))

            step = StepResult(
                text=scripted.text,
                tool_calls=calls,
                tool_results=results,
                finish_reason=scripted.finish_reason or ("tool-calls" if calls else "stop"),
                usage=scripted.usage,
                response_messages=response_messages
            )
            steps.append(step)
            messages.extend(response_messages)

            if emit:
                await emit(StreamPart(type="finish-step", finish_reason=step.finish_reason, usage=step.usage))

            if request.on_step_finish:
                await request.on_step_finish(step)

            if signal is not None:
                signal.throw_if_aborted()

            if not calls:
                break
            if request.stop_when and request.stop_when(steps):
                break

        usage = UsageInfo()
        for step in steps:
            usage = usage + step.usage

        last = steps[-1] if steps else StepResult()
        return TextGenerationResult(
            text=last.text,
            steps=steps,
            usage=usage,
            finish_reason=last.finish_reason,
            response_messages=[m for step in steps for m in step.response_messages]
        )

    async def _run_object(self, request: ModelRequest, response: ScriptedResponse, emit: Emit) -> ObjectGenerationResult:
        scripted = response.steps[0] if response.steps else ScriptedStep()
        await self._before_step(scripted, request.abort_signal)

        value = scripted.object
        if request.schema is not None and isinstance(value, dict):
            value = request.schema.model_validate(value)

        if emit:
            raw = value.model_dump() if hasattr(value, "model_dump") else value
            if isinstance(raw, dict):
                partial: Dict[str, Any] = {}
                for key, item in raw.items():
                    partial[key] = item
                    await emit(StreamPart(type="object", object=dict(partial)))
            else:
                await emit(StreamPart(type="object", object=raw))
            await emit(StreamPart(type="text-delta", text=json.dumps(raw, default=str)))

        return ObjectGenerationResult(object=value, usage=scripted.usage, finish_reason=scripted.finish_reason or "stop")

    @staticmethod
    async def _before_step(scripted: ScriptedStep, signal: Optional[AbortSignal]):
        if signal is not None:
            signal.throw_if_aborted()
            if scripted.delay:
                await signal.race(asyncio.sleep(scripted.delay))
        elif scripted.delay:
            await asyncio.sleep(scripted.delay)

        if scripted.error is not None:
            raise scripted.error

    @staticmethod
    async def _execute_tool(
        request: ModelRequest,
        call: ToolCall,
        messages: List[BaseMessage],
        signal: Optional[AbortSignal]
    ) -> Any:
        tool = request.tools.get(call.tool_name)
        if tool is None:
            return {"error": True, "message": f"Tool '{call.tool_name}' is not available"}

        options = ToolCallOptions(tool_call_id=call.tool_call_id, messages=list(messages), abort_signal=signal)
        if signal is not None:
            return await signal.race(tool.execute(call.args, options))
        return await tool.execute(call.args, options)


class ScriptedStreamResult:
    """Streaming handle backed by a replaying channel"""

    def __init__(
        self,
        request: ModelRequest,
        run: Callable[[Callable[[StreamPart], Awaitable[None]]], Awaitable[Any]]
    ):
        self._request = request
        self._run = run
        self._channel: StreamChannel[StreamPart] = StreamChannel(maxsize=0)
        self._task: Optional[asyncio.Task] = None

        loop = asyncio.get_running_loop()
        self._result: asyncio.Future = loop.create_future()

    def _start(self):
        if self._task is None:
            self._task = asyncio.ensure_future(self._produce())

    async def _produce(self):
        try:
            result = await self._run(self._channel.publish)
        except AbortedError as e:
            await self._channel.close(error=e)
            await self._fail(e)
            return
        except Exception as e:
            await self._channel.publish(StreamPart(type="error", error=e))
            await self._channel.close()
            await self._fail(e)
            return

        await self._channel.publish(StreamPart(type="finish", finish_reason=result.finish_reason, usage=result.usage))
        await self._channel.close()

        if self._request.on_finish:
            try:
                await self._request.on_finish(result)
            except Exception as e:
                self._result.set_exception(e)
                return

        self._result.set_result(result)

    async def _fail(self, error: BaseException):
        if self._request.on_error:
            await self._request.on_error(error)
        self._result.set_exception(error)

    @property
    def full_stream(self):
        self._start()
        return self._channel.subscribe()

    @property
    def text_stream(self):
        self._start()
        return self._text_deltas()

    @property
    def partial_object_stream(self):
        self._start()
        return self._objects()

    async def _text_deltas(self):
        async for part in self._channel.subscribe():
            if part.type == "text-delta":
                yield part.text

    async def _objects(self):
        async for part in self._channel.subscribe():
            if part.type == "object":
                yield part.object

    async def _final(self):
        self._start()
        return await asyncio.shield(self._result)

    async def text(self) -> str:
        result = await self._final()
        return getattr(result, "text", "")

    async def object(self) -> Any:
        result = await self._final()
        return result.object

    async def usage(self) -> Optional[UsageInfo]:
        result = await self._final()
        return result.usage

    async def finish_reason(self) -> str:
        result = await self._final()
        return result.finish_reason

    async def consume_stream(self):
        self._start()
        await asyncio.wait({self._task})
