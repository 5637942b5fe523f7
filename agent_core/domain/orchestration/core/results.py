from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, TYPE_CHECKING

from agent_core.domain.llm.protocol import StepResult, StreamPart, ToolCall, ToolResult
from agent_core.domain.models.agent_state import UsageInfo
from agent_core.domain.streaming.streaming_handler import to_ui_stream, with_abort_handling

if TYPE_CHECKING:
    from agent_core.domain.models.operation_context import OperationContext
    from agent_core.domain.orchestration.core.stream_run import StreamRun
    from agent_core.domain.streaming.guardrail_stream import GuardrailPipeline


@dataclass
class GenerateTextResult:
    """Outcome of generate_text; also what on_end receives for text calls"""
    text: str
    usage: Optional[UsageInfo] = None
    finish_reason: str = "stop"
    steps: List[StepResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    context: Dict[Any, Any] = field(default_factory=dict)
    operation_id: Optional[str] = None
    bailed: bool = False

    @property
    def tool_calls(self) -> List[ToolCall]:
        return [call for step in self.steps for call in step.tool_calls]

    @property
    def tool_results(self) -> List[ToolResult]:
        return [result for step in self.steps for result in step.tool_results]


@dataclass
class GenerateObjectResult:
    """Outcome of generate_object"""
    object: Any
    usage: Optional[UsageInfo] = None
    finish_reason: str = "stop"
    warnings: List[str] = field(default_factory=list)
    context: Dict[Any, Any] = field(default_factory=dict)
    operation_id: Optional[str] = None
    bailed: bool = False


class _StreamHandle:
    """Common part of streaming call handles

    Stream properties are live views; the awaitable accessors resolve once the
    call has been finalized (guardrails run, memory flushed, hooks called).
    Awaiting any of them drives the stream when nobody is reading it.
    """

    def __init__(self, run: "StreamRun"):
        self._run = run

    @property
    def operation_context(self) -> "OperationContext":
        return self._run.oc

    @property
    def context(self) -> Dict[Any, Any]:
        return self._run.oc.context

    @property
    def guardrail_pipeline(self) -> Optional["GuardrailPipeline"]:
        return self._run.pipeline

    @property
    def full_stream(self) -> AsyncIterator[StreamPart]:
        if self._run.pipeline is not None:
            return self._run.pipeline.full_stream
        return with_abort_handling(self._run.model_stream.full_stream, self._run.oc.abort_signal)

    def to_ui_message_stream(self) -> AsyncIterator[Dict[str, Any]]:
        """Presentation chunks; with output guardrails they carry the sanitized text"""

        if self._run.pipeline is not None:
            return self._run.pipeline.create_ui_stream()
        return to_ui_stream(self.full_stream)

    async def usage(self) -> Optional[UsageInfo]:
        return (await self._run.wait()).usage

    async def finish_reason(self) -> str:
        return (await self._run.wait()).finish_reason


class StreamTextResult(_StreamHandle):
    """Handle returned by stream_text"""

    @property
    def text_stream(self) -> AsyncIterator[str]:
        if self._run.pipeline is not None:
            return self._run.pipeline.text_stream
        return with_abort_handling(self._run.model_stream.text_stream, self._run.oc.abort_signal)

    async def result(self) -> GenerateTextResult:
        return await self._run.wait()

    async def text(self) -> str:
        return (await self._run.wait()).text


class StreamObjectResult(_StreamHandle):
    """Handle returned by stream_object"""

    @property
    def partial_object_stream(self) -> AsyncIterator[Any]:
        if self._run.pipeline is not None:
            return self._objects(self._run.pipeline.full_stream)
        return with_abort_handling(self._run.model_stream.partial_object_stream, self._run.oc.abort_signal)

    @staticmethod
    async def _objects(parts: AsyncIterator[StreamPart]):
        async for part in parts:
            if part.type == "object":
                yield part.object

    async def result(self) -> GenerateObjectResult:
        return await self._run.wait()

    async def object(self) -> Any:
        return (await self._run.wait()).object
