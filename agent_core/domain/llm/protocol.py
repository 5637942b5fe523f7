from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Type

from langchain_core.messages import BaseMessage
from pydantic import BaseModel

from agent_core.domain.models.agent_state import UsageInfo
from agent_core.domain.orchestration.core.abort import AbortSignal


@dataclass
class ToolCallOptions:
    """Per-invocation data the model loop hands to a prepared tool"""
    tool_call_id: Optional[str] = None
    messages: List[BaseMessage] = field(default_factory=list)
    abort_signal: Optional[AbortSignal] = None


@dataclass
class PreparedTool:
    """Tool as seen by the model: schema plus the wrapped execute function"""
    name: str
    description: str
    parameters: Dict[str, Any]
    execute: Callable[[Dict[str, Any], ToolCallOptions], Awaitable[Any]]


@dataclass
class ToolCall:
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = field(default_factory=dict)
    output: Any = None


@dataclass
class StepResult:
    """One round trip of the model loop"""
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: Optional[UsageInfo] = None
    response_messages: List[BaseMessage] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class TextGenerationResult:
    """Outcome of a text call; also the payload of a stream's on_finish"""
    text: str
    steps: List[StepResult] = field(default_factory=list)
    usage: Optional[UsageInfo] = None
    finish_reason: str = "stop"
    warnings: List[str] = field(default_factory=list)
    response_messages: List[BaseMessage] = field(default_factory=list)

    @property
    def tool_calls(self) -> List[ToolCall]:
        return [call for step in self.steps for call in step.tool_calls]

    @property
    def tool_results(self) -> List[ToolResult]:
        return [result for step in self.steps for result in step.tool_results]


@dataclass
class ObjectGenerationResult:
    object: Any
    usage: Optional[UsageInfo] = None
    finish_reason: str = "stop"
    warnings: List[str] = field(default_factory=list)


@dataclass
class StreamPart:
    """A single event of a model stream

    `type` is one of: start-step, text-delta, tool-call, tool-result,
    object, finish-step, finish, error.
    """
    type: str
    text: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    args: Optional[Dict[str, Any]] = None
    output: Any = None
    object: Any = None
    finish_reason: Optional[str] = None
    usage: Optional[UsageInfo] = None
    error: Optional[BaseException] = None


@dataclass
class ModelRequest:
    """Everything the model collaborator needs for one call

    Callbacks follow a fixed contract: `on_step_finish` is awaited after each
    step and before the next one starts; for streams, `on_finish` is awaited
    after the stream has ended and before `text()` resolves, and `on_error`
    replaces `on_finish` when the call fails or is aborted. Awaits interrupted
    by `abort_signal` raise `AbortedError` carrying the signal's reason.
    """
    messages: List[BaseMessage]
    tools: Dict[str, PreparedTool] = field(default_factory=dict)
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    max_steps: int = 5
    stop_when: Optional[Callable[[List[StepResult]], bool]] = None
    abort_signal: Optional[AbortSignal] = None
    on_step_finish: Optional[Callable[[StepResult], Awaitable[None]]] = None
    on_finish: Optional[Callable[[TextGenerationResult], Awaitable[None]]] = None
    on_error: Optional[Callable[[BaseException], Awaitable[None]]] = None
    schema: Optional[Type[BaseModel]] = None
    provider_options: Dict[str, Any] = field(default_factory=dict)


class ModelStreamResult(Protocol):
    """Handle on a streaming text call; every stream property is a fresh view"""

    @property
    def full_stream(self) -> AsyncIterator[StreamPart]: ...

    @property
    def text_stream(self) -> AsyncIterator[str]: ...

    async def text(self) -> str: ...

    async def usage(self) -> Optional[UsageInfo]: ...

    async def finish_reason(self) -> str: ...

    async def consume_stream(self) -> None: ...


class ModelObjectStreamResult(ModelStreamResult, Protocol):
    """Handle on a streaming object call"""

    @property
    def partial_object_stream(self) -> AsyncIterator[Any]: ...

    async def object(self) -> Any: ...


class LanguageModel(Protocol):
    """Model invocation collaborator"""

    model_id: str

    async def generate_text(self, request: ModelRequest) -> TextGenerationResult: ...

    def stream_text(self, request: ModelRequest) -> ModelStreamResult: ...

    async def generate_object(self, request: ModelRequest) -> ObjectGenerationResult: ...

    def stream_object(self, request: ModelRequest) -> ModelObjectStreamResult: ...
