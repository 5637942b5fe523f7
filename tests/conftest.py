from typing import Any, Dict, List, Optional
import asyncio

import pytest

from agent_core.domain.context.memory.runtime_memory import InMemoryStorage
from agent_core.domain.orchestration.core.main_agent import Agent
from agent_core.infrastructure.config.settings import AgentSettings


class RecordingSpan:
    """Stands in for a Langfuse span and remembers everything done to it"""

    def __init__(self, name: str, kind: str = "span", input: Any = None, metadata: Optional[Dict[str, Any]] = None, **attrs):
        self.name = name
        self.kind = kind
        self.input = input
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.attrs = attrs
        self.children: List["RecordingSpan"] = []
        self.updates: List[Dict[str, Any]] = []
        self.trace_updates: List[Dict[str, Any]] = []
        self.output: Any = None
        self.level: Optional[str] = None
        self.status_message: Optional[str] = None
        self.ended = False

    def start_span(self, name: str, input: Any = None, metadata: Optional[Dict[str, Any]] = None, **kwargs):
        child = RecordingSpan(name, "span", input, metadata, **kwargs)
        self.children.append(child)
        return child

    def start_generation(self, name: str, model: Optional[str] = None, input: Any = None,
                         model_parameters: Optional[Dict[str, Any]] = None,
                         metadata: Optional[Dict[str, Any]] = None, **kwargs):
        child = RecordingSpan(name, "generation", input, metadata, model=model, model_parameters=model_parameters, **kwargs)
        self.children.append(child)
        return child

    def update(self, **kwargs):
        self.updates.append(kwargs)
        if kwargs.get("output") is not None:
            self.output = kwargs["output"]
        if kwargs.get("metadata"):
            self.metadata.update(kwargs["metadata"])
        if "level" in kwargs:
            self.level = kwargs["level"]
        if "status_message" in kwargs:
            self.status_message = kwargs["status_message"]
        return self

    def update_trace(self, **kwargs):
        self.trace_updates.append(kwargs)
        return self

    def end(self):
        self.ended = True

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()

    def find(self, name: str) -> List["RecordingSpan"]:
        return [span for span in self.walk() if span.name == name]


class RecordingLangfuse:
    """Stands in for the Langfuse client"""

    def __init__(self):
        self.spans: List[RecordingSpan] = []
        self.flush_count = 0

    def start_span(self, name: str, input: Any = None, metadata: Optional[Dict[str, Any]] = None, **kwargs):
        span = RecordingSpan(name, "span", input, metadata, **kwargs)
        self.spans.append(span)
        return span

    def flush(self):
        self.flush_count += 1

    def find(self, name: str) -> List[RecordingSpan]:
        return [span for root in self.spans for span in root.find(name)]


class RecordingMemory(InMemoryStorage):
    """In-memory storage that can be told to fail or slow down"""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        super().__init__()
        self.fail = fail
        self.delay = delay
        self.saved: List[str] = []

    async def save_message(self, message, user_id, conversation_id):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("storage unavailable")
        self.saved.append(message.content)
        await super().save_message(message, user_id, conversation_id)


class HookRecorder:
    """Collects hook calls in order"""

    def __init__(self):
        self.calls: List[tuple] = []

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def of(self, name: str) -> List[Dict[str, Any]]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def __getattr__(self, name: str):
        if not name.startswith("on_"):
            raise AttributeError(name)

        def hook(**kwargs):
            self.calls.append((name, kwargs))

        return hook


@pytest.fixture
def tracer() -> RecordingLangfuse:
    return RecordingLangfuse()


@pytest.fixture
def settings() -> AgentSettings:
    return AgentSettings(AGENT_MEMORY_PERSIST_DEBOUNCE_MS=0, AGENT_DEFAULT_MAX_STEPS=5)


@pytest.fixture
def make_agent(tracer, settings):
    def factory(**kwargs) -> Agent:
        kwargs.setdefault("name", "assistant")
        kwargs.setdefault("instructions", "You are a helpful assistant.")
        kwargs.setdefault("tracer", tracer)
        kwargs.setdefault("settings", settings)
        return Agent(**kwargs)

    return factory


@pytest.fixture
def recording_memory():
    return RecordingMemory


@pytest.fixture
def hook_recorder():
    return HookRecorder
