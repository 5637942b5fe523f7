# Langfuse integration
from typing import Dict, Any, Optional, List

import structlog
from langfuse import Langfuse

from agent_core.infrastructure.config.settings import AgentSettings, get_settings

logger = structlog.get_logger(__name__)


def build_langfuse_client(settings: Optional[AgentSettings] = None) -> Langfuse:
    """Create the Langfuse client used when none is injected"""

    settings = settings or get_settings()
    return Langfuse(
        public_key=settings.langfuse_public_key,
        secret_key=settings.langfuse_secret_key,
        host=settings.langfuse_host,
        tracing_enabled=settings.tracing_enabled
    )


class AgentTraceContext:
    """Langfuse trace for a single agent operation

    The root span covers the whole call. Model invocations, tool executions and
    memory reads are recorded as children. A delegated operation opens its root
    span under the span of the tool that delegated to it, so a sub-agent's work
    nests inside the supervisor's trace.
    """

    def __init__(
        self,
        client: Langfuse,
        name: str,
        operation_id: str,
        agent_id: str,
        agent_name: str,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        input: Any = None,
        parent_span: Any = None,
        parent_agent_id: Optional[str] = None
    ):
        self.client = client
        self.operation_id = operation_id
        self._ended = False

        metadata = {
            "operation.id": operation_id,
            "agent.id": agent_id,
            "agent.name": agent_name,
            "user.id": user_id,
            "conversation.id": conversation_id,
        }
        if parent_agent_id:
            metadata["agent.parent_id"] = parent_agent_id

        if parent_span is not None:
            self.root_span = parent_span.start_span(name=name, input=input, metadata=metadata)
            self.is_nested = True
        else:
            self.root_span = client.start_span(name=name, input=input, metadata=metadata)
            self.root_span.update_trace(
                name=name,
                user_id=user_id,
                session_id=conversation_id,
                input=input,
                metadata={"agent.id": agent_id}
            )
            self.is_nested = False

    @property
    def ended(self) -> bool:
        return self._ended

    def create_child_span(
        self,
        name: str,
        span_type: str,
        input: Any = None,
        attributes: Optional[Dict[str, Any]] = None,
        parent_span: Any = None
    ):
        """Open a child span under the root (or an explicit parent)"""

        parent = parent_span or self.root_span
        metadata = {"span.type": span_type}
        metadata.update(attributes or {})
        return parent.start_span(name=name, input=input, metadata=metadata)

    def create_generation(
        self,
        name: str,
        model: Optional[str],
        input: Any = None,
        model_parameters: Optional[Dict[str, Any]] = None,
        attributes: Optional[Dict[str, Any]] = None
    ):
        """Open a generation span for a model invocation"""

        return self.root_span.start_generation(
            name=name,
            model=model,
            input=input,
            model_parameters={k: v for k, v in (model_parameters or {}).items() if v is not None},
            metadata=attributes or {}
        )

    def end_child_span(
        self,
        span: Any,
        status: str,
        output: Any = None,
        error: Optional[BaseException] = None,
        attributes: Optional[Dict[str, Any]] = None
    ):
        """Close a child span with a final status"""

        metadata = {"status": status}
        metadata.update(attributes or {})

        if error is not None:
            metadata["error.type"] = type(error).__name__
            span.update(
                output=output,
                level="ERROR",
                status_message=str(error),
                metadata=metadata
            )
        else:
            span.update(output=output, metadata=metadata)

        span.end()

    def set_attributes(self, attributes: Dict[str, Any]):
        """Attach metadata to the root span"""

        if attributes:
            self.root_span.update(metadata=attributes)

    def set_conversation_id(self, conversation_id: str):
        """Record a conversation id assigned after the span was opened"""

        self.set_attributes({"conversation.id": conversation_id})
        if not self.is_nested:
            self.root_span.update_trace(session_id=conversation_id)

    def set_instructions(self, instructions: Optional[str]):
        if instructions:
            self.set_attributes({"agent.instructions": instructions})

    def set_output(self, output: Any):
        self.root_span.update(output=output)
        if not self.is_nested:
            self.root_span.update_trace(output=output)

    def set_usage(self, usage: Any):
        if usage is None:
            return

        self.set_attributes({
            "usage.prompt_tokens": usage.prompt_tokens,
            "usage.completion_tokens": usage.completion_tokens,
            "usage.total_tokens": usage.total_tokens,
        })

    def set_finish_reason(self, finish_reason: Optional[str]):
        if finish_reason:
            self.set_attributes({"ai.response.finish_reason": finish_reason})

    def set_stop_condition_met(self, step_count: int, max_steps: int):
        """Flag traces that ran out of steps"""

        if step_count >= max_steps:
            self.set_attributes({
                "llm.stop_condition.met": True,
                "llm.stop_condition.max_steps": max_steps,
                "llm.stop_condition.step_count": step_count,
            })

    def end(self, status: str, error: Optional[BaseException] = None, attributes: Optional[Dict[str, Any]] = None):
        """End the root span; later calls are ignored"""

        if self._ended:
            return
        self._ended = True

        metadata = {"agent.state": status}
        metadata.update(attributes or {})

        if error is not None:
            self.root_span.update(level="ERROR", status_message=str(error), metadata=metadata)
        else:
            self.root_span.update(metadata=metadata)

        self.root_span.end()

    def flush(self):
        """Push buffered spans to the backend"""

        try:
            self.client.flush()
        except Exception as e:
            logger.warning("Failed to flush Langfuse client", error=str(e), operation_id=self.operation_id)


def message_summaries(messages: List[Any], limit: int = 10) -> List[Dict[str, Any]]:
    """Compact role/content pairs for span metadata"""

    summaries = []
    for message in messages[-limit:]:
        content = getattr(message, "content", message)
        summaries.append({
            "role": getattr(message, "type", "unknown"),
            "content": content if isinstance(content, str) else str(content)
        })
    return summaries
