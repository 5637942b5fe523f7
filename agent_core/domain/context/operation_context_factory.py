from typing import Any, Dict, Optional
import uuid

import structlog
from langfuse import Langfuse

from agent_core.domain.context.memory.conversation_buffer import ConversationBuffer
from agent_core.domain.context.memory.memory_manager import MemoryManager
from agent_core.domain.context.memory.persist_queue import MemoryPersistQueue
from agent_core.domain.models.agent_state import AgentMetadata
from agent_core.domain.models.operation_context import (
    AGENT_METADATA_KEY,
    CONVERSATION_BUFFER_KEY,
    MEMORY_PERSIST_QUEUE_KEY,
    OperationContext,
)
from agent_core.domain.orchestration.core.abort import AbortController
from agent_core.domain.orchestration.core.options import GenerationOptions
from agent_core.infrastructure.observability.langfuse_tracing import AgentTraceContext

DELEGATION_DEPTH_KEY = "delegation_depth"


def merge_context_maps(
    parent: Optional[Dict[Any, Any]],
    runtime: Optional[Dict[Any, Any]],
    agent_default: Optional[Dict[Any, Any]]
) -> Dict[Any, Any]:
    """Pick the authoritative context map and fill in missing keys

    The parent's map wins when there is one; otherwise the caller's map, or a
    new one. The returned object is the chosen map itself, never a copy, so
    writes stay visible to everyone holding it.
    """

    if parent is not None:
        target = parent
        sources = (runtime, agent_default)
    else:
        target = runtime if runtime is not None else {}
        sources = (agent_default,)

    for source in sources:
        for key, value in (source or {}).items():
            if key not in target:
                target[key] = value

    return target


class OperationContextFactory:
    """Builds the per-call OperationContext for an agent"""

    def __init__(
        self,
        agent_id: str,
        agent_name: str,
        tracer: Langfuse,
        memory_manager: MemoryManager,
        default_context: Optional[Dict[Any, Any]] = None,
        persist_debounce_ms: int = 200
    ):
        self.agent_id = agent_id
        self.agent_name = agent_name
        self.tracer = tracer
        self.memory_manager = memory_manager
        self.default_context = default_context
        self.persist_debounce_ms = persist_debounce_ms

    def create(self, input: Any, options: GenerationOptions, operation: str) -> OperationContext:
        """Allocate state for one call; does no I/O"""

        operation_id = str(uuid.uuid4())
        parent = options.parent_operation_context

        context = merge_context_maps(
            parent.context if parent is not None else None,
            options.context,
            self.default_context
        )

        if parent is not None:
            abort_controller = parent.abort_controller
        else:
            abort_controller = AbortController()
            if options.abort_signal is not None:
                options.abort_signal.add_listener(abort_controller.abort)

        user_id = options.user_id or (parent.user_id if parent is not None else None)
        conversation_id = options.conversation_id or (parent.conversation_id if parent is not None else None)
        parent_agent_id = options.parent_agent_id
        depth = parent.system_context.get(DELEGATION_DEPTH_KEY, 0) + 1 if parent is not None else 0

        log_context = {
            "operation_id": operation_id,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "user_id": user_id,
            "conversation_id": conversation_id,
        }
        if parent_agent_id:
            log_context.update(parent_agent_id=parent_agent_id, is_sub_agent=True, delegation_depth=depth)

        trace_context = AgentTraceContext(
            self.tracer,
            name=self.agent_name,
            operation_id=operation_id,
            agent_id=self.agent_id,
            agent_name=self.agent_name,
            user_id=user_id,
            conversation_id=conversation_id,
            input=input if isinstance(input, str) else None,
            parent_span=options.parent_span,
            parent_agent_id=parent_agent_id
        )
        trace_context.set_attributes({"agent.operation": operation})

        system_context: Dict[str, Any] = {
            CONVERSATION_BUFFER_KEY: ConversationBuffer(),
            MEMORY_PERSIST_QUEUE_KEY: MemoryPersistQueue(self.memory_manager, debounce_ms=self.persist_debounce_ms),
            AGENT_METADATA_KEY: AgentMetadata(agent_id=self.agent_id, agent_name=self.agent_name),
            DELEGATION_DEPTH_KEY: depth,
        }

        return OperationContext(
            operation_id=operation_id,
            context=context,
            system_context=system_context,
            abort_controller=abort_controller,
            logger=structlog.get_logger("agent_core.agent").bind(**log_context),
            conversation_steps=parent.conversation_steps if parent is not None else [],
            trace_context=trace_context,
            user_id=user_id,
            conversation_id=conversation_id,
            parent_agent_id=parent_agent_id,
            input=input,
            elicitation=options.elicitation or (parent.elicitation if parent is not None else None)
        )
