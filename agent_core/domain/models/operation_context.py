from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING
import asyncio

from agent_core.domain.models.agent_state import AgentMetadata, BailedResult, StepWithContent
from agent_core.domain.orchestration.core.abort import AbortController, AbortSignal, Bailed
from agent_core.domain.orchestration.core.errors import CancellationError

if TYPE_CHECKING:
    from agent_core.domain.context.memory.conversation_buffer import ConversationBuffer
    from agent_core.domain.context.memory.persist_queue import MemoryPersistQueue
    from agent_core.infrastructure.observability.langfuse_tracing import AgentTraceContext


# system_context keys
CONVERSATION_BUFFER_KEY = "conversation_buffer"
MEMORY_PERSIST_QUEUE_KEY = "memory_persist_queue"
PERSISTED_STEP_COUNT_KEY = "persisted_step_count"
STEP_RESULTS_KEY = "conversation_steps"
BAILED_RESULT_KEY = "bailed_result"
AGENT_METADATA_KEY = "agent_metadata"


@dataclass
class OperationContext:
    """Execution state of a single agent call

    `context` and `conversation_steps` are shared by reference along a
    delegation chain. `system_context` belongs to this operation only.
    """

    operation_id: str
    context: Dict[Any, Any]
    system_context: Dict[str, Any]
    abort_controller: AbortController
    logger: Any
    conversation_steps: List[StepWithContent] = field(default_factory=list)
    trace_context: Optional["AgentTraceContext"] = None
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    parent_agent_id: Optional[str] = None
    input: Any = None
    output: Any = None
    is_active: bool = True
    cancellation_error: Optional[CancellationError] = None
    elicitation: Optional[Callable[..., Any]] = None
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    pending_tasks: List[asyncio.Task] = field(default_factory=list)

    @property
    def abort_signal(self) -> AbortSignal:
        return self.abort_controller.signal

    @property
    def buffer(self) -> "ConversationBuffer":
        return self.system_context[CONVERSATION_BUFFER_KEY]

    @property
    def persist_queue(self) -> "MemoryPersistQueue":
        return self.system_context[MEMORY_PERSIST_QUEUE_KEY]

    @property
    def agent_metadata(self) -> Optional[AgentMetadata]:
        return self.system_context.get(AGENT_METADATA_KEY)

    @property
    def bailed_result(self) -> Optional[BailedResult]:
        """Bail recorded on this operation, or carried by the shared abort reason"""

        recorded = self.system_context.get(BAILED_RESULT_KEY)
        if recorded is not None:
            return recorded

        reason = self.abort_signal.reason
        if isinstance(reason, Bailed):
            return BailedResult(agent_name=reason.agent_name, response=reason.response)
        return None

    def track(self, task: asyncio.Task) -> asyncio.Task:
        """Keep a reference to background work started for this operation"""

        self.pending_tasks.append(task)
        task.add_done_callback(self._forget)
        return task

    def _forget(self, task: asyncio.Task):
        if task in self.pending_tasks:
            self.pending_tasks.remove(task)

    async def wait_for_pending(self):
        """Wait for tracked background work, ignoring its outcome"""

        while True:
            pending = [task for task in self.pending_tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
