from typing import List, Optional, Set
import asyncio

from agent_core.domain.context.memory.memory_manager import MemoryManager
from agent_core.domain.llm.protocol import StepResult
from agent_core.domain.models.agent_state import ConversationStepRecord, StepType, StepWithContent
from agent_core.domain.models.operation_context import (
    PERSISTED_STEP_COUNT_KEY,
    STEP_RESULTS_KEY,
    OperationContext,
)


class StepRecorder:
    """Turns finished model steps into conversation step records

    Safe to call any number of times for the same operation: the persisted
    step count is advanced before anything is written, so each step index is
    recorded once even when the step callback and the final pass overlap.
    """

    def __init__(self, memory_manager: MemoryManager):
        self.memory_manager = memory_manager
        self._pending: Set[asyncio.Task] = set()

    def record_step_results(
        self,
        steps: Optional[List[StepResult]],
        oc: OperationContext
    ) -> List[ConversationStepRecord]:
        if steps is None:
            steps = oc.system_context.get(STEP_RESULTS_KEY, [])

        previous = oc.system_context.get(PERSISTED_STEP_COUNT_KEY, 0)
        new_steps = steps[previous:]
        if not new_steps:
            return []

        oc.system_context[PERSISTED_STEP_COUNT_KEY] = previous + len(new_steps)

        sub_agent_id = None
        sub_agent_name = None
        metadata = oc.agent_metadata
        if oc.parent_agent_id and metadata is not None:
            sub_agent_id = metadata.agent_id
            sub_agent_name = metadata.agent_name

        entries: List[StepWithContent] = []
        for offset, step in enumerate(new_steps):
            step_index = previous + offset
            prefix = f"{oc.operation_id}:{step_index}"

            text = (step.text or "").strip()
            if text:
                entries.append(StepWithContent(
                    id=f"{prefix}:text",
                    type=StepType.TEXT,
                    step_index=step_index,
                    content=text,
                    usage=step.usage,
                    sub_agent_id=sub_agent_id,
                    sub_agent_name=sub_agent_name
                ))

            for call in step.tool_calls:
                entries.append(StepWithContent(
                    id=f"{prefix}:tool_call:{call.tool_call_id}",
                    type=StepType.TOOL_CALL,
                    step_index=step_index,
                    name=call.tool_name,
                    arguments=call.args,
                    sub_agent_id=sub_agent_id,
                    sub_agent_name=sub_agent_name
                ))

            for result in step.tool_results:
                entries.append(StepWithContent(
                    id=f"{prefix}:tool_result:{result.tool_call_id}",
                    type=StepType.TOOL_RESULT,
                    role="tool",
                    step_index=step_index,
                    name=result.tool_name,
                    result=result.output,
                    sub_agent_id=sub_agent_id,
                    sub_agent_name=sub_agent_name
                ))

        oc.conversation_steps.extend(entries)

        if not oc.user_id or not oc.conversation_id or not self.memory_manager.enabled:
            return []

        records = [
            ConversationStepRecord(
                conversation_id=oc.conversation_id,
                user_id=oc.user_id,
                agent_id=self.memory_manager.agent_id,
                agent_name=self.memory_manager.agent_name,
                operation_id=oc.operation_id,
                **entry.model_dump()
            )
            for entry in entries
        ]
        if records:
            task = asyncio.ensure_future(self._persist(records, oc))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return records

    async def _persist(self, records: List[ConversationStepRecord], oc: OperationContext):
        try:
            await self.memory_manager.save_conversation_steps(records)
        except Exception as e:
            oc.logger.debug("Failed to persist conversation steps", error=str(e), count=len(records))

    async def wait_for_pending_writes(self):
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
