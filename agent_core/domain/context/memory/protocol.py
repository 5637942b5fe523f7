from typing import List, Optional, Protocol, runtime_checkable

from langchain_core.messages import BaseMessage

from agent_core.domain.models.agent_state import ConversationStepRecord


@runtime_checkable
class Memory(Protocol):
    """Storage backend consumed by the memory manager

    Backends may also offer semantic search (`has_vector_support`,
    `search_similar`) and working memory (`has_working_memory_support`,
    `get_working_memory`, `update_working_memory`, `clear_working_memory`).
    Those are detected by probing, not required here.
    """

    async def get_messages(
        self,
        user_id: str,
        conversation_id: str,
        limit: Optional[int] = None
    ) -> List[BaseMessage]:
        ...

    async def save_message(self, message: BaseMessage, user_id: str, conversation_id: str) -> None:
        ...

    async def save_conversation_steps(self, records: List[ConversationStepRecord]) -> None:
        ...
