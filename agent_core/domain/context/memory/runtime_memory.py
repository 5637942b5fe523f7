from typing import Dict, List, Any, Optional, Tuple
import asyncio
import re
from collections import defaultdict

from langchain_core.messages import BaseMessage

from agent_core.domain.models.agent_state import ConversationStepRecord


def keyword_relevance(query: str, content: str) -> float:
    """Keyword overlap score between query and content"""

    query_lower = query.lower()
    content_lower = content.lower()

    query_words = set(re.findall(r'\w+', query_lower))
    content_words = set(re.findall(r'\w+', content_lower))

    if not query_words:
        return 0.0

    overlap = len(query_words.intersection(content_words))
    score = overlap / len(query_words)

    # Boost score if query appears as substring
    if query_lower in content_lower:
        score += 0.3

    return min(score, 1.0)


class InMemoryStorage:
    """Process-local storage for conversations, step records and working memory"""

    def __init__(self, storage_limit: int = 100):
        self.storage_limit = storage_limit
        self.conversations: Dict[Tuple[str, str], List[BaseMessage]] = defaultdict(list)
        self.step_records: Dict[str, ConversationStepRecord] = {}
        self.working_memory: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get_messages(
        self,
        user_id: str,
        conversation_id: str,
        limit: Optional[int] = None
    ) -> List[BaseMessage]:
        """Get conversation history, oldest first"""

        async with self._lock:
            messages = list(self.conversations.get((user_id, conversation_id), []))

        if limit:
            messages = messages[-limit:]
        return messages

    async def save_message(self, message: BaseMessage, user_id: str, conversation_id: str):
        """Append a message, replacing any earlier copy with the same id"""

        async with self._lock:
            history = self.conversations[(user_id, conversation_id)]

            if message.id:
                history[:] = [m for m in history if m.id != message.id]
            history.append(message)

            if len(history) > self.storage_limit:
                history[:] = history[-self.storage_limit:]

    async def save_conversation_steps(self, records: List[ConversationStepRecord]):
        """Upsert step records by id"""

        async with self._lock:
            for record in records:
                self.step_records[record.id] = record

    async def get_conversation_steps(
        self,
        user_id: str,
        conversation_id: str,
        operation_id: Optional[str] = None
    ) -> List[ConversationStepRecord]:
        async with self._lock:
            records = [
                r for r in self.step_records.values()
                if r.user_id == user_id and r.conversation_id == conversation_id
                and (operation_id is None or r.operation_id == operation_id)
            ]
        return sorted(records, key=lambda r: (r.operation_id, r.step_index))

    def has_vector_support(self) -> bool:
        return True

    async def search_similar(
        self,
        query: str,
        user_id: str,
        conversation_id: Optional[str] = None,
        limit: int = 5,
        threshold: float = 0.3
    ) -> List[BaseMessage]:
        """Rank stored messages by keyword relevance to the query"""

        async with self._lock:
            candidates = [
                message
                for (owner, conv), history in self.conversations.items()
                if owner == user_id and (conversation_id is None or conv == conversation_id)
                for message in history
            ]

        scored = []
        for message in candidates:
            content = message.content if isinstance(message.content, str) else str(message.content)
            score = keyword_relevance(query, content)
            if score >= threshold:
                scored.append((score, message))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [message for _, message in scored[:limit]]

    def has_working_memory_support(self) -> bool:
        return True

    async def get_working_memory(self, user_id: str, conversation_id: Optional[str] = None) -> Optional[str]:
        async with self._lock:
            return self.working_memory.get(self._working_memory_key(user_id, conversation_id))

    async def update_working_memory(self, content: str, user_id: str, conversation_id: Optional[str] = None):
        async with self._lock:
            self.working_memory[self._working_memory_key(user_id, conversation_id)] = content

    async def clear_working_memory(self, user_id: str, conversation_id: Optional[str] = None):
        async with self._lock:
            self.working_memory.pop(self._working_memory_key(user_id, conversation_id), None)

    async def clear_conversation(self, user_id: str, conversation_id: str):
        """Clear all data for a conversation"""

        async with self._lock:
            self.conversations.pop((user_id, conversation_id), None)
            self.step_records = {
                key: record for key, record in self.step_records.items()
                if not (record.user_id == user_id and record.conversation_id == conversation_id)
            }

    @staticmethod
    def _working_memory_key(user_id: str, conversation_id: Optional[str]) -> str:
        return f"{user_id}:{conversation_id}" if conversation_id else user_id
