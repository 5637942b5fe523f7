from typing import List, Set
import uuid

from langchain_core.messages import BaseMessage


class ConversationBuffer:
    """Per-operation message buffer

    Holds everything the model has seen during an operation. Messages loaded
    from memory are marked as context so they are never written back; all
    others wait in the pending list until the persist queue drains them.
    """

    def __init__(self):
        self._messages: List[BaseMessage] = []
        self._pending: List[BaseMessage] = []
        self._seen_ids: Set[str] = set()
        self._context_ids: Set[str] = set()

    def ingest(self, messages: List[BaseMessage], mark_as_context: bool = False) -> List[BaseMessage]:
        """Add messages, returning the ones that were not already buffered"""

        added = []
        for message in messages:
            if not message.id:
                message.id = str(uuid.uuid4())

            if message.id in self._seen_ids:
                continue

            self._seen_ids.add(message.id)
            self._messages.append(message)
            added.append(message)

            if mark_as_context:
                self._context_ids.add(message.id)
            else:
                self._pending.append(message)

        return added

    def add_model_messages(self, messages: List[BaseMessage]) -> List[BaseMessage]:
        """Add response messages produced by the model"""

        return self.ingest(messages, mark_as_context=False)

    def drain(self) -> List[BaseMessage]:
        """Return and clear the messages not yet persisted"""

        pending, self._pending = self._pending, []
        return pending

    def requeue(self, messages: List[BaseMessage]):
        """Put unsaved messages back at the front of the pending list"""

        pending_ids = {message.id for message in self._pending}
        self._pending = [m for m in messages if m.id not in pending_ids] + self._pending

    def has_pending(self) -> bool:
        return bool(self._pending)

    def is_context(self, message: BaseMessage) -> bool:
        return message.id in self._context_ids

    def get_all_messages(self) -> List[BaseMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)
