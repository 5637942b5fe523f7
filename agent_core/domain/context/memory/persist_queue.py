from typing import Optional, TYPE_CHECKING
import asyncio

from agent_core.domain.context.memory.conversation_buffer import ConversationBuffer

if TYPE_CHECKING:
    from agent_core.domain.context.memory.memory_manager import MemoryManager
    from agent_core.domain.models.operation_context import OperationContext


class MemoryPersistQueue:
    """Writes pending buffer messages to memory

    `schedule_save` is debounced: calls inside the window restart it and end
    in a single write. `flush` writes immediately and is what every call path
    uses before it returns.
    """

    def __init__(self, memory_manager: Optional["MemoryManager"], debounce_ms: int = 200):
        self.memory_manager = memory_manager
        self.debounce_ms = debounce_ms
        self._scheduled: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Task] = None

    def schedule_save(self, buffer: ConversationBuffer, oc: "OperationContext"):
        """Debounced write of whatever is pending when the window closes"""

        self._cancel_scheduled()
        self._scheduled = oc.track(asyncio.ensure_future(self._save_later(buffer, oc)))

    async def flush(self, buffer: ConversationBuffer, oc: "OperationContext"):
        """Write pending messages now; failures are logged and re-raised"""

        self._cancel_scheduled()

        if self._in_flight is not None and not self._in_flight.done():
            await asyncio.shield(self._in_flight)

        if not buffer.has_pending():
            return

        self._in_flight = asyncio.ensure_future(self._write(buffer, oc))
        await asyncio.shield(self._in_flight)

    def _cancel_scheduled(self):
        if self._scheduled is not None and not self._scheduled.done():
            self._scheduled.cancel()
        self._scheduled = None

    async def _save_later(self, buffer: ConversationBuffer, oc: "OperationContext"):
        await asyncio.sleep(self.debounce_ms / 1000)
        self._scheduled = None

        if self._in_flight is not None and not self._in_flight.done():
            await asyncio.wait({self._in_flight})

        self._in_flight = asyncio.ensure_future(self._write(buffer, oc, raise_errors=False))
        await self._in_flight

    async def _write(self, buffer: ConversationBuffer, oc: "OperationContext", raise_errors: bool = True):
        messages = buffer.drain()
        if not messages:
            return

        if self.memory_manager is None or not oc.user_id or not oc.conversation_id:
            oc.logger.debug("Skipping message persistence", count=len(messages))
            return

        saved = 0
        try:
            for message in messages:
                await self.memory_manager.save_message(oc, message)
                saved += 1
        except Exception as e:
            buffer.requeue(messages[saved:])
            oc.logger.error(
                "Failed to persist conversation messages",
                error=str(e),
                count=len(messages)
            )
            if raise_errors:
                raise
            return

        oc.logger.debug("Persisted conversation messages", count=len(messages))
