from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TypeVar, Union
import asyncio

import structlog

from agent_core.domain.orchestration.core.errors import AbortedError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Cancelled:
    """Abort reason for a genuine cancellation"""

    reason: Any = None
    message: str = "Operation cancelled"


@dataclass(frozen=True)
class Bailed:
    """Abort reason for a sub-agent that finished the whole chain early"""

    agent_name: str
    response: str

    @property
    def message(self) -> str:
        return f"Sub-agent '{self.agent_name}' bailed"


AbortReason = Union[Cancelled, Bailed]


def to_abort_reason(reason: Any = None) -> AbortReason:
    """Normalize anything passed to abort() into a tagged reason"""

    if isinstance(reason, (Cancelled, Bailed)):
        return reason
    if reason is None:
        return Cancelled()
    if isinstance(reason, str):
        return Cancelled(reason=reason, message=reason)
    if isinstance(reason, BaseException):
        return Cancelled(reason=reason, message=str(reason) or type(reason).__name__)
    return Cancelled(reason=reason)


def is_bail(reason: Any) -> bool:
    return isinstance(reason, Bailed)


class AbortSignal:
    """Fires once; every listener sees the same tagged reason"""

    def __init__(self):
        self._event = asyncio.Event()
        self._listeners: List[Callable[[AbortReason], None]] = []
        self.reason: Optional[AbortReason] = None

    @property
    def aborted(self) -> bool:
        return self.reason is not None

    def add_listener(self, listener: Callable[[AbortReason], None]):
        """Register a callback; fires immediately if already aborted"""

        if self.aborted:
            self._notify(listener)
            return
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[AbortReason], None]):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def wait(self) -> AbortReason:
        await self._event.wait()
        return self.reason

    def throw_if_aborted(self):
        if self.aborted:
            raise AbortedError(self.reason)

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await something, giving up as soon as the signal fires

        A bail does not cut off work already started; only new work is refused.
        """

        if self.aborted:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise AbortedError(self.reason)

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        # On a bail, in-flight work (a delegated sub-agent) still completes
        if is_bail(self.reason):
            return await task

        task.cancel()
        raise AbortedError(self.reason)

    def _abort(self, reason: AbortReason):
        if self.aborted:
            return

        self.reason = reason
        self._event.set()

        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            self._notify(listener)

    def _notify(self, listener: Callable[[AbortReason], None]):
        try:
            listener(self.reason)
        except Exception:
            logger.error("Abort listener failed", reason=repr(self.reason), exc_info=True)


class AbortController:
    """Owner of an AbortSignal"""

    def __init__(self):
        self.signal = AbortSignal()

    def abort(self, reason: Any = None):
        """Abort the signal; only the first reason is kept"""

        self.signal._abort(to_abort_reason(reason))

    @classmethod
    def timeout(cls, seconds: float) -> "AbortController":
        """Controller that aborts itself after a delay"""

        controller = cls()
        loop = asyncio.get_running_loop()
        loop.call_later(
            seconds,
            controller.abort,
            Cancelled(reason="timeout", message=f"Operation timed out after {seconds}s")
        )
        return controller
