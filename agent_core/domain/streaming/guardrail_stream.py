from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
import asyncio
import uuid

from agent_core.domain.llm.protocol import StreamPart
from agent_core.domain.models.agent_state import BailedResult
from agent_core.domain.orchestration.core.abort import AbortSignal
from agent_core.domain.orchestration.core.errors import AbortedError
from agent_core.domain.streaming.stream_channel import StreamChannel
from agent_core.domain.streaming.streaming_handler import to_ui_chunk


def accumulated_text(parts: List[StreamPart]) -> str:
    return "".join(part.text or "" for part in parts if part.type == "text-delta")


def last_object(parts: List[StreamPart]) -> Any:
    objects = [part.object for part in parts if part.type == "object"]
    return objects[-1] if objects else None


class GuardrailPipeline:
    """Splits a model stream into a live branch and a validated final value

    Parts are forwarded to live readers as they arrive and kept in a replay
    log at the same time. Once the source ends, the complete value goes
    through the output guardrails exactly once. Tokens already delivered live
    are not taken back; consumers that need sanitized output read `finalize()`
    or the presentation stream.
    """

    def __init__(
        self,
        source: AsyncIterator[StreamPart],
        run_guardrails: Callable[[Any, Optional[StreamPart]], Awaitable[Any]],
        abort_signal: AbortSignal,
        bail_lookup: Callable[[], Optional[BailedResult]],
        resolve_value: Callable[[List[StreamPart]], Any] = accumulated_text,
        channel_size: int = 64
    ):
        self._source = source
        self._run_guardrails = run_guardrails
        self._abort_signal = abort_signal
        self._bail_lookup = bail_lookup
        self._resolve_value = resolve_value
        self._channel: StreamChannel[StreamPart] = StreamChannel(maxsize=channel_size)
        self._producer: Optional[asyncio.Task] = None
        self._final: Optional[asyncio.Future] = None

    def start(self):
        if self._producer is None:
            self._final = asyncio.get_running_loop().create_future()
            self._producer = asyncio.ensure_future(self._pump())

    @property
    def full_stream(self) -> AsyncIterator[StreamPart]:
        self.start()
        return self._channel.subscribe()

    @property
    def text_stream(self) -> AsyncIterator[str]:
        self.start()
        return self._text_deltas()

    async def _text_deltas(self):
        async for part in self._channel.subscribe():
            if part.type == "text-delta" and part.text:
                yield part.text

    async def finalize(self) -> Any:
        """Guardrail-checked final value; bailed responses win over streamed text"""

        self.start()
        return await asyncio.shield(self._final)

    async def create_ui_stream(self) -> AsyncIterator[Dict[str, Any]]:
        """Presentation chunks consistent with the sanitized value"""

        value = await self.finalize()
        message_id = str(uuid.uuid4())

        yield {"type": "start", "message_id": message_id}
        for part in self._channel.items:
            if part.type in ("tool-call", "tool-result"):
                yield to_ui_chunk(part, message_id)

        if isinstance(value, str):
            yield {"type": "text-start", "id": message_id}
            yield {"type": "text-delta", "id": message_id, "delta": value}
            yield {"type": "text-end", "id": message_id}
        else:
            yield {"type": "data-object", "data": value}

        yield {"type": "finish"}

    async def _pump(self):
        error: Optional[BaseException] = None
        try:
            async for part in self._source:
                await self._channel.publish(part)
        except Exception as e:
            if not self._abort_signal.aborted:
                error = e

        # Aborted sources end the live branch cleanly
        await self._channel.close(error)

        try:
            value = await self._resolve_final(error)
        except Exception as e:
            self._final.set_exception(e)
            return
        self._final.set_result(value)

    async def _resolve_final(self, error: Optional[BaseException]) -> Any:
        bailed = self._bail_lookup()
        if bailed is not None:
            value = bailed.response
        elif error is not None:
            raise error
        elif self._abort_signal.aborted:
            raise AbortedError(self._abort_signal.reason)
        else:
            value = self._resolve_value(self._channel.items)

        return await self._run_guardrails(value, self._finish_part())

    def _finish_part(self) -> Optional[StreamPart]:
        for part in reversed(self._channel.items):
            if part.type == "finish":
                return part
        return None
