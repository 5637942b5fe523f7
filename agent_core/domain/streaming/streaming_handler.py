from typing import Dict, Any, AsyncIterator, Optional
import uuid

from agent_core.domain.llm.protocol import StreamPart
from agent_core.domain.orchestration.core.abort import AbortSignal


def to_ui_chunk(part: StreamPart, message_id: str) -> Optional[Dict[str, Any]]:
    """Map a model stream part to a presentation chunk"""

    if part.type == "text-delta":
        return {"type": "text-delta", "id": message_id, "delta": part.text or ""}
    if part.type == "tool-call":
        return {
            "type": "tool-input-available",
            "tool_call_id": part.tool_call_id,
            "tool_name": part.tool_name,
            "input": part.args or {}
        }
    if part.type == "tool-result":
        return {"type": "tool-output-available", "tool_call_id": part.tool_call_id, "output": part.output}
    if part.type == "object":
        return {"type": "data-object", "data": part.object}
    if part.type in ("start-step", "finish-step"):
        return {"type": part.type}
    if part.type == "finish":
        return {"type": "finish", "finish_reason": part.finish_reason}
    if part.type == "error":
        return {"type": "error", "error_text": str(part.error)}
    return None


async def to_ui_stream(parts: AsyncIterator[StreamPart]) -> AsyncIterator[Dict[str, Any]]:
    """Presentation stream over raw model parts"""

    message_id = str(uuid.uuid4())
    yield {"type": "start", "message_id": message_id}

    async for part in parts:
        chunk = to_ui_chunk(part, message_id)
        if chunk is not None:
            yield chunk


async def with_abort_handling(stream: AsyncIterator[Any], abort_signal: AbortSignal) -> AsyncIterator[Any]:
    """Pass items through; a read that fails because of an abort ends the stream"""

    try:
        async for item in stream:
            yield item
    except Exception:
        if abort_signal.aborted:
            return
        raise
