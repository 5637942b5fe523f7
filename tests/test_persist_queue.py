import asyncio

import pytest
from langchain_core.messages import AIMessage, HumanMessage
from structlog.testing import capture_logs

from agent_core.domain.context.memory.memory_manager import MemoryManager
from agent_core.domain.context.operation_context_factory import OperationContextFactory
from agent_core.domain.orchestration.core.options import GenerationOptions


def _operation(tracer, memory, debounce_ms=20, user_id="u1", conversation_id="c1"):
    factory = OperationContextFactory(
        agent_id="assistant",
        agent_name="assistant",
        tracer=tracer,
        memory_manager=MemoryManager(memory, agent_id="assistant", agent_name="assistant"),
        persist_debounce_ms=debounce_ms
    )
    return factory.create("hi", GenerationOptions(user_id=user_id, conversation_id=conversation_id), "generate_text")


def test_scheduled_saves_coalesce_into_one_write(tracer, recording_memory) -> None:
    memory = recording_memory()

    async def scenario():
        with capture_logs() as logs:
            oc = _operation(tracer, memory)
            oc.buffer.ingest([HumanMessage(content="question")])
            oc.persist_queue.schedule_save(oc.buffer, oc)
            oc.buffer.add_model_messages([AIMessage(content="answer")])
            oc.persist_queue.schedule_save(oc.buffer, oc)

            assert memory.saved == []
            await asyncio.sleep(0.1)
        return logs

    logs = asyncio.run(scenario())

    assert memory.saved == ["question", "answer"]
    writes = [log for log in logs if log["event"] == "Persisted conversation messages"]
    assert len(writes) == 1
    assert writes[0]["count"] == 2


def test_flush_writes_now_and_cancels_the_scheduled_write(tracer, recording_memory) -> None:
    memory = recording_memory()

    async def scenario():
        with capture_logs() as logs:
            oc = _operation(tracer, memory, debounce_ms=10_000)
            oc.buffer.ingest([HumanMessage(content="question")])
            oc.persist_queue.schedule_save(oc.buffer, oc)

            await oc.persist_queue.flush(oc.buffer, oc)
            await oc.wait_for_pending()
        return logs

    logs = asyncio.run(scenario())

    assert memory.saved == ["question"]
    assert len([log for log in logs if log["event"] == "Persisted conversation messages"]) == 1


def test_flush_failure_is_logged_and_raised(tracer, recording_memory) -> None:
    memory = recording_memory(fail=True)

    async def scenario():
        with capture_logs() as logs:
            oc = _operation(tracer, memory)
            oc.buffer.ingest([HumanMessage(content="question")])
            with pytest.raises(RuntimeError, match="storage unavailable"):
                await oc.persist_queue.flush(oc.buffer, oc)
        return logs

    logs = asyncio.run(scenario())

    failure = next(log for log in logs if log["event"] == "Failed to persist conversation messages")
    assert failure["log_level"] == "error"
    assert failure["count"] == 1


def test_scheduled_write_failure_is_only_logged(tracer, recording_memory) -> None:
    memory = recording_memory(fail=True)

    async def scenario():
        with capture_logs() as logs:
            oc = _operation(tracer, memory, debounce_ms=0)
            oc.buffer.ingest([HumanMessage(content="question")])
            oc.persist_queue.schedule_save(oc.buffer, oc)
            await oc.wait_for_pending()
        return logs

    logs = asyncio.run(scenario())
    assert any(log["event"] == "Failed to persist conversation messages" for log in logs)


def test_concurrent_flushes_write_each_message_once(tracer, recording_memory) -> None:
    memory = recording_memory(delay=0.02)

    async def scenario():
        oc = _operation(tracer, memory)
        oc.buffer.ingest([HumanMessage(content="question")])
        await asyncio.gather(
            oc.persist_queue.flush(oc.buffer, oc),
            oc.persist_queue.flush(oc.buffer, oc)
        )

    asyncio.run(scenario())
    assert memory.saved == ["question"]


def test_nothing_is_written_without_a_user(tracer, recording_memory) -> None:
    memory = recording_memory()

    async def scenario():
        with capture_logs() as logs:
            oc = _operation(tracer, memory, user_id=None, conversation_id=None)
            oc.buffer.ingest([HumanMessage(content="question")])
            await oc.persist_queue.flush(oc.buffer, oc)
            pending = oc.buffer.has_pending()
        return logs, pending

    logs, pending = asyncio.run(scenario())

    assert memory.saved == []
    assert not pending
    assert any(log["event"] == "Skipping message persistence" for log in logs)


def test_messages_from_a_failed_flush_are_written_by_the_next_one(tracer, recording_memory) -> None:
    memory = recording_memory(fail=True)

    async def scenario():
        oc = _operation(tracer, memory)
        oc.buffer.ingest([HumanMessage(content="question")])
        with pytest.raises(RuntimeError):
            await oc.persist_queue.flush(oc.buffer, oc)
        pending_after_failure = oc.buffer.has_pending()

        memory.fail = False
        await oc.persist_queue.flush(oc.buffer, oc)
        return pending_after_failure, oc.buffer.has_pending()

    pending_after_failure, pending_after_retry = asyncio.run(scenario())

    assert pending_after_failure
    assert not pending_after_retry
    assert memory.saved == ["question"]


def test_partially_written_batch_only_retries_the_unsaved_messages(tracer, recording_memory) -> None:
    class FailsOnAnswer(recording_memory):
        async def save_message(self, message, user_id, conversation_id):
            if self.answer_offline and message.content == "answer":
                raise RuntimeError("storage unavailable")
            await super().save_message(message, user_id, conversation_id)

    memory = FailsOnAnswer()
    memory.answer_offline = True

    async def scenario():
        oc = _operation(tracer, memory)
        oc.buffer.ingest([HumanMessage(content="question"), AIMessage(content="answer")])
        oc.buffer.ingest([AIMessage(content="follow-up")])
        with pytest.raises(RuntimeError):
            await oc.persist_queue.flush(oc.buffer, oc)

        memory.answer_offline = False
        await oc.persist_queue.flush(oc.buffer, oc)

    asyncio.run(scenario())

    assert memory.saved == ["question", "answer", "follow-up"]
