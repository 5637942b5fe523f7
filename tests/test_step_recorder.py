import asyncio

from structlog.testing import capture_logs

from agent_core.domain.context.memory.memory_manager import MemoryManager
from agent_core.domain.context.operation_context_factory import OperationContextFactory
from agent_core.domain.llm.protocol import StepResult, ToolCall, ToolResult
from agent_core.domain.models.agent_state import StepType, UsageInfo
from agent_core.domain.models.operation_context import STEP_RESULTS_KEY
from agent_core.domain.orchestration.core.options import GenerationOptions
from agent_core.domain.orchestration.core.step_recorder import StepRecorder


def _recorder_and_operation(tracer, memory, user_id="u1", **options):
    manager = MemoryManager(memory, agent_id="researcher", agent_name="researcher")
    factory = OperationContextFactory(agent_id="researcher", agent_name="researcher", tracer=tracer, memory_manager=manager)
    oc = factory.create("hi", GenerationOptions(user_id=user_id, conversation_id="c1", **options), "generate_text")
    return StepRecorder(manager), oc


def _tool_step():
    return StepResult(
        text="Looking it up",
        tool_calls=[ToolCall(tool_call_id="call_1", tool_name="search", args={"q": "rome"})],
        tool_results=[ToolResult(tool_call_id="call_1", tool_name="search", args={"q": "rome"}, output={"hits": 3})],
        usage=UsageInfo(prompt_tokens=5, completion_tokens=2, total_tokens=7)
    )


def test_steps_become_records_with_stable_ids(tracer, recording_memory) -> None:
    memory = recording_memory()

    async def scenario():
        recorder, oc = _recorder_and_operation(tracer, memory)
        records = recorder.record_step_results([_tool_step(), StepResult(text="Rome has 3 results")], oc)
        await recorder.wait_for_pending_writes()
        return oc, records

    oc, records = asyncio.run(scenario())

    prefix = oc.operation_id
    assert [r.id for r in records] == [
        f"{prefix}:0:text",
        f"{prefix}:0:tool_call:call_1",
        f"{prefix}:0:tool_result:call_1",
        f"{prefix}:1:text",
    ]
    assert [r.type for r in records] == [StepType.TEXT, StepType.TOOL_CALL, StepType.TOOL_RESULT, StepType.TEXT]
    assert [r.step_index for r in records] == [0, 0, 0, 1]
    assert records[1].arguments == {"q": "rome"}
    assert records[2].role == "tool"
    assert records[2].result == {"hits": 3}
    assert records[0].usage.total_tokens == 7
    assert records[0].agent_name == "researcher"
    assert len(memory.step_records) == 4
    assert len(oc.conversation_steps) == 4


def test_recording_twice_does_not_duplicate(tracer, recording_memory) -> None:
    memory = recording_memory()

    async def scenario():
        recorder, oc = _recorder_and_operation(tracer, memory)
        steps = [_tool_step()]
        oc.system_context[STEP_RESULTS_KEY] = steps

        first = recorder.record_step_results(None, oc)
        steps.append(StepResult(text="Done"))
        second = recorder.record_step_results(steps, oc)
        third = recorder.record_step_results(steps, oc)
        await recorder.wait_for_pending_writes()
        return first, second, third

    first, second, third = asyncio.run(scenario())

    assert len(first) == 3
    assert [r.step_index for r in second] == [1]
    assert third == []
    assert len(memory.step_records) == 4


def test_whitespace_only_text_is_not_recorded(tracer, recording_memory) -> None:
    async def scenario():
        recorder, oc = _recorder_and_operation(tracer, recording_memory())
        return recorder.record_step_results([StepResult(text="  \n")], oc)

    assert asyncio.run(scenario()) == []


def test_sub_agent_entries_carry_the_sub_agent_identity(tracer, recording_memory) -> None:
    async def scenario():
        recorder, oc = _recorder_and_operation(tracer, recording_memory(), parent_agent_id="supervisor")
        return recorder.record_step_results([StepResult(text="Found it")], oc)

    record = asyncio.run(scenario())[0]

    assert record.sub_agent_id == "researcher"
    assert record.sub_agent_name == "researcher"


def test_steps_without_a_user_stay_on_the_context_only(tracer, recording_memory) -> None:
    memory = recording_memory()

    async def scenario():
        recorder, oc = _recorder_and_operation(tracer, memory, user_id=None)
        records = recorder.record_step_results([StepResult(text="hello")], oc)
        return oc, records

    oc, records = asyncio.run(scenario())

    assert records == []
    assert memory.step_records == {}
    assert [entry.content for entry in oc.conversation_steps] == ["hello"]


def test_step_persistence_failure_is_swallowed(tracer, recording_memory) -> None:
    class BrokenSteps(recording_memory):
        async def save_conversation_steps(self, records):
            raise RuntimeError("step store offline")

    async def scenario():
        with capture_logs() as logs:
            recorder, oc = _recorder_and_operation(tracer, BrokenSteps())
            records = recorder.record_step_results([StepResult(text="hello")], oc)
            await recorder.wait_for_pending_writes()
        return records, logs

    records, logs = asyncio.run(scenario())

    assert len(records) == 1
    failure = next(log for log in logs if log["event"] == "Failed to persist conversation steps")
    assert failure["error"] == "step store offline"
