from structlog.testing import capture_logs

from agent_core.domain.context.memory.conversation_buffer import ConversationBuffer
from agent_core.domain.context.memory.memory_manager import MemoryManager
from agent_core.domain.context.memory.persist_queue import MemoryPersistQueue
from agent_core.domain.context.operation_context_factory import (
    DELEGATION_DEPTH_KEY,
    OperationContextFactory,
    merge_context_maps,
)
from agent_core.domain.orchestration.core.abort import AbortController, Bailed
from agent_core.domain.orchestration.core.options import GenerationOptions


def _factory(tracer, name="assistant", default_context=None):
    memory_manager = MemoryManager(None, agent_id=name, agent_name=name)
    return OperationContextFactory(
        agent_id=name,
        agent_name=name,
        tracer=tracer,
        memory_manager=memory_manager,
        default_context=default_context
    )


def test_parent_map_wins_and_is_backfilled_in_place() -> None:
    parent = {"tenant": "acme"}
    runtime = {"tenant": "other", "locale": "fr"}
    default = {"locale": "en", "tier": "gold"}

    merged = merge_context_maps(parent, runtime, default)

    assert merged is parent
    assert merged == {"tenant": "acme", "locale": "fr", "tier": "gold"}


def test_runtime_map_is_used_when_there_is_no_parent() -> None:
    runtime = {"request": 1}
    merged = merge_context_maps(None, runtime, {"request": 2, "extra": True})

    assert merged is runtime
    assert merged == {"request": 1, "extra": True}
    assert merge_context_maps(None, None, None) == {}


def test_create_sets_identity_and_system_state(tracer) -> None:
    oc = _factory(tracer).create(
        "hello",
        GenerationOptions(user_id="u1", conversation_id="c1", context={"k": "v"}),
        "generate_text"
    )

    assert oc.operation_id
    assert oc.user_id == "u1"
    assert oc.conversation_id == "c1"
    assert oc.context == {"k": "v"}
    assert oc.is_active
    assert oc.parent_agent_id is None
    assert isinstance(oc.buffer, ConversationBuffer)
    assert isinstance(oc.persist_queue, MemoryPersistQueue)
    assert oc.agent_metadata.agent_id == "assistant"
    assert oc.system_context[DELEGATION_DEPTH_KEY] == 0

    root = tracer.spans[0]
    assert root.name == "assistant"
    assert root.input == "hello"
    assert root.metadata["agent.operation"] == "generate_text"
    assert root.trace_updates[0]["session_id"] == "c1"


def test_caller_context_map_is_used_by_reference(tracer) -> None:
    runtime = {}
    oc = _factory(tracer, default_context={"region": "eu"}).create("hi", GenerationOptions(context=runtime), "generate_text")

    oc.context["written_by_tool"] = True

    assert runtime == {"region": "eu", "written_by_tool": True}


def test_child_shares_chain_state_with_parent(tracer) -> None:
    parent = _factory(tracer, "supervisor").create(
        "plan a trip",
        GenerationOptions(user_id="u1", conversation_id="c1", context={"trip": "rome"}),
        "generate_text"
    )
    child = _factory(tracer, "researcher", default_context={"depth_hint": 1}).create(
        "find hotels",
        GenerationOptions(parent_operation_context=parent, parent_agent_id="supervisor", parent_span=parent.trace_context.root_span),
        "generate_text"
    )

    assert child.operation_id != parent.operation_id
    assert child.context is parent.context
    assert parent.context["depth_hint"] == 1
    assert child.abort_controller is parent.abort_controller
    assert child.conversation_steps is parent.conversation_steps
    assert child.buffer is not parent.buffer
    assert child.user_id == "u1"
    assert child.conversation_id == "c1"
    assert child.parent_agent_id == "supervisor"
    assert child.system_context[DELEGATION_DEPTH_KEY] == 1

    # Nested under the parent's root span rather than a new trace
    assert len(tracer.spans) == 1
    assert tracer.spans[0].children[0].name == "researcher"


def test_external_signal_reaches_the_operation(tracer) -> None:
    external = AbortController()
    oc = _factory(tracer).create("hi", GenerationOptions(abort_signal=external.signal), "stream_text")

    bail = Bailed(agent_name="writer", response="done")
    external.abort(bail)

    assert oc.abort_signal.aborted
    assert oc.abort_signal.reason is bail
    assert oc.bailed_result.agent_name == "writer"
    assert oc.bailed_result.response == "done"


def test_already_aborted_external_signal_aborts_at_creation(tracer) -> None:
    external = AbortController()
    external.abort("too late")

    oc = _factory(tracer).create("hi", GenerationOptions(abort_signal=external.signal), "generate_text")

    assert oc.abort_signal.aborted
    assert oc.abort_signal.reason.message == "too late"


def test_abort_does_not_flow_back_to_the_external_signal(tracer) -> None:
    external = AbortController()
    oc = _factory(tracer).create("hi", GenerationOptions(abort_signal=external.signal), "generate_text")

    oc.abort_controller.abort("internal")

    assert oc.abort_signal.aborted
    assert not external.signal.aborted


def test_logger_is_bound_to_the_operation(tracer) -> None:
    with capture_logs() as logs:
        oc = _factory(tracer).create("hi", GenerationOptions(user_id="u1", conversation_id="c1"), "generate_text")
        oc.logger.info("checkpoint")

    entry = next(log for log in logs if log["event"] == "checkpoint")
    assert entry["operation_id"] == oc.operation_id
    assert entry["agent_name"] == "assistant"
    assert entry["user_id"] == "u1"
    assert "is_sub_agent" not in entry


def test_sub_agent_logger_carries_delegation_fields(tracer) -> None:
    parent = _factory(tracer, "supervisor").create("hi", GenerationOptions(), "generate_text")

    with capture_logs() as logs:
        child = _factory(tracer, "researcher").create(
            "task",
            GenerationOptions(parent_operation_context=parent, parent_agent_id="supervisor"),
            "generate_text"
        )
        child.logger.info("checkpoint")

    entry = next(log for log in logs if log["event"] == "checkpoint")
    assert entry["parent_agent_id"] == "supervisor"
    assert entry["is_sub_agent"] is True
    assert entry["delegation_depth"] == 1
