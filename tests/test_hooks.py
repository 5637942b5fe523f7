import asyncio

from agent_core.domain.orchestration.core.hooks import AgentHooks, create_hooks, merge_hooks


def test_call_level_listeners_run_before_agent_level_ones() -> None:
    calls = []

    async def call_level(**kwargs):
        calls.append(("call", kwargs["agent"]))

    agent_hooks = create_hooks(on_start=lambda **kwargs: calls.append(("agent", kwargs["agent"])))
    merged = merge_hooks(agent_hooks, AgentHooks(on_start=call_level))

    asyncio.run(merged.call("on_start", agent="assistant", context=None))

    assert calls == [("call", "assistant"), ("agent", "assistant")]


def test_prepare_hooks_are_replaced_by_call_level_ones() -> None:
    agent_hooks = AgentHooks(
        on_prepare_messages=lambda **kwargs: {"messages": ["agent"]},
        on_prepare_model_messages=lambda **kwargs: ["agent-model"]
    )
    merged = merge_hooks(agent_hooks, AgentHooks(on_prepare_messages=lambda **kwargs: {"messages": ["call"]}))

    assert asyncio.run(merged.call("on_prepare_messages", messages=[])) == {"messages": ["call"]}
    assert asyncio.run(merged.call("on_prepare_model_messages", messages=[])) == ["agent-model"]


def test_missing_hooks_are_skipped() -> None:
    assert asyncio.run(AgentHooks().call("on_end", output=None)) is None
    assert merge_hooks(None, None).on_end is None


def test_agent_hooks_are_used_as_is_without_call_hooks() -> None:
    agent_hooks = AgentHooks(on_end=lambda **kwargs: None)
    assert merge_hooks(agent_hooks, None) is agent_hooks
