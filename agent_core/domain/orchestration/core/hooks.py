from dataclasses import dataclass
from typing import Any, Callable, List, Optional
import inspect

HookFn = Callable[..., Any]

# Both agent-level and call-level listeners run, call-level first
COMPOSITE_HOOKS = (
    "on_start",
    "on_end",
    "on_error",
    "on_tool_start",
    "on_tool_end",
    "on_step_finish",
    "on_handoff",
    "on_handoff_complete",
)

# Call-level listener replaces the agent-level one
REPLACED_HOOKS = (
    "on_prepare_messages",
    "on_prepare_model_messages",
)


@dataclass
class AgentHooks:
    """Lifecycle listeners; each is called with keyword arguments and may be async"""

    on_start: Optional[HookFn] = None
    on_end: Optional[HookFn] = None
    on_error: Optional[HookFn] = None
    on_tool_start: Optional[HookFn] = None
    on_tool_end: Optional[HookFn] = None
    on_step_finish: Optional[HookFn] = None
    on_handoff: Optional[HookFn] = None
    on_handoff_complete: Optional[HookFn] = None
    on_prepare_messages: Optional[HookFn] = None
    on_prepare_model_messages: Optional[HookFn] = None

    async def call(self, name: str, **kwargs) -> Any:
        hook = getattr(self, name)
        if hook is None:
            return None
        return await _invoke(hook, kwargs)


async def _invoke(hook: HookFn, kwargs) -> Any:
    result = hook(**kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


def _composite(listeners: List[HookFn]) -> HookFn:
    async def run_all(**kwargs):
        for listener in listeners:
            await _invoke(listener, kwargs)

    return run_all


def create_hooks(**listeners: HookFn) -> AgentHooks:
    return AgentHooks(**listeners)


def merge_hooks(agent_hooks: Optional[AgentHooks], call_hooks: Optional[AgentHooks]) -> AgentHooks:
    """Combine agent-level and call-level hooks for one call"""

    agent_hooks = agent_hooks or AgentHooks()
    if call_hooks is None:
        return agent_hooks

    merged = AgentHooks()
    for name in COMPOSITE_HOOKS:
        listeners = [h for h in (getattr(call_hooks, name), getattr(agent_hooks, name)) if h is not None]
        if len(listeners) > 1:
            setattr(merged, name, _composite(listeners))
        elif listeners:
            setattr(merged, name, listeners[0])

    for name in REPLACED_HOOKS:
        setattr(merged, name, getattr(call_hooks, name) or getattr(agent_hooks, name))

    return merged

