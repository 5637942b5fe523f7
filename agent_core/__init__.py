from agent_core.domain.context.memory.runtime_memory import InMemoryStorage
from agent_core.domain.guardrail.guardrail import (
    GuardrailAction,
    GuardrailResult,
    create_input_guardrail,
    create_output_guardrail,
)
from agent_core.domain.llm.fake import ScriptedModel, ScriptedStep, ScriptedToolCall
from agent_core.domain.orchestration.core.abort import AbortController, Bailed, Cancelled
from agent_core.domain.orchestration.core.errors import (
    AgentError,
    CancellationError,
    GuardrailRejectedError,
    ToolDeniedError,
)
from agent_core.domain.orchestration.core.hooks import AgentHooks, create_hooks
from agent_core.domain.orchestration.core.main_agent import Agent
from agent_core.domain.orchestration.core.registry import AgentRegistry
from agent_core.domain.tool.tool import Tool, Toolkit, create_tool

__all__ = [
    "AbortController",
    "Agent",
    "AgentError",
    "AgentHooks",
    "AgentRegistry",
    "Bailed",
    "CancellationError",
    "Cancelled",
    "GuardrailAction",
    "GuardrailRejectedError",
    "GuardrailResult",
    "InMemoryStorage",
    "ScriptedModel",
    "ScriptedStep",
    "ScriptedToolCall",
    "Tool",
    "ToolDeniedError",
    "Toolkit",
    "create_hooks",
    "create_input_guardrail",
    "create_output_guardrail",
    "create_tool",
]
