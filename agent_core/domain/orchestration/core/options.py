from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from agent_core.domain.context.memory.memory_manager import SemanticMemoryOptions
from agent_core.domain.guardrail.guardrail import Guardrail
from agent_core.domain.orchestration.core.abort import AbortSignal
from agent_core.domain.orchestration.core.hooks import AgentHooks
from agent_core.domain.tool.tool import Tool

if TYPE_CHECKING:
    from agent_core.domain.models.operation_context import OperationContext


@dataclass
class GenerationOptions:
    """Per-call options accepted by every Agent entry point"""

    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    context: Optional[Dict[Any, Any]] = None

    # Delegation
    parent_operation_context: Optional["OperationContext"] = None
    parent_agent_id: Optional[str] = None
    parent_span: Any = None

    # Cancellation
    abort_signal: Optional[AbortSignal] = None

    # Behaviour
    hooks: Optional[AgentHooks] = None
    input_guardrails: List[Guardrail] = field(default_factory=list)
    output_guardrails: List[Guardrail] = field(default_factory=list)
    tools: List[Tool] = field(default_factory=list)
    max_steps: Optional[int] = None
    stop_when: Optional[Callable[[List[Any]], bool]] = None

    # Model settings
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    provider_options: Dict[str, Any] = field(default_factory=dict)

    # Memory
    context_limit: Optional[int] = None
    semantic_memory: Optional[SemanticMemoryOptions] = None

    # Streaming
    on_finish: Optional[Callable[..., Any]] = None

    elicitation: Optional[Callable[..., Any]] = None
