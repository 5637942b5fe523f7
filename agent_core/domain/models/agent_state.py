from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepType(str, Enum):
    """Kind of a recorded conversation step"""
    TEXT = "text"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"


class FinishReason(str, Enum):
    """Why a model call stopped"""
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool-calls"
    CONTENT_FILTER = "content-filter"
    ERROR = "error"
    OTHER = "other"
    UNKNOWN = "unknown"


class UsageInfo(BaseModel):
    """Token usage of one or more model invocations"""
    prompt_tokens: int = Field(default=0)
    completion_tokens: int = Field(default=0)
    total_tokens: int = Field(default=0)

    def __add__(self, other: Optional["UsageInfo"]) -> "UsageInfo":
        if other is None:
            return self
        return UsageInfo(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens
        )


class StepWithContent(BaseModel):
    """A step entry kept on the operation context"""
    id: str = Field(description="Record identifier")
    type: StepType
    role: str = Field(default="assistant")
    step_index: int = Field(description="Index of the model step this entry belongs to")
    content: Optional[str] = Field(None, description="Text content for text steps")
    name: Optional[str] = Field(None, description="Tool name for tool steps")
    arguments: Optional[Dict[str, Any]] = Field(None, description="Tool call arguments")
    result: Any = Field(None, description="Tool result payload")
    usage: Optional[UsageInfo] = None
    sub_agent_id: Optional[str] = None
    sub_agent_name: Optional[str] = None


class ConversationStepRecord(BaseModel):
    """Persisted record of a single model step part"""
    id: str = Field(description="Record identifier, stable across retries")
    conversation_id: str
    user_id: str
    agent_id: str
    agent_name: str
    operation_id: str
    step_index: int
    type: StepType
    role: str = Field(default="assistant")
    content: Optional[str] = None
    name: Optional[str] = Field(None, description="Tool name for tool steps")
    arguments: Optional[Dict[str, Any]] = None
    result: Any = None
    usage: Optional[UsageInfo] = None
    sub_agent_id: Optional[str] = None
    sub_agent_name: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class BailedResult(BaseModel):
    """Response a sub-agent hands back as the final answer of the chain"""
    agent_name: str = Field(default="unknown")
    response: str


class AgentMetadata(BaseModel):
    """Identity of the agent running an operation"""
    agent_id: str
    agent_name: str


class AgentState(BaseModel):
    """Snapshot of an agent's configuration"""
    id: str
    name: str
    purpose: Optional[str] = None
    instructions: Optional[str] = None
    status: str = Field(default="idle")
    model: str
    node_id: str
    tools: List[Dict[str, Any]] = Field(default_factory=list)
    sub_agents: List[Dict[str, Any]] = Field(default_factory=list)
    memory: Dict[str, Any] = Field(default_factory=dict)
    guardrails: Dict[str, List[str]] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
