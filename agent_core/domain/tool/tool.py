from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, TYPE_CHECKING

from langchain_core.messages import BaseMessage
from pydantic import BaseModel, ConfigDict, Field

from agent_core.domain.orchestration.core.abort import AbortSignal

if TYPE_CHECKING:
    from agent_core.domain.models.operation_context import OperationContext


def empty_parameters() -> Dict[str, Any]:
    return {"type": "object", "properties": {}}


class Tool(BaseModel):
    """A function the model can call"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(description="Unique tool name")
    description: str = Field(default="", description="What the tool does, shown to the model")
    parameters: Dict[str, Any] = Field(default_factory=empty_parameters, description="JSON schema of the arguments")
    output_schema: Optional[Type[BaseModel]] = Field(None, description="Model the output must validate against")
    execute: Optional[Callable[..., Any]] = Field(None, description="Called with (args, ToolExecutionContext)")
    tags: List[str] = Field(default_factory=list)

    def get_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "tags": self.tags
        }


class Toolkit(BaseModel):
    """Group of tools sharing instructions"""
    name: str
    description: str = ""
    instructions: Optional[str] = None
    add_instructions: bool = False
    tools: List[Tool] = Field(default_factory=list)


def create_tool(
    name: str,
    execute: Callable[..., Any],
    description: str = "",
    parameters: Optional[Dict[str, Any]] = None,
    output_schema: Optional[Type[BaseModel]] = None
) -> Tool:
    return Tool(
        name=name,
        description=description,
        parameters=parameters or empty_parameters(),
        output_schema=output_schema,
        execute=execute
    )


@dataclass
class ToolExecutionContext:
    """What a tool receives besides its arguments"""
    operation_context: "OperationContext"
    tool_name: str
    tool_call_id: str
    messages: List[BaseMessage] = field(default_factory=list)
    abort_signal: Optional[AbortSignal] = None
    span: Any = None

    @property
    def context(self) -> Dict[Any, Any]:
        return self.operation_context.context

    @property
    def user_id(self) -> Optional[str]:
        return self.operation_context.user_id

    @property
    def conversation_id(self) -> Optional[str]:
        return self.operation_context.conversation_id

    @property
    def logger(self):
        return self.operation_context.logger
