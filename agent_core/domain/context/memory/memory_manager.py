from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import uuid

from langchain_core.messages import BaseMessage

from agent_core.domain.context.memory.protocol import Memory
from agent_core.domain.models.agent_state import ConversationStepRecord
from agent_core.domain.models.operation_context import OperationContext
from agent_core.domain.tool.tool import Tool, ToolExecutionContext


@dataclass
class SemanticMemoryOptions:
    """How similar past messages are mixed into the recent history"""
    enabled: bool = True
    semantic_limit: int = 5
    semantic_threshold: float = 0.3
    merge_strategy: str = "append"


def merge_messages(recent: List[BaseMessage], similar: List[BaseMessage], strategy: str) -> List[BaseMessage]:
    """Merge recent and similar messages without duplicates"""

    recent_ids = {m.id for m in recent if m.id}
    extra = [m for m in similar if not m.id or m.id not in recent_ids]

    if strategy == "prepend":
        return extra + recent
    if strategy == "interleave":
        merged: List[BaseMessage] = []
        for index in range(max(len(recent), len(extra))):
            if index < len(extra):
                merged.append(extra[index])
            if index < len(recent):
                merged.append(recent[index])
        return merged
    return recent + extra


class MemoryManager:
    """Reads and writes conversation memory for one agent"""

    def __init__(self, memory: Optional[Memory], agent_id: str, agent_name: str, history_limit: int = 100):
        self.memory = memory
        self.agent_id = agent_id
        self.agent_name = agent_name
        self.history_limit = history_limit

    @property
    def enabled(self) -> bool:
        return self.memory is not None

    def has_vector_support(self) -> bool:
        supports = getattr(self.memory, "has_vector_support", None)
        return bool(supports and supports() and hasattr(self.memory, "search_similar"))

    def has_working_memory_support(self) -> bool:
        supports = getattr(self.memory, "has_working_memory_support", None)
        return bool(supports and supports())

    async def prepare_conversation_context(
        self,
        oc: OperationContext,
        input: Any,
        limit: Optional[int] = None,
        semantic: Optional[SemanticMemoryOptions] = None
    ) -> Tuple[List[BaseMessage], Optional[str]]:
        """Load history for the call, assigning a conversation id when missing"""

        if not self.enabled or not oc.user_id:
            return [], oc.conversation_id

        if not oc.conversation_id:
            oc.conversation_id = str(uuid.uuid4())
            oc.logger = oc.logger.bind(conversation_id=oc.conversation_id)
            oc.trace_context.set_conversation_id(oc.conversation_id)

        query = input if isinstance(input, str) else None
        messages = await self.get_messages(oc, limit=limit, semantic=semantic, query=query)
        return messages, oc.conversation_id

    async def get_messages(
        self,
        oc: OperationContext,
        limit: Optional[int] = None,
        semantic: Optional[SemanticMemoryOptions] = None,
        query: Optional[str] = None
    ) -> List[BaseMessage]:
        if not self.enabled or not oc.user_id or not oc.conversation_id:
            return []

        use_semantic = bool(semantic and semantic.enabled and query and self.has_vector_support())
        span = oc.trace_context.create_child_span(
            "memory.read",
            "memory",
            input={"user_id": oc.user_id, "conversation_id": oc.conversation_id, "query": query},
            attributes={"memory.limit": limit or self.history_limit, "memory.semantic": use_semantic}
        )

        try:
            messages = await self.memory.get_messages(oc.user_id, oc.conversation_id, limit or self.history_limit)

            if use_semantic:
                similar = await self.memory.search_similar(
                    query,
                    user_id=oc.user_id,
                    conversation_id=oc.conversation_id,
                    limit=semantic.semantic_limit,
                    threshold=semantic.semantic_threshold
                )
                messages = merge_messages(messages, similar, semantic.merge_strategy)
        except Exception as e:
            oc.trace_context.end_child_span(span, "error", error=e)
            oc.logger.error("Failed to read memory", error=str(e))
            raise

        oc.trace_context.end_child_span(span, "completed", attributes={"memory.count": len(messages)})
        return messages

    async def save_message(self, oc: OperationContext, message: BaseMessage):
        if not self.enabled or not oc.user_id or not oc.conversation_id:
            return
        await self.memory.save_message(message, oc.user_id, oc.conversation_id)

    async def save_conversation_steps(self, records: List[ConversationStepRecord]):
        if not self.enabled or not records:
            return
        await self.memory.save_conversation_steps(records)

    def create_working_memory_tools(self) -> List[Tool]:
        """Tools that let the model read and edit its working memory"""

        if not self.has_working_memory_support():
            return []

        memory = self.memory

        async def get_working_memory(args: Dict[str, Any], ctx: ToolExecutionContext):
            content = await memory.get_working_memory(ctx.user_id, ctx.conversation_id)
            return {"content": content or ""}

        async def update_working_memory(args: Dict[str, Any], ctx: ToolExecutionContext):
            await memory.update_working_memory(args["content"], ctx.user_id, ctx.conversation_id)
            return {"success": True}

        async def clear_working_memory(args: Dict[str, Any], ctx: ToolExecutionContext):
            await memory.clear_working_memory(ctx.user_id, ctx.conversation_id)
            return {"success": True}

        return [
            Tool(
                name="get_working_memory",
                description="Read the working memory kept for this conversation",
                execute=get_working_memory
            ),
            Tool(
                name="update_working_memory",
                description="Replace the working memory kept for this conversation",
                parameters={
                    "type": "object",
                    "properties": {"content": {"type": "string"}},
                    "required": ["content"]
                },
                execute=update_working_memory
            ),
            Tool(
                name="clear_working_memory",
                description="Clear the working memory kept for this conversation",
                execute=clear_working_memory
            ),
        ]
