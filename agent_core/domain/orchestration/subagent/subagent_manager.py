from typing import Any, Dict, List, Optional, TYPE_CHECKING
import asyncio
import json

import structlog

from agent_core.domain.orchestration.core.errors import AbortedError, CancellationError
from agent_core.domain.orchestration.core.hooks import AgentHooks
from agent_core.domain.orchestration.core.registry import AgentRegistry
from agent_core.domain.tool.tool import Tool, ToolExecutionContext

if TYPE_CHECKING:
    from agent_core.domain.orchestration.core.main_agent import Agent

logger = structlog.get_logger(__name__)

DELEGATE_TOOL_NAME = "delegate_task"


class SubAgentManager:
    """Sub-agents of a supervisor and the tool used to delegate to them"""

    def __init__(self, supervisor: "Agent", sub_agents: Optional[List["Agent"]] = None, registry: Optional[AgentRegistry] = None):
        self.supervisor = supervisor
        self.registry = registry
        self.sub_agents: List["Agent"] = []
        for agent in sub_agents or []:
            self.add_sub_agent(agent)

    def add_sub_agent(self, agent: "Agent"):
        if any(existing.id == agent.id for existing in self.sub_agents):
            return

        self.sub_agents.append(agent)
        if self.registry is not None:
            self.registry.register_sub_agent(self.supervisor.id, agent.id)

        logger.debug("Sub-agent added", supervisor=self.supervisor.name, sub_agent=agent.name)

    def remove_sub_agent(self, agent_id: str) -> bool:
        before = len(self.sub_agents)
        self.sub_agents = [agent for agent in self.sub_agents if agent.id != agent_id]

        if self.registry is not None:
            self.registry.unregister_sub_agent(self.supervisor.id, agent_id)
        return len(self.sub_agents) < before

    def has_sub_agents(self) -> bool:
        return bool(self.sub_agents)

    def get_sub_agents(self) -> List["Agent"]:
        return list(self.sub_agents)

    def generate_supervisor_system_message(self, instructions: str) -> str:
        """Append the sub-agent roster to the supervisor's instructions"""

        if not self.sub_agents:
            return instructions

        roster = "\n".join(
            f"- {agent.name}: {self._describe(agent)}"
            for agent in self.sub_agents
        )
        return (
            f"{instructions}\n\n"
            "You are a supervisor. Delegate work to the specialized agents below with the "
            f"{DELEGATE_TOOL_NAME} tool and combine their answers.\n"
            f"<specialized_agents>\n{roster}\n</specialized_agents>"
        )

    @staticmethod
    def _describe(agent: "Agent") -> str:
        if agent.purpose:
            return agent.purpose
        if isinstance(agent.instructions, str):
            return agent.instructions
        return agent.name

    def create_delegate_tool(self, hooks: AgentHooks) -> Tool:
        """Tool that hands a task to one or more sub-agents"""

        names = [agent.name for agent in self.sub_agents]

        async def delegate(args: Dict[str, Any], ctx: ToolExecutionContext) -> List[Dict[str, Any]]:
            targets = [agent for agent in self.sub_agents if agent.name in args["target_agents"]]
            if not targets:
                raise ValueError(f"No sub-agent found for {args['target_agents']}; available: {names}")

            return list(await asyncio.gather(*[
                self.handoff_task(agent, args["task"], args.get("context") or {}, ctx, hooks)
                for agent in targets
            ]))

        return Tool(
            name=DELEGATE_TOOL_NAME,
            description="Delegate a task to one or more specialized agents",
            parameters={
                "type": "object",
                "properties": {
                    "task": {"type": "string", "description": "The task to delegate"},
                    "target_agents": {
                        "type": "array",
                        "items": {"type": "string", "enum": names},
                        "minItems": 1
                    },
                    "context": {"type": "object", "description": "Extra context for the sub-agents"}
                },
                "required": ["task", "target_agents"]
            },
            execute=delegate
        )

    async def handoff_task(
        self,
        target: "Agent",
        task: str,
        extra_context: Dict[str, Any],
        ctx: ToolExecutionContext,
        hooks: AgentHooks
    ) -> Dict[str, Any]:
        """Run one sub-agent under the supervisor's operation"""

        oc = ctx.operation_context
        await hooks.call("on_handoff", agent=target, source_agent=self.supervisor, context=oc)

        prompt = task
        if extra_context:
            prompt = f"{task}\n\nContext: {json.dumps(extra_context, default=str)}"

        try:
            result = await target.generate_text(
                prompt,
                parent_operation_context=oc,
                parent_agent_id=self.supervisor.id,
                parent_span=ctx.span
            )
        except (AbortedError, CancellationError):
            raise
        except Exception as e:
            oc.logger.error("Sub-agent failed", sub_agent=target.name, error=str(e))
            return {
                "agent_name": target.name,
                "response": f"Error in delegating task to {target.name}: {e}",
                "error": True
            }

        bail_state: Dict[str, Any] = {"bailed": result.bailed, "response": result.text}

        def bail(response: Optional[str] = None):
            bail_state["bailed"] = True
            if response is not None:
                bail_state["response"] = response

        await hooks.call(
            "on_handoff_complete",
            agent=target,
            source_agent=self.supervisor,
            result=result,
            context=oc,
            bail=bail
        )

        payload = {
            "agent_name": target.name,
            "response": bail_state["response"],
            "usage": result.usage.model_dump() if result.usage else None
        }
        if bail_state["bailed"]:
            payload["bailed"] = True
        return payload
