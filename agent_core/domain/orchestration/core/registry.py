from typing import Any, Dict, List, Optional, Set
from collections import defaultdict

import structlog

logger = structlog.get_logger(__name__)


class AgentRegistry:
    """Agents known to a process and their supervisor relations

    Passed to agents explicitly; there is no module-level instance.
    """

    def __init__(self):
        self.agents: Dict[str, Any] = {}
        self.parents: Dict[str, Set[str]] = defaultdict(set)

    def register_agent(self, agent: Any):
        self.agents[agent.id] = agent
        logger.debug("Agent registered", agent_id=agent.id, agent_name=agent.name)

    def unregister_agent(self, agent_id: str):
        self.agents.pop(agent_id, None)
        self.parents.pop(agent_id, None)
        for parents in self.parents.values():
            parents.discard(agent_id)

    def get_agent(self, agent_id: str) -> Optional[Any]:
        return self.agents.get(agent_id)

    def list_agents(self) -> List[Any]:
        return list(self.agents.values())

    def register_sub_agent(self, parent_id: str, child_id: str):
        self.parents[child_id].add(parent_id)

    def unregister_sub_agent(self, parent_id: str, child_id: str):
        self.parents[child_id].discard(parent_id)

    def get_parent_agent_ids(self, child_id: str) -> List[str]:
        return sorted(self.parents.get(child_id, set()))
