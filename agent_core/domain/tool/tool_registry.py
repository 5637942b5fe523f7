from typing import Callable, Dict, List, Any, Optional, Union

import structlog

from agent_core.domain.llm.protocol import PreparedTool
from agent_core.domain.tool.tool import Tool, Toolkit

logger = structlog.get_logger(__name__)


class ToolManager:
    """Registry for the tools and toolkits of an agent"""

    def __init__(self, items: Optional[List[Union[Tool, Toolkit]]] = None):
        self.tools: Dict[str, Tool] = {}
        self.toolkits: Dict[str, Toolkit] = {}
        self.add_items(items or [])

    def add_items(self, items: List[Union[Tool, Toolkit]]):
        for item in items:
            if isinstance(item, Toolkit):
                self.add_toolkit(item)
            else:
                self.add_tool(item)

    def add_tool(self, tool: Tool):
        """Register a tool, replacing one with the same name"""

        if tool.execute is None:
            raise ValueError(f"Tool '{tool.name}' has no execute function")

        if tool.name in self.tools:
            logger.debug("Replacing tool", tool_name=tool.name)
        self.tools[tool.name] = tool

    def add_toolkit(self, toolkit: Toolkit):
        """Register a toolkit; its tools shadow standalone tools of the same name"""

        for tool in toolkit.tools:
            if tool.execute is None:
                raise ValueError(f"Tool '{tool.name}' in toolkit '{toolkit.name}' has no execute function")
            self.tools.pop(tool.name, None)

        self.toolkits[toolkit.name] = toolkit

    def remove_tool(self, name: str) -> bool:
        if self.tools.pop(name, None) is not None:
            return True

        for toolkit in self.toolkits.values():
            for tool in toolkit.tools:
                if tool.name == name:
                    toolkit.tools.remove(tool)
                    return True
        return False

    def get_tools(self) -> List[Tool]:
        """Standalone tools followed by toolkit tools"""

        tools = list(self.tools.values())
        for toolkit in self.toolkits.values():
            tools.extend(toolkit.tools)
        return tools

    def get_tool(self, name: str) -> Optional[Tool]:
        for tool in self.get_tools():
            if tool.name == name:
                return tool
        return None

    def get_toolkit_instructions(self) -> str:
        """Instructions of toolkits that asked for them to be added to the prompt"""

        sections = [
            toolkit.instructions
            for toolkit in self.toolkits.values()
            if toolkit.add_instructions and toolkit.instructions
        ]
        return "\n\n".join(sections)

    def prepare_tools_for_execution(
        self,
        wrap: Callable[[Tool], Callable[..., Any]],
        extra_tools: Optional[List[Tool]] = None
    ) -> Dict[str, PreparedTool]:
        """Wrap every tool for the model; extra tools override registered ones"""

        tools: Dict[str, Tool] = {tool.name: tool for tool in self.get_tools()}
        for tool in extra_tools or []:
            tools[tool.name] = tool

        return {
            name: PreparedTool(
                name=name,
                description=tool.description,
                parameters=tool.parameters,
                execute=wrap(tool)
            )
            for name, tool in tools.items()
        }
