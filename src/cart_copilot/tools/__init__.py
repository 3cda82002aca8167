"""
Browser tools
Every site action the workers may perform, behind the BaseTool executor
"""

from .base_tool import BaseTool, ToolConfig, ToolContext, ToolResult, raise_for_result
from .browser_tools import TOOLS

__all__ = ['BaseTool', 'ToolConfig', 'ToolContext', 'ToolResult', 'raise_for_result', 'TOOLS']
