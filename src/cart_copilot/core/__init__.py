# Core package
from .config import CopilotConfig, CoordinatorConfig, MergeStrategy
from .errors import CopilotError, ErrorCode, SessionCancelledError, ToolError

__all__ = ['CopilotConfig', 'CoordinatorConfig', 'MergeStrategy', 'CopilotError', 'ErrorCode', 'SessionCancelledError', 'ToolError']
