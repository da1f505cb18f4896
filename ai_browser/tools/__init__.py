from ai_browser.tools.registry import RegisteredTool, Registry
from ai_browser.tools.service import ToolDispatcher, paginate
from ai_browser.tools.views import ToolResult

__all__ = ['RegisteredTool', 'Registry', 'ToolDispatcher', 'ToolResult', 'paginate']
