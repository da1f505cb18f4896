from typing import TYPE_CHECKING

from ai_browser.config import CONFIG
from ai_browser.logging_config import setup_logging

# MCP mode reconfigures logging onto stderr itself, AI_BROWSER_SETUP_LOGGING=false skips this
if CONFIG.AI_BROWSER_SETUP_LOGGING:
	logger = setup_logging(debug_log_file=CONFIG.AI_BROWSER_DEBUG_LOG_FILE, info_log_file=CONFIG.AI_BROWSER_INFO_LOG_FILE)
else:
	import logging

	logger = logging.getLogger('ai_browser')

# Type stubs for lazy imports
if TYPE_CHECKING:
	from ai_browser.browser.context import BrowserContext
	from ai_browser.browser.session import BrowserSession
	from ai_browser.browser.view_manager import ViewManager
	from ai_browser.dom.service import AccessibilitySnapshotBuilder
	from ai_browser.tools.service import ToolDispatcher
	from ai_browser.tools.views import ToolResult


# Lazy imports mapping, the CDP stack is only loaded when first used
_LAZY_IMPORTS = {
	'BrowserContext': ('ai_browser.browser.context', 'BrowserContext'),
	'BrowserSession': ('ai_browser.browser.session', 'BrowserSession'),
	'ViewManager': ('ai_browser.browser.view_manager', 'ViewManager'),
	'AccessibilitySnapshotBuilder': ('ai_browser.dom.service', 'AccessibilitySnapshotBuilder'),
	'ToolDispatcher': ('ai_browser.tools.service', 'ToolDispatcher'),
	'ToolResult': ('ai_browser.tools.views', 'ToolResult'),
}


def __getattr__(name: str):
	"""Lazy import mechanism, only import modules when they're actually accessed."""
	if name in _LAZY_IMPORTS:
		module_path, attr_name = _LAZY_IMPORTS[name]
		try:
			from importlib import import_module

			module = import_module(module_path)
			attr = getattr(module, attr_name)
			# Cache the imported attribute in the module's globals
			globals()[name] = attr
			return attr
		except ImportError as e:
			raise ImportError(f'Failed to import {name} from {module_path}: {e}') from e

	raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
	'BrowserContext',
	'BrowserSession',
	'ViewManager',
	'AccessibilitySnapshotBuilder',
	'ToolDispatcher',
	'ToolResult',
]
