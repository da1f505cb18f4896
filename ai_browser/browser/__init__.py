from typing import TYPE_CHECKING

# Type stubs for lazy imports
if TYPE_CHECKING:
	from .context import BrowserContext
	from .session import BrowserSession
	from .view_manager import ViewManager


# Lazy imports mapping for heavy browser components
_LAZY_IMPORTS = {
	'BrowserContext': ('.context', 'BrowserContext'),
	'BrowserSession': ('.session', 'BrowserSession'),
	'ViewManager': ('.view_manager', 'ViewManager'),
}


def __getattr__(name: str):
	"""Lazy import mechanism for heavy browser components."""
	if name in _LAZY_IMPORTS:
		module_path, attr_name = _LAZY_IMPORTS[name]
		full_module_path = f'ai_browser.browser{module_path}'
		try:
			from importlib import import_module

			module = import_module(full_module_path)
			attr = getattr(module, attr_name)
			# Cache the imported attribute in the module's globals
			globals()[name] = attr
			return attr
		except ImportError as e:
			raise ImportError(f'Failed to import {name} from {full_module_path}: {e}') from e

	raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
	'BrowserContext',
	'BrowserSession',
	'ViewManager',
]
