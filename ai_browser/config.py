"""Configuration system for ai-browser.

Every value is read from the environment at access time so tests and the CLI
can change settings after import.
"""

import os
from pathlib import Path


def is_running_in_docker() -> bool:
	"""Detect if we are running in a docker container, used to pick a sensible default CDP host"""
	try:
		if Path('/.dockerenv').exists() or 'docker' in Path('/proc/1/cgroup').read_text().lower():
			return True
	except Exception:
		pass
	return False


class Config:
	"""Lazy env-backed configuration, one property per setting."""

	# Logging
	@property
	def AI_BROWSER_LOGGING_LEVEL(self) -> str:
		return os.getenv('AI_BROWSER_LOGGING_LEVEL', 'info').lower()

	@property
	def CDP_LOGGING_LEVEL(self) -> str:
		return os.getenv('CDP_LOGGING_LEVEL', 'WARNING')

	@property
	def AI_BROWSER_SETUP_LOGGING(self) -> bool:
		return os.getenv('AI_BROWSER_SETUP_LOGGING', 'true').lower()[:1] in 'ty1'

	@property
	def AI_BROWSER_DEBUG_LOG_FILE(self) -> str | None:
		return os.getenv('AI_BROWSER_DEBUG_LOG_FILE') or None

	@property
	def AI_BROWSER_INFO_LOG_FILE(self) -> str | None:
		return os.getenv('AI_BROWSER_INFO_LOG_FILE') or None

	# Browser connection
	@property
	def AI_BROWSER_CDP_URL(self) -> str:
		default_host = 'host.docker.internal' if is_running_in_docker() else '127.0.0.1'
		return os.getenv('AI_BROWSER_CDP_URL', f'http://{default_host}:9222')

	# Tool-call limits
	@property
	def AI_BROWSER_TOOL_TIMEOUT_MS(self) -> int:
		return int(os.getenv('AI_BROWSER_TOOL_TIMEOUT_MS', '60000'))

	@property
	def AI_BROWSER_NAVIGATION_TIMEOUT_MS(self) -> int:
		return int(os.getenv('AI_BROWSER_NAVIGATION_TIMEOUT_MS', '30000'))

	# Telemetry retention, number of prior navigations kept per view besides the current one
	@property
	def AI_BROWSER_PRESERVED_NAVIGATIONS(self) -> int:
		return int(os.getenv('AI_BROWSER_PRESERVED_NAVIGATIONS', '3'))


CONFIG = Config()
