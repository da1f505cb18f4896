"""Single source of truth for tool names, descriptions, parameter schemas and call limits."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from ai_browser.config import CONFIG

logger = logging.getLogger(__name__)

ToolCategory = Literal['navigation', 'input', 'snapshot', 'network', 'console', 'emulation', 'performance']


class RegisteredTool(BaseModel):
	"""Model representing a registered tool"""

	model_config = ConfigDict(arbitrary_types_allowed=True)

	name: str
	description: str
	category: ToolCategory
	param_model: type[BaseModel]
	function: Callable[..., Awaitable[Any]]
	# fixed budget, or derived from the call's own arguments (e.g. a navigation timeout)
	timeout_ms: int | Callable[[Any], int] | None = None
	# prefix for failures, formatted with the call's parameters, e.g. 'Failed to click element {uid}'
	error_message: str | None = None
	requires_active_view: bool = True

	def resolve_timeout_ms(self, params: BaseModel) -> int:
		if self.timeout_ms is None:
			return CONFIG.AI_BROWSER_TOOL_TIMEOUT_MS
		if callable(self.timeout_ms):
			return self.timeout_ms(params)
		return self.timeout_ms

	def format_error(self, params: BaseModel, message: str) -> str:
		if not self.error_message:
			return message
		return f'{self.error_message.format(**params.model_dump())}: {message}'

	def input_schema(self) -> dict[str, Any]:
		schema = self.param_model.model_json_schema(by_alias=True)
		schema.pop('title', None)
		schema.setdefault('properties', {})
		return schema

	def to_tool_definition(self) -> dict[str, Any]:
		return {'name': self.name, 'description': self.description, 'inputSchema': self.input_schema()}


class Registry:
	"""Collects tools registered with the @registry.action decorator, keyed by function name."""

	def __init__(self):
		self.registry: dict[str, RegisteredTool] = {}

	def action(
		self,
		description: str,
		param_model: type[BaseModel],
		category: ToolCategory,
		timeout_ms: int | Callable[[Any], int] | None = None,
		error_message: str | None = None,
		requires_active_view: bool = True,
	):
		"""Decorator for registering tools

		@param description: Describe the agent what the tool does (better description == better tool calling)
		"""

		def decorator(func: Callable[..., Awaitable[Any]]):
			if func.__name__ in self.registry:
				raise ValueError(f'Tool {func.__name__} is already registered')
			self.registry[func.__name__] = RegisteredTool(
				name=func.__name__,
				description=description,
				category=category,
				param_model=param_model,
				function=func,
				timeout_ms=timeout_ms,
				error_message=error_message,
				requires_active_view=requires_active_view,
			)
			return func

		return decorator

	def get(self, name: str) -> RegisteredTool | None:
		return self.registry.get(name)

	@property
	def names(self) -> list[str]:
		return list(self.registry)

	def list_tools(self, category: ToolCategory | None = None) -> list[dict[str, Any]]:
		return [
			tool.to_tool_definition() for tool in self.registry.values() if category is None or tool.category == category
		]

	def __len__(self) -> int:
		return len(self.registry)
