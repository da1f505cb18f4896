"""MCP server exposing the ai-browser tools over stdio.

The hosting agent launches it as a subprocess and talks JSON-RPC on
stdin/stdout, so every log line goes to stderr.

Usage:
    ai-browser --cdp-url http://127.0.0.1:9222

Or as an MCP server in an MCP client config:
    {
        "mcpServers": {
            "ai-browser": {
                "command": "ai-browser",
                "args": ["--cdp-url", "http://127.0.0.1:9222"]
            }
        }
    }
"""

import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from typing import Any

import mcp.server.stdio
import mcp.types as types
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from ai_browser.browser.context import BrowserContext
from ai_browser.tools.service import ToolDispatcher
from ai_browser.tools.views import ImageContent, TextContent, ToolResult

logger = logging.getLogger(__name__)

SERVER_NAME = 'ai-browser'


def get_ai_browser_version() -> str:
	try:
		return version('ai-browser')
	except PackageNotFoundError:
		return '0.0.0'


class ToolCallError(Exception):
	"""Raised from the call_tool handler so the MCP server reports the result with isError set."""


def to_mcp_content(result: ToolResult) -> list[types.TextContent | types.ImageContent]:
	content: list[types.TextContent | types.ImageContent] = []
	for block in result.content:
		if isinstance(block, TextContent):
			content.append(types.TextContent(type='text', text=block.text))
		elif isinstance(block, ImageContent):
			content.append(types.ImageContent(type='image', data=block.data, mimeType=block.mime_type))
	return content


class AIBrowserServer:
	"""MCP Server for ai-browser capabilities."""

	def __init__(self, context: BrowserContext | None = None):
		self.server = Server(SERVER_NAME)
		self.context = context or BrowserContext()
		self.dispatcher = ToolDispatcher(self.context)
		self._setup_handlers()

	def _setup_handlers(self):
		"""Setup MCP server handlers."""

		@self.server.list_tools()
		async def handle_list_tools() -> list[types.Tool]:
			"""List all available ai-browser tools."""
			return [
				types.Tool(name=tool['name'], description=tool['description'], inputSchema=tool['inputSchema'])
				for tool in self.dispatcher.list_tools()
			]

		@self.server.call_tool()
		async def handle_call_tool(
			name: str, arguments: dict[str, Any] | None
		) -> list[types.TextContent | types.ImageContent]:
			"""Handle tool execution."""
			result = await self.dispatcher.call_tool(name, arguments or {})
			if result.is_error:
				raise ToolCallError(result.text_content)
			return to_mcp_content(result)

	async def connect(self, cdp_url: str | None = None) -> None:
		await self.context.connect(cdp_url=cdp_url)

	async def run(self):
		"""Run the MCP server."""
		async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
			await self.server.run(
				read_stream,
				write_stream,
				InitializationOptions(
					server_name=SERVER_NAME,
					server_version=get_ai_browser_version(),
					capabilities=self.server.get_capabilities(
						notification_options=NotificationOptions(),
						experimental_capabilities={},
					),
				),
			)


async def main(cdp_url: str | None = None, log_level: str = 'warning'):
	from ai_browser.logging_config import setup_logging

	# stdout belongs to the JSON-RPC stream
	setup_logging(stream=sys.stderr, log_level=log_level, force_setup=True)

	server = AIBrowserServer()
	await server.connect(cdp_url)
	logger.info(f'🔌 {SERVER_NAME} MCP server ready with {len(server.dispatcher.registry)} tools')
	try:
		await server.run()
	finally:
		await server.context.stop()
