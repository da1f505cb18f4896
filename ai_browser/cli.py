import asyncio
import json
import sys

import click

from ai_browser.config import CONFIG


@click.command()
@click.option('--version', is_flag=True, help='Print version and exit')
@click.option('--cdp-url', type=str, help='Connect to existing Chrome via CDP URL (e.g. http://localhost:9222)')
@click.option('--debug', is_flag=True, help='Log at debug level (logs go to stderr)')
@click.option('--list-tools', is_flag=True, help='Print the tool catalog as JSON and exit')
def main(debug: bool = False, **kwargs):
	"""ai-browser MCP server

	Connects to a running Chromium (started with --remote-debugging-port) and
	serves the browser tools over MCP on stdin/stdout.
	"""

	if kwargs['version']:
		from importlib.metadata import version

		print(version('ai-browser'))
		sys.exit(0)

	if kwargs['list_tools']:
		from ai_browser.browser.context import BrowserContext
		from ai_browser.tools.service import ToolDispatcher

		print(json.dumps(ToolDispatcher(BrowserContext()).list_tools(), indent=2))
		return

	from ai_browser.mcp.server import main as mcp_main

	cdp_url = kwargs.get('cdp_url') or CONFIG.AI_BROWSER_CDP_URL
	log_level = 'debug' if debug else CONFIG.AI_BROWSER_LOGGING_LEVEL
	try:
		asyncio.run(mcp_main(cdp_url=cdp_url, log_level=log_level))
	except KeyboardInterrupt:
		pass
	except RuntimeError as e:
		click.echo(f'❌ {e}', err=True)
		sys.exit(1)


if __name__ == '__main__':
	main()
