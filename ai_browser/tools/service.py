import asyncio
import base64
import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

import anyio
from pydantic import ValidationError

from ai_browser.browser.context import BrowserContext
from ai_browser.browser.views import (
	BrowserError,
	ConsoleMessageRecord,
	NetworkRequestRecord,
	NoActiveViewError,
	NotFoundError,
	PerformanceTraceResult,
)
from ai_browser.config import CONFIG
from ai_browser.tools.registry import RegisteredTool, Registry
from ai_browser.tools.views import (
	ClickParams,
	ClosePageParams,
	ConsoleMessageParams,
	ConsoleParams,
	DragParams,
	EmulateParams,
	EvaluateParams,
	FillFormParams,
	FillParams,
	HandleDialogParams,
	HoverParams,
	NavigateParams,
	NetworkRequestParams,
	NetworkRequestsParams,
	NewPageParams,
	NoParams,
	PerfInsightParams,
	PerfStartParams,
	PressKeyParams,
	ResizeParams,
	ScreenshotParams,
	SelectPageParams,
	SnapshotParams,
	ToolResult,
	UploadFileParams,
	WaitForParams,
)
from ai_browser.utils import format_bytes, time_execution_async

logger = logging.getLogger(__name__)

T = TypeVar('T')

# bytes per second and latency in ms for each throttling preset
NETWORK_CONDITIONS: dict[str, dict[str, float]] = {
	'Slow 3G': {'download': 500 * 1024 / 8, 'upload': 500 * 1024 / 8, 'latency': 400},
	'Fast 3G': {'download': 1.6 * 1024 * 1024 / 8, 'upload': 750 * 1024 / 8, 'latency': 150},
	'Regular 4G': {'download': 4 * 1024 * 1024 / 8, 'upload': 3 * 1024 * 1024 / 8, 'latency': 20},
	'DSL': {'download': 2 * 1024 * 1024 / 8, 'upload': 1 * 1024 * 1024 / 8, 'latency': 5},
	'WiFi': {'download': 30 * 1024 * 1024 / 8, 'upload': 15 * 1024 * 1024 / 8, 'latency': 2},
}

INSIGHT_SET_ID = 'main'
AVAILABLE_INSIGHTS = ('DocumentLatency', 'LCPBreakdown', 'RenderBlocking')

# how long browser_perf_start records before stopping by itself when autoStop is set
AUTO_STOP_SECONDS = 5.0
# settle time on about:blank before a reload-trace navigates back
RELOAD_SETTLE_SECONDS = 0.5

# slack on top of a tool's own wait so the wait reports its timeout before the call budget does
WAIT_SLACK_MS = 5_000


def _format_number(value: float) -> str:
	"""1.0 -> '1', 1.5 -> '1.5'"""
	if float(value).is_integer():
		return str(int(value))
	return str(value)


def _wait_timeout_ms(timeout: int | None) -> int:
	return timeout if timeout and timeout > 0 else CONFIG.AI_BROWSER_NAVIGATION_TIMEOUT_MS


def _wait_budget_ms(params: Any) -> int:
	return max(CONFIG.AI_BROWSER_TOOL_TIMEOUT_MS, _wait_timeout_ms(params.timeout) + WAIT_SLACK_MS)


def _format_validation_error(tool_name: str, error: ValidationError) -> str:
	problems = []
	for err in error.errors():
		location = '.'.join(str(part) for part in err['loc'])
		message = err['msg']
		if err['type'] == 'value_error' and err.get('ctx', {}).get('error'):
			message = str(err['ctx']['error'])
		problems.append(f'{location}: {message}' if location else message)
	return f'Invalid arguments for {tool_name}: ' + '; '.join(problems)


def paginate(items: list[T], page_size: int | None, page_idx: int | None) -> tuple[list[T], int, int]:
	"""Slice one page out of items.

	Returns (page, start, end) with end exclusive. Without a page size the whole
	list is one page.
	"""
	total = len(items)
	if page_size is None:
		return items, 0, total
	start = (page_idx or 0) * page_size
	end = min(start + page_size, total)
	return items[start:end], start, max(start, end)


def format_page(
	heading: str,
	noun: str,
	items: list[T],
	page_size: int | None,
	page_idx: int | None,
	format_item: Callable[[T], list[str]],
) -> str:
	total = len(items)
	page, start, end = paginate(items, page_size, page_idx)
	if not page:
		if total:
			return f'No {heading.lower()} on page {page_idx or 0} ({total} total).'
		return f'No {heading.lower()} captured.'

	lines = [f'{heading} ({start + 1}-{end} of {total}):' if page_size is not None else f'{heading} ({total} total):', '']
	for item in page:
		lines.extend(format_item(item))
		lines.append('')

	if page_size is not None and start + len(page) < total:
		lines.append(f'Use pageIdx={(page_idx or 0) + 1} to see more {noun}.')
	return '\n'.join(lines)


def _format_request_summary(request: NetworkRequestRecord) -> list[str]:
	status = str(request.status) if request.status else 'pending'
	duration = f'{_format_number(round(request.timing.duration, 2))}ms' if request.timing.duration else '-'
	url = request.url[:100] + ('...' if len(request.url) > 100 else '')
	lines = [
		f'[reqid={request.id}] {request.method} {status} {request.resource_type}',
		f'    URL: {url}',
		f'    Duration: {duration}',
	]
	if request.redirected_to:
		lines.append(f'    Redirected to: {request.redirected_to[:100]}')
	if request.error:
		lines.append(f'    Error: {request.error}')
	return lines


def _format_request_details(request: NetworkRequestRecord) -> str:
	lines = [
		f'# Network Request: reqid={request.id}',
		'',
		'## Basic Info',
		f'URL: {request.url}',
		f'Method: {request.method}',
		f'Resource Type: {request.resource_type}',
		f'Status: {request.status or "pending"} {request.status_text or ""}'.rstrip(),
		f'MIME Type: {request.mime_type or "unknown"}',
		'',
	]
	if request.timing.duration is not None:
		lines += ['## Timing', f'Duration: {_format_number(round(request.timing.duration, 2))}ms', '']
	if request.request_headers:
		lines.append('## Request Headers')
		lines += [f'{key}: {value}' for key, value in request.request_headers.items()]
		lines.append('')
	if request.response_headers:
		lines.append('## Response Headers')
		lines += [f'{key}: {value}' for key, value in request.response_headers.items()]
		lines.append('')
	if request.request_body:
		lines += ['## Request Body', '```', request.request_body[:2000]]
		if len(request.request_body) > 2000:
			lines.append('... (truncated)')
		lines += ['```', '']
	if request.redirected_to:
		lines += ['## Redirect', f'Redirected to: {request.redirected_to}', '']
	if request.error:
		lines += ['## Error', request.error]
	return '\n'.join(lines)


def _format_timestamp(timestamp_ms: float, fmt: str) -> str:
	return datetime.fromtimestamp(timestamp_ms / 1000).strftime(fmt)


def _format_message_summary(message: ConsoleMessageRecord) -> list[str]:
	text = message.text[:200] + ('...' if len(message.text) > 200 else '')
	lines = [
		f'[msgid={message.id}] {message.type.upper()} ({_format_timestamp(message.timestamp, "%H:%M:%S")})',
		f'    {text}',
	]
	if message.url:
		location = f':{message.line_number}' if message.line_number is not None else ''
		lines.append(f'    at {message.url}{location}')
	return lines


def _format_message_details(message: ConsoleMessageRecord) -> str:
	lines = [
		f'# Console Message: msgid={message.id}',
		'',
		f'## Type: {message.type.upper()}',
		f'Timestamp: {_format_timestamp(message.timestamp, "%Y-%m-%d %H:%M:%S")}',
		'',
	]
	if message.url:
		lines += ['## Source', f'File: {message.url}']
		if message.line_number is not None:
			lines.append(f'Line: {message.line_number}')
		lines.append('')
	lines += ['## Message', '```', message.text, '```']
	if message.stack_trace:
		lines += ['', '## Stack Trace', '```', message.stack_trace, '```']
	if message.args:
		lines += ['', '## Arguments', '```json', json.dumps(message.args, indent=2), '```']
	return '\n'.join(lines)


def _seconds_as_ms(seconds: float) -> str:
	return f'{seconds * 1000:.2f}ms'


def format_trace_results(result: PerformanceTraceResult) -> str:
	metrics = result.metrics
	lines = [
		'The performance trace has been stopped.',
		'',
		'## Trace Summary',
		f'Duration: {result.duration}ms',
	]
	if result.event_count:
		lines.append(f'Trace Events: {result.event_count}')
	lines += ['', '## Core Metrics']

	if metrics.get('JSHeapUsedSize'):
		lines.append(f'JS Heap Used: {format_bytes(metrics["JSHeapUsedSize"])}')
	if metrics.get('JSHeapTotalSize'):
		lines.append(f'JS Heap Total: {format_bytes(metrics["JSHeapTotalSize"])}')
	if metrics.get('Nodes'):
		lines.append(f'DOM Nodes: {_format_number(metrics["Nodes"])}')
	if metrics.get('Documents'):
		lines.append(f'Documents: {_format_number(metrics["Documents"])}')
	if metrics.get('LayoutCount'):
		lines.append(f'Layout Count: {_format_number(metrics["LayoutCount"])}')
	if metrics.get('LayoutDuration'):
		lines.append(f'Layout Duration: {_seconds_as_ms(metrics["LayoutDuration"])}')
	if metrics.get('RecalcStyleCount'):
		lines.append(f'Recalc Style Count: {_format_number(metrics["RecalcStyleCount"])}')
	if metrics.get('ScriptDuration'):
		lines.append(f'Script Duration: {_seconds_as_ms(metrics["ScriptDuration"])}')
	if metrics.get('TaskDuration'):
		lines.append(f'Task Duration: {_seconds_as_ms(metrics["TaskDuration"])}')

	lines += [
		'',
		'## Available Insight Sets',
		'Use browser_perf_insight with these insight sets:',
		f'- insightSetId: "{INSIGHT_SET_ID}", available insights: {", ".join(AVAILABLE_INSIGHTS)}',
	]
	return '\n'.join(lines)


def format_insight(insight_set_id: str, insight_name: str, metrics: dict[str, float]) -> str:
	def metric(name: str) -> float:
		return metrics.get(name, 0)

	lines = [f'# Performance Insight: {insight_name}', f'Insight Set: {insight_set_id}', '']
	match insight_name.lower():
		case 'documentlatency':
			lines += [
				'## Document Latency Analysis',
				f'Task Duration: {_seconds_as_ms(metric("TaskDuration"))}',
				f'Script Duration: {_seconds_as_ms(metric("ScriptDuration"))}',
			]
			if metric('TaskDuration') > 0.05:
				lines += [
					'',
					'Long tasks detected. Consider:',
					'- Breaking up long-running JavaScript',
					'- Using requestIdleCallback for non-urgent work',
					'- Web Workers for heavy computation',
				]
		case 'lcpbreakdown':
			lines += [
				'## LCP (Largest Contentful Paint) Breakdown',
				f'Layout Count: {_format_number(metric("LayoutCount"))}',
				f'Layout Duration: {_seconds_as_ms(metric("LayoutDuration"))}',
				f'Recalc Style Count: {_format_number(metric("RecalcStyleCount"))}',
				'',
				'Recommendations:',
				'- Optimize critical rendering path',
				'- Preload LCP resources',
				'- Reduce render-blocking resources',
			]
		case 'renderblocking':
			lines += [
				'## Render Blocking Resources',
				f'Documents: {_format_number(metric("Documents"))}',
				f'Frames: {_format_number(metric("Frames"))}',
				'',
				'Recommendations:',
				'- Use async/defer for scripts',
				'- Inline critical CSS',
				'- Preconnect to required origins',
			]
		case _:
			lines += [
				'## General Performance Metrics',
				f'JS Heap Used: {format_bytes(metric("JSHeapUsedSize"))}',
				f'JS Heap Total: {format_bytes(metric("JSHeapTotalSize"))}',
				f'DOM Nodes: {_format_number(metric("Nodes"))}',
				f'Layout Count: {_format_number(metric("LayoutCount"))}',
				f'Script Duration: {_seconds_as_ms(metric("ScriptDuration"))}',
			]
	return '\n'.join(lines)


def _format_script_result(result: Any) -> str:
	if result is None or isinstance(result, (dict, list, bool)):
		return json.dumps(result, indent=2)
	if isinstance(result, float):
		return _format_number(result)
	return str(result)


async def _write_file(file_path: str, data: str | bytes) -> None:
	mode = 'wb' if isinstance(data, bytes) else 'w'
	async with await anyio.open_file(file_path, mode) as f:
		await f.write(data)


class ToolDispatcher:
	"""The tool-call boundary: validates arguments, runs the tool under its time budget and
	turns every outcome, failures included, into a ToolResult.

	```python
	dispatcher = ToolDispatcher(context)
	result = await dispatcher.call_tool('browser_click', {'uid': '3_12'})
	```
	"""

	def __init__(self, context: BrowserContext):
		self.context = context
		self.registry = Registry()

		# ========== Navigation ==========

		@self.registry.action('Get a list of pages open in the browser.', param_model=NoParams, category='navigation', requires_active_view=False)
		async def browser_list_pages(params: NoParams, context: BrowserContext):
			states = context.view_manager.get_all_states()
			if not states:
				return 'No browser pages are currently open.'
			lines = ['Open browser pages:']
			for index, state in enumerate(states):
				lines.append(f'[{index}] {state.title or "Untitled"} - {state.url or "about:blank"}')
			return '\n'.join(lines)

		@self.registry.action(
			'Select a page as a context for future tool calls.',
			param_model=SelectPageParams,
			category='navigation',
			requires_active_view=False,
		)
		async def browser_select_page(params: SelectPageParams, context: BrowserContext):
			states = context.view_manager.get_all_states()
			if params.page_idx < 0 or params.page_idx >= len(states):
				return ToolResult.error(f'Invalid page index: {params.page_idx}. Valid range: 0-{len(states) - 1}')

			state = states[params.page_idx]
			context.set_active_view_id(state.id)
			if params.bring_to_front:
				await context.send_cdp_command('Page.bringToFront')
			return f'Selected page [{params.page_idx}]: {state.title or "Untitled"} - {state.url}'

		@self.registry.action(
			'Creates a new page',
			param_model=NewPageParams,
			category='navigation',
			timeout_ms=_wait_budget_ms,
			error_message='Failed to create new page',
			requires_active_view=False,
		)
		async def browser_new_page(params: NewPageParams, context: BrowserContext):
			view = await context.view_manager.create('about:blank')
			context.set_active_view_id(view.id)
			if params.url != 'about:blank':
				load_marker = context.load_marker()
				await context.view_manager.navigate(view.id, params.url)
				await context.wait_for_navigation(_wait_timeout_ms(params.timeout), after=load_marker)

			state = context.view_manager.get_state(view.id)
			return f'Created new page: {state.title or "Untitled"} - {state.url or params.url}'

		@self.registry.action(
			'Closes the page by its index. The last open page cannot be closed.',
			param_model=ClosePageParams,
			category='navigation',
			requires_active_view=False,
		)
		async def browser_close_page(params: ClosePageParams, context: BrowserContext):
			states = context.view_manager.get_all_states()
			if params.page_idx < 0 or params.page_idx >= len(states):
				return ToolResult.error(f'Invalid page index: {params.page_idx}')

			state = states[params.page_idx]
			await context.view_manager.destroy(state.id)
			return f'Closed page [{params.page_idx}]: {state.title or "Untitled"}'

		@self.registry.action(
			'Navigates the currently selected page to a URL.',
			param_model=NavigateParams,
			category='navigation',
			timeout_ms=_wait_budget_ms,
		)
		async def browser_navigate(params: NavigateParams, context: BrowserContext):
			nav_type = params.type or ('url' if params.url else None)
			if nav_type is None:
				return ToolResult.error('Either URL or a type is required.')
			if nav_type == 'url' and not params.url:
				return ToolResult.error('A URL is required for navigation of type=url.')

			view_id = context.get_active_view_id()
			assert view_id is not None
			view_manager = context.view_manager
			timeout_ms = _wait_timeout_ms(params.timeout)
			try:
				load_marker = context.load_marker()
				match nav_type:
					case 'back':
						await view_manager.go_back(view_id)
						await context.wait_for_navigation(timeout_ms, after=load_marker)
						return 'Successfully navigated back.'
					case 'forward':
						await view_manager.go_forward(view_id)
						await context.wait_for_navigation(timeout_ms, after=load_marker)
						return 'Successfully navigated forward.'
					case 'reload':
						await view_manager.reload(view_id, ignore_cache=bool(params.ignore_cache))
						await context.wait_for_navigation(timeout_ms, after=load_marker)
						return 'Successfully reloaded the page.'
					case _:
						assert params.url is not None
						await view_manager.navigate(view_id, params.url)
						await context.wait_for_navigation(timeout_ms, after=load_marker)
			except BrowserError as e:
				return ToolResult.error(f'Unable to navigate in the selected page: {e}.')

			return f'Successfully navigated to {view_manager.get_state(view_id).url or params.url}.'

		@self.registry.action(
			'Wait for the specified text to appear on the selected page.',
			param_model=WaitForParams,
			category='navigation',
			timeout_ms=_wait_budget_ms,
		)
		async def browser_wait_for(params: WaitForParams, context: BrowserContext):
			await context.wait_for_text(params.text, _wait_timeout_ms(params.timeout))
			return f'Element with text "{params.text}" found.'

		@self.registry.action(
			"Resizes the selected page's window so that the page has specified dimension",
			param_model=ResizeParams,
			category='navigation',
			error_message='Resize failed',
		)
		async def browser_resize(params: ResizeParams, context: BrowserContext):
			await context.set_viewport_size(params.width, params.height)
			return f'Viewport resized to: {params.width}x{params.height}'

		@self.registry.action(
			'If a browser dialog was opened, use this command to handle it',
			param_model=HandleDialogParams,
			category='navigation',
			error_message='Failed to handle dialog',
			requires_active_view=False,
		)
		async def browser_handle_dialog(params: HandleDialogParams, context: BrowserContext):
			if context.get_pending_dialog() is None:
				return ToolResult.error('No open dialog found')
			accept = params.action == 'accept'
			await context.handle_dialog(accept, params.prompt_text)
			return f'Successfully {"accepted" if accept else "dismissed"} the dialog'

		# ========== Input ==========

		@self.registry.action(
			'Clicks on the provided element',
			param_model=ClickParams,
			category='input',
			error_message='Failed to click element {uid}',
		)
		async def browser_click(params: ClickParams, context: BrowserContext):
			await context.click_element(params.uid, dbl_click=bool(params.dbl_click))
			return 'Successfully double clicked on the element' if params.dbl_click else 'Successfully clicked on the element'

		@self.registry.action(
			'Hover over the provided element',
			param_model=HoverParams,
			category='input',
			error_message='Failed to hover element {uid}',
		)
		async def browser_hover(params: HoverParams, context: BrowserContext):
			await context.hover_element(params.uid)
			return 'Successfully hovered over the element'

		@self.registry.action(
			'Type text into a input, text area or select an option from a <select> element.',
			param_model=FillParams,
			category='input',
			error_message='Failed to fill element {uid}',
		)
		async def browser_fill(params: FillParams, context: BrowserContext):
			await context.fill_form_element(params.uid, params.value)
			return 'Successfully filled out the element'

		@self.registry.action(
			'Fill out multiple form elements at once',
			param_model=FillFormParams,
			category='input',
			# every element gets the full per-element budget
			timeout_ms=lambda params: CONFIG.AI_BROWSER_TOOL_TIMEOUT_MS * len(params.elements),
		)
		async def browser_fill_form(params: FillFormParams, context: BrowserContext):
			element_timeout_ms = CONFIG.AI_BROWSER_TOOL_TIMEOUT_MS
			errors: list[str] = []
			for element in params.elements:
				try:
					await asyncio.wait_for(context.fill_form_element(element.uid, element.value), timeout=element_timeout_ms / 1000)
				except BrowserError as e:
					errors.append(f'{element.uid}: {e}')
				except TimeoutError:
					errors.append(f'{element.uid}: browser_fill_form timed out after {element_timeout_ms}ms')

			if errors:
				return ToolResult.text(
					'Partially filled out the form.\n\nErrors:\n' + '\n'.join(errors),
					is_error=len(errors) == len(params.elements),
				)
			return 'Successfully filled out the form'

		@self.registry.action(
			'Drag an element onto another element',
			param_model=DragParams,
			category='input',
			error_message='Failed to drag',
		)
		async def browser_drag(params: DragParams, context: BrowserContext):
			await context.drag_element(params.from_uid, params.to_uid)
			return 'Successfully dragged an element'

		@self.registry.action(
			'Press a key or key combination. Use this when other input methods like fill() cannot be used '
			'(e.g., keyboard shortcuts, navigation keys, or special key combinations).',
			param_model=PressKeyParams,
			category='input',
			error_message='Failed to press key',
		)
		async def browser_press_key(params: PressKeyParams, context: BrowserContext):
			await context.press_key(params.key)
			return f'Successfully pressed key: {params.key}'

		@self.registry.action(
			'Upload a file through a provided element.',
			param_model=UploadFileParams,
			category='input',
			error_message='Failed to upload file',
		)
		async def browser_upload_file(params: UploadFileParams, context: BrowserContext):
			await context.upload_file(params.uid, params.file_path)
			return f'File uploaded from {params.file_path}.'

		# ========== Snapshot ==========

		@self.registry.action(
			'Take a text snapshot of the currently selected page based on the a11y tree. The snapshot lists page elements '
			'along with a unique\nidentifier (uid). Always use the latest snapshot. Prefer taking a snapshot over taking a '
			'screenshot.',
			param_model=SnapshotParams,
			category='snapshot',
			error_message='Failed to take snapshot',
		)
		async def browser_snapshot(params: SnapshotParams, context: BrowserContext):
			verbose = bool(params.verbose)
			snapshot = await context.create_snapshot(verbose=verbose)
			formatted = snapshot.format(verbose)
			if params.file_path:
				await _write_file(params.file_path, formatted)
				return (
					f'Snapshot saved to: {params.file_path}\n\n'
					f'Page: {snapshot.title}\nURL: {snapshot.url}\nElements: {len(snapshot)}'
				)
			return formatted

		@self.registry.action(
			'Take a screenshot of the page or element.',
			param_model=ScreenshotParams,
			category='snapshot',
			error_message='Failed to take screenshot',
		)
		async def browser_screenshot(params: ScreenshotParams, context: BrowserContext):
			image_format = params.format or 'png'
			screenshot = await context.capture_screenshot(
				format=image_format,
				quality=None if image_format == 'png' else params.quality,
				uid=params.uid,
				full_page=bool(params.full_page),
			)
			if params.uid:
				message = f'Took a screenshot of node with uid "{params.uid}".'
			elif params.full_page:
				message = 'Took a screenshot of the full current page.'
			else:
				message = "Took a screenshot of the current page's viewport."

			if params.file_path:
				await _write_file(params.file_path, base64.b64decode(screenshot.data))
				return f'{message}\nSaved screenshot to {params.file_path}.'
			return ToolResult.image(message, screenshot.data, screenshot.mime_type)

		@self.registry.action(
			'Evaluate a JavaScript function inside the currently selected page. Returns the response as JSON\n'
			'so returned values have to JSON-serializable.',
			param_model=EvaluateParams,
			category='snapshot',
			error_message='Script error',
		)
		async def browser_evaluate(params: EvaluateParams, context: BrowserContext):
			result = await context.evaluate_script(params.function, [arg.uid for arg in params.args or []])
			return f'Script ran on page and returned:\n```json\n{_format_script_result(result)}\n```'

		# ========== Network ==========

		@self.registry.action(
			'List all requests for the currently selected page since the last navigation.',
			param_model=NetworkRequestsParams,
			category='network',
			error_message='Failed to get network requests',
		)
		async def browser_network_requests(params: NetworkRequestsParams, context: BrowserContext):
			requests = context.get_network_requests(bool(params.include_preserved_requests))
			if params.resource_types:
				wanted = {resource_type.lower() for resource_type in params.resource_types}
				requests = [request for request in requests if request.resource_type.lower() in wanted]
			return format_page('Network Requests', 'requests', requests, params.page_size, params.page_idx, _format_request_summary)

		@self.registry.action(
			'Gets a network request by an optional reqid, if omitted returns the currently selected request in the '
			'DevTools Network panel.',
			param_model=NetworkRequestParams,
			category='network',
			error_message='Failed to get request details',
			requires_active_view=False,
		)
		async def browser_network_request(params: NetworkRequestParams, context: BrowserContext):
			# there is no DevTools frontend attached, so nothing can be selected in its Network panel
			if params.reqid is None:
				return 'Nothing is currently selected in the DevTools Network panel.'
			try:
				request = context.get_network_request(params.reqid)
			except NotFoundError as e:
				return ToolResult.error(str(e))
			return _format_request_details(request)

		# ========== Console ==========

		@self.registry.action(
			'List all console messages for the currently selected page since the last navigation.',
			param_model=ConsoleParams,
			category='console',
			error_message='Failed to get console messages',
		)
		async def browser_console(params: ConsoleParams, context: BrowserContext):
			messages = context.get_console_messages(bool(params.include_preserved_messages))
			if params.types:
				wanted = set(params.types)
				messages = [message for message in messages if message.type in wanted]
			return format_page('Console Messages', 'messages', messages, params.page_size, params.page_idx, _format_message_summary)

		@self.registry.action(
			'Gets a console message by its ID. You can get all messages by calling browser_console.',
			param_model=ConsoleMessageParams,
			category='console',
			error_message='Failed to get message details',
			requires_active_view=False,
		)
		async def browser_console_message(params: ConsoleMessageParams, context: BrowserContext):
			try:
				message = context.get_console_message(params.msgid)
			except NotFoundError as e:
				return ToolResult.error(str(e))
			return _format_message_details(message)

		# ========== Emulation ==========

		@self.registry.action(
			'Emulates various features on the selected page.',
			param_model=EmulateParams,
			category='emulation',
			error_message='Emulation failed',
		)
		async def browser_emulate(params: EmulateParams, context: BrowserContext):
			results: list[str] = []

			if params.network_conditions is not None:
				if params.network_conditions == 'No emulation':
					conditions = {'offline': False, 'latency': 0, 'downloadThroughput': -1, 'uploadThroughput': -1}
				elif params.network_conditions == 'Offline':
					conditions = {'offline': True, 'latency': 0, 'downloadThroughput': 0, 'uploadThroughput': 0}
				else:
					preset = NETWORK_CONDITIONS[params.network_conditions]
					conditions = {
						'offline': False,
						'latency': preset['latency'],
						'downloadThroughput': preset['download'],
						'uploadThroughput': preset['upload'],
					}
				await context.send_cdp_command('Network.emulateNetworkConditions', conditions)
				results.append(f'Network: {params.network_conditions}')

			if params.cpu_throttling_rate is not None:
				await context.send_cdp_command('Emulation.setCPUThrottlingRate', {'rate': params.cpu_throttling_rate})
				results.append(f'CPU throttling: {_format_number(params.cpu_throttling_rate)}x')

			# geolocation=null clears the override, an omitted geolocation leaves it alone
			if 'geolocation' in params.model_fields_set:
				if params.geolocation is None:
					await context.send_cdp_command('Emulation.clearGeolocationOverride')
					results.append('Geolocation: cleared')
				else:
					latitude, longitude = params.geolocation.latitude, params.geolocation.longitude
					await context.send_cdp_command(
						'Emulation.setGeolocationOverride', {'latitude': latitude, 'longitude': longitude, 'accuracy': 100}
					)
					results.append(f'Geolocation: {_format_number(latitude)}, {_format_number(longitude)}')

			if not results:
				return 'No emulation settings changed.'
			return '\n'.join(results)

		# ========== Performance ==========

		@self.registry.action(
			'Starts a performance trace recording on the selected page. This can be used to look for performance '
			'problems and insights to improve the performance of the page. It will also report Core Web Vital (CWV) '
			'scores for the page.',
			param_model=PerfStartParams,
			category='performance',
			timeout_ms=lambda params: CONFIG.AI_BROWSER_TOOL_TIMEOUT_MS + CONFIG.AI_BROWSER_NAVIGATION_TIMEOUT_MS,
			error_message='Failed to start trace',
		)
		async def browser_perf_start(params: PerfStartParams, context: BrowserContext):
			if context.is_performance_tracing():
				return ToolResult.error(
					'Error: a performance trace is already running. Use browser_perf_stop to stop it. '
					'Only one trace can be running at any given time.'
				)

			if params.reload:
				view_id = context.get_active_view_id()
				assert view_id is not None
				current_url = context.get_page_url()
				await context.view_manager.navigate(view_id, 'about:blank')
				await asyncio.sleep(RELOAD_SETTLE_SECONDS)
				await context.start_performance_trace()
				load_marker = context.load_marker()
				await context.view_manager.navigate(view_id, current_url)
				await context.wait_for_navigation(CONFIG.AI_BROWSER_NAVIGATION_TIMEOUT_MS, after=load_marker)
			else:
				await context.start_performance_trace()

			if params.auto_stop:
				await asyncio.sleep(AUTO_STOP_SECONDS)
				result = await context.stop_performance_trace()
				if result is not None:
					return format_trace_results(result)

			return 'The performance trace is being recorded. Use browser_perf_stop to stop it.'

		@self.registry.action(
			'Stops the active performance trace recording on the selected page.',
			param_model=NoParams,
			category='performance',
			error_message='Failed to stop trace',
		)
		async def browser_perf_stop(params: NoParams, context: BrowserContext):
			result = await context.stop_performance_trace()
			if result is None:
				return 'No performance trace is running.'
			return format_trace_results(result)

		@self.registry.action(
			'Provides more detailed information on a specific Performance Insight of an insight set that was '
			'highlighted in the results of a trace recording.',
			param_model=PerfInsightParams,
			category='performance',
			error_message='Failed to analyze insight',
		)
		async def browser_perf_insight(params: PerfInsightParams, context: BrowserContext):
			metrics = await context.get_performance_metrics()
			return format_insight(params.insight_set_id, params.insight_name, metrics)

	# ========== Dispatch ==========

	def list_tools(self) -> list[dict[str, Any]]:
		return self.registry.list_tools()

	@time_execution_async('--call_tool')
	async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
		"""Run one tool call. Never raises: every failure comes back as an error result."""
		tool = self.registry.get(name)
		if tool is None:
			return ToolResult.error(f'Unknown tool: {name}')

		try:
			params = tool.param_model.model_validate(arguments or {})
		except ValidationError as e:
			return ToolResult.error(_format_validation_error(name, e))

		if tool.requires_active_view and self.context.get_active_view_id() is None:
			return ToolResult.error(f'{NoActiveViewError().message} Use browser_new_page first.')

		timeout_ms = tool.resolve_timeout_ms(params)
		logger.debug(f'🛠️ Calling {name} (timeout {timeout_ms}ms)')
		try:
			result = await asyncio.wait_for(tool.function(params, self.context), timeout=timeout_ms / 1000)
		except BrowserError as e:
			logger.debug(f'❌ {name} failed with {e.code}: {e}')
			return ToolResult.error(tool.format_error(params, str(e)))
		except TimeoutError:
			logger.warning(f'⏱️ {name} timed out after {timeout_ms}ms')
			return ToolResult.error(tool.format_error(params, f'{name} timed out after {timeout_ms}ms'))
		except Exception as e:
			logger.error(f'❌ {name} failed unexpectedly: {type(e).__name__}: {e}', exc_info=True)
			return ToolResult.error(tool.format_error(params, str(e) or type(e).__name__))

		return self._normalize_result(tool, result)

	@staticmethod
	def _normalize_result(tool: RegisteredTool, result: Any) -> ToolResult:
		if isinstance(result, ToolResult):
			return result
		if isinstance(result, str):
			return ToolResult.text(result)
		if result is None:
			return ToolResult.text(f'{tool.name} completed.')
		logger.error(f'❌ {tool.name} returned an invalid result type: {type(result).__name__}')
		return ToolResult.error(f'{tool.name} returned an invalid result of type {type(result).__name__}')

	async def __call__(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
		return await self.call_tool(name, arguments)

