"""
Tests for the tool dispatcher: the catalog, argument validation, time budgets and each tool's behaviour.
"""

import asyncio
import base64

import pytest
from conftest import PNG_BYTES, active_target_id, find_uid, wait_until

from ai_browser.browser.context import parse_key_combination
from ai_browser.browser.views import InvalidArgumentError
from ai_browser.tools import service
from ai_browser.tools.registry import Registry
from ai_browser.tools.service import paginate
from ai_browser.tools.views import ImageContent, NoParams, TextContent, ToolResult

ALL_TOOLS = [
	'browser_list_pages',
	'browser_select_page',
	'browser_new_page',
	'browser_close_page',
	'browser_navigate',
	'browser_wait_for',
	'browser_resize',
	'browser_handle_dialog',
	'browser_click',
	'browser_hover',
	'browser_fill',
	'browser_fill_form',
	'browser_drag',
	'browser_press_key',
	'browser_upload_file',
	'browser_snapshot',
	'browser_screenshot',
	'browser_evaluate',
	'browser_network_requests',
	'browser_network_request',
	'browser_console',
	'browser_console_message',
	'browser_emulate',
	'browser_perf_start',
	'browser_perf_stop',
	'browser_perf_insight',
]


def mouse_events(cdp_client):
	return [(params['type'], params.get('clickCount')) for params in cdp_client.calls_to('Input.dispatchMouseEvent')]


def key_events(cdp_client):
	return [(params['type'], params['key'], params.get('modifiers')) for params in cdp_client.calls_to('Input.dispatchKeyEvent')]


@pytest.fixture
async def snapshot(context):
	return await context.create_snapshot()


class TestCatalog:
	def test_all_tools_are_registered(self, dispatcher):
		assert dispatcher.registry.names == ALL_TOOLS
		assert len(dispatcher.registry) == 26

	def test_tool_definitions(self, dispatcher):
		definitions = {tool['name']: tool for tool in dispatcher.list_tools()}

		for definition in definitions.values():
			assert definition['description']
			assert definition['inputSchema']['type'] == 'object'

		click_schema = definitions['browser_click']['inputSchema']
		assert set(click_schema['properties']) == {'uid', 'dblClick'}
		assert click_schema['required'] == ['uid']
		assert click_schema['additionalProperties'] is False

		assert set(definitions['browser_drag']['inputSchema']['properties']) == {'from_uid', 'to_uid'}
		assert definitions['browser_list_pages']['inputSchema']['properties'] == {}

	def test_list_by_category(self, dispatcher):
		names = [tool['name'] for tool in dispatcher.registry.list_tools(category='performance')]
		assert names == ['browser_perf_start', 'browser_perf_stop', 'browser_perf_insight']
		assert len(dispatcher.registry.list_tools(category='navigation')) == 8
		assert len(dispatcher.registry.list_tools(category='input')) == 7

	def test_duplicate_registration_is_refused(self):
		registry = Registry()

		@registry.action('Does nothing', param_model=NoParams, category='navigation')
		async def browser_noop(params, context):
			return None

		with pytest.raises(ValueError, match='already registered'):

			@registry.action('Does nothing again', param_model=NoParams, category='navigation')
			async def browser_noop(params, context):  # noqa: F811
				return None


class TestValidation:
	async def test_unknown_tool(self, dispatcher):
		result = await dispatcher.call_tool('browser_fly', {})
		assert result.is_error
		assert result.text_content == 'Unknown tool: browser_fly'

	async def test_missing_required_argument(self, dispatcher):
		result = await dispatcher.call_tool('browser_click', {})
		assert result.is_error
		assert result.text_content == 'Invalid arguments for browser_click: uid: Field required'

	async def test_unknown_argument(self, dispatcher):
		result = await dispatcher.call_tool('browser_list_pages', {'verbose': True})
		assert result.is_error
		assert 'Extra inputs are not permitted' in result.text_content

	async def test_out_of_range_argument(self, dispatcher):
		result = await dispatcher.call_tool('browser_emulate', {'cpuThrottlingRate': 30})
		assert result.is_error
		assert result.text_content.startswith('Invalid arguments for browser_emulate: cpuThrottlingRate:')

	async def test_screenshot_uid_and_full_page_are_exclusive(self, dispatcher, cdp_client):
		calls_before = len(cdp_client.calls)

		result = await dispatcher.call_tool('browser_screenshot', {'uid': '1_2', 'fullPage': True})

		assert result.is_error
		assert result.text_content == 'Invalid arguments for browser_screenshot: Providing both "uid" and "fullPage" is not allowed.'
		assert len(cdp_client.calls) == calls_before

	async def test_snake_case_arguments_are_accepted(self, dispatcher):
		result = await dispatcher.call_tool('browser_select_page', {'page_idx': 0})
		assert not result.is_error, result.text_content

	async def test_no_active_view_after_disconnect(self, context, dispatcher):
		await context.stop()

		result = await dispatcher.call_tool('browser_click', {'uid': '1_1'})
		assert result.is_error
		assert result.text_content == 'No active browser page. Use browser_new_page first.'

		result = await dispatcher.call_tool('browser_list_pages', {})
		assert result.text_content == 'No browser pages are currently open.'


class TestDispatch:
	async def test_hanging_command_times_out_and_engine_stays_usable(self, dispatcher, cdp_client, snapshot, monkeypatch):
		monkeypatch.setenv('AI_BROWSER_TOOL_TIMEOUT_MS', '200')
		cdp_client.hang('Input.dispatchMouseEvent')
		uid = find_uid(snapshot, 'button', 'Submit')

		result = await dispatcher.call_tool('browser_click', {'uid': uid})

		assert result.is_error
		assert result.text_content == f'Failed to click element {uid}: browser_click timed out after 200ms'

		listing = await dispatcher.call_tool('browser_list_pages', {})
		assert not listing.is_error

	async def test_protocol_failure_is_reported_with_the_tool_prefix(self, dispatcher, cdp_client, snapshot):
		cdp_client.fail('Input.dispatchMouseEvent', RuntimeError('Node is detached from document'))
		uid = find_uid(snapshot, 'button', 'Submit')

		result = await dispatcher.call_tool('browser_hover', {'uid': uid})

		assert result.is_error
		assert result.text_content == f'Failed to hover element {uid}: Input.dispatchMouseEvent: Node is detached from document'

	async def test_connection_loss_invalidates_every_view(self, context, dispatcher, cdp_client, snapshot):
		cdp_client.fail('Input.dispatchMouseEvent', ConnectionError('websocket closed'))

		result = await dispatcher.call_tool('browser_click', {'uid': find_uid(snapshot, 'button', 'Submit')})

		assert result.is_error
		await wait_until(lambda: context.get_active_view_id() is None)
		assert not context.browser_session.is_connected
		listing = await dispatcher.call_tool('browser_list_pages', {})
		assert listing.text_content == 'No browser pages are currently open.'

	async def test_result_normalization(self, dispatcher):
		@dispatcher.registry.action('Returns nothing', param_model=NoParams, category='navigation')
		async def browser_noop(params, context):
			return None

		@dispatcher.registry.action('Returns a number', param_model=NoParams, category='navigation')
		async def browser_answer(params, context):
			return 42

		result = await dispatcher.call_tool('browser_noop', {})
		assert result.text_content == 'browser_noop completed.'
		assert not result.is_error

		result = await dispatcher.call_tool('browser_answer', {})
		assert result.is_error
		assert result.text_content == 'browser_answer returned an invalid result of type int'

	async def test_dispatcher_is_callable(self, dispatcher):
		result = await dispatcher('browser_list_pages')
		assert isinstance(result, ToolResult)
		assert result.to_dict() == {'content': [{'type': 'text', 'text': 'Open browser pages:\n[0] Untitled - about:blank'}]}

	def test_error_result_serialization(self):
		assert ToolResult.error('nope').to_dict() == {'content': [{'type': 'text', 'text': 'nope'}], 'isError': True}


class TestPagination:
	def test_without_page_size_everything_is_one_page(self):
		assert paginate(list(range(5)), None, None) == ([0, 1, 2, 3, 4], 0, 5)

	def test_slices(self):
		items = list(range(25))
		assert paginate(items, 10, 0) == (list(range(10)), 0, 10)
		assert paginate(items, 10, 2) == (list(range(20, 25)), 20, 25)
		assert paginate(items, 10, 3) == ([], 30, 30)


class TestInput:
	async def test_click(self, dispatcher, cdp_client, snapshot):
		result = await dispatcher.call_tool('browser_click', {'uid': find_uid(snapshot, 'button', 'Submit')})

		assert result.text_content == 'Successfully clicked on the element'
		assert mouse_events(cdp_client) == [('mouseMoved', None), ('mousePressed', 1), ('mouseReleased', 1)]
		pressed = cdp_client.calls_to('Input.dispatchMouseEvent')[1]
		assert (pressed['x'], pressed['y']) == (20, 20)
		assert cdp_client.calls_to('DOM.scrollIntoViewIfNeeded')[-1] == {'backendNodeId': 6}

	async def test_double_click(self, dispatcher, cdp_client, snapshot):
		result = await dispatcher.call_tool('browser_click', {'uid': find_uid(snapshot, 'button', 'Submit'), 'dblClick': True})

		assert result.text_content == 'Successfully double clicked on the element'
		assert mouse_events(cdp_client) == [
			('mouseMoved', None),
			('mousePressed', 1),
			('mouseReleased', 1),
			('mousePressed', 2),
			('mouseReleased', 2),
		]

	async def test_click_falls_back_to_box_model(self, dispatcher, cdp_client, snapshot):
		cdp_client.respond('DOM.getContentQuads', {'quads': []})

		result = await dispatcher.call_tool('browser_click', {'uid': find_uid(snapshot, 'button', 'Submit')})

		assert not result.is_error, result.text_content
		assert len(cdp_client.calls_to('DOM.getBoxModel')) == 1

	async def test_hover(self, dispatcher, cdp_client, snapshot):
		result = await dispatcher.call_tool('browser_hover', {'uid': find_uid(snapshot, 'heading', 'Welcome')})

		assert result.text_content == 'Successfully hovered over the element'
		assert mouse_events(cdp_client) == [('mouseMoved', None)]

	async def test_fill_text_input(self, dispatcher, cdp_client, snapshot):
		result = await dispatcher.call_tool('browser_fill', {'uid': find_uid(snapshot, 'textbox', 'Email'), 'value': 'ada@example.com'})

		assert result.text_content == 'Successfully filled out the element'
		assert cdp_client.calls_to('DOM.focus') == [{'backendNodeId': 4}]
		assert cdp_client.calls_to('Input.insertText') == [{'text': 'ada@example.com'}]

	async def test_fill_with_empty_value_clears_the_input(self, dispatcher, cdp_client, snapshot):
		await dispatcher.call_tool('browser_fill', {'uid': find_uid(snapshot, 'textbox', 'Email'), 'value': ''})

		assert cdp_client.calls_to('Input.insertText') == []
		assert [event[:2] for event in key_events(cdp_client)] == [('rawKeyDown', 'Delete'), ('keyUp', 'Delete')]

	async def test_fill_native_select_picks_the_option(self, dispatcher, cdp_client, snapshot):
		cdp_client.respond('Runtime.callFunctionOn', {'result': {'type': 'boolean', 'value': True}})

		result = await dispatcher.call_tool('browser_fill', {'uid': find_uid(snapshot, 'combobox', 'Country'), 'value': 'Spain'})

		assert result.text_content == 'Successfully filled out the element'
		(call,) = cdp_client.calls_to('Runtime.callFunctionOn')
		assert call['arguments'] == [{'value': 'Spain'}]
		assert call['objectId'] == 'OBJECT-5'
		assert cdp_client.calls_to('Input.insertText') == []

	async def test_fill_editable_combobox_falls_back_to_typing(self, dispatcher, cdp_client, snapshot):
		cdp_client.respond('Runtime.callFunctionOn', {'result': {'type': 'boolean', 'value': False}})

		result = await dispatcher.call_tool('browser_fill', {'uid': find_uid(snapshot, 'combobox', 'Country'), 'value': 'Narnia'})

		assert not result.is_error, result.text_content
		assert cdp_client.calls_to('Input.insertText') == [{'text': 'Narnia'}]

	async def test_fill_aria_combobox_clicks_the_matching_option(self, dispatcher, cdp_client, snapshot):
		# the default callFunctionOn answer has no value, like an element that is not a native <select>
		result = await dispatcher.call_tool('browser_fill', {'uid': find_uid(snapshot, 'combobox', 'Country'), 'value': 'Spain'})

		assert not result.is_error, result.text_content
		assert ('mousePressed', 1) in mouse_events(cdp_client)
		assert cdp_client.calls_to('DOM.scrollIntoViewIfNeeded')[-1] == {'backendNodeId': 8}
		assert cdp_client.calls_to('Input.insertText') == []

	async def test_fill_form(self, dispatcher, cdp_client, snapshot):
		cdp_client.respond(
			'Runtime.callFunctionOn',
			lambda params, session_id: {'result': {'value': True if 'tagName' in params['functionDeclaration'] else None}},
		)

		result = await dispatcher.call_tool(
			'browser_fill_form',
			{
				'elements': [
					{'uid': find_uid(snapshot, 'textbox', 'Email'), 'value': 'ada@example.com'},
					{'uid': find_uid(snapshot, 'combobox', 'Country'), 'value': 'France'},
				]
			},
		)

		assert result.text_content == 'Successfully filled out the form'
		assert cdp_client.calls_to('Input.insertText') == [{'text': 'ada@example.com'}]

	async def test_fill_form_reports_partial_failures(self, dispatcher, snapshot):
		good_uid = find_uid(snapshot, 'textbox', 'Email')
		result = await dispatcher.call_tool(
			'browser_fill_form', {'elements': [{'uid': good_uid, 'value': 'x'}, {'uid': '0_99', 'value': 'y'}]}
		)

		assert not result.is_error
		assert result.text_content.startswith('Partially filled out the form.\n\nErrors:\n0_99: Element not found')

	async def test_fill_form_is_an_error_when_every_element_fails(self, dispatcher, snapshot):
		result = await dispatcher.call_tool('browser_fill_form', {'elements': [{'uid': '0_98', 'value': 'x'}, {'uid': '0_99', 'value': 'y'}]})

		assert result.is_error
		assert result.text_content.count('Element not found') == 2

	async def test_fill_form_bounds_each_element(self, dispatcher, cdp_client, snapshot, monkeypatch):
		monkeypatch.setenv('AI_BROWSER_TOOL_TIMEOUT_MS', '300')
		cdp_client.hang('Input.insertText')
		cdp_client.respond('Runtime.callFunctionOn', {'result': {'value': True}})
		email_uid = find_uid(snapshot, 'textbox', 'Email')

		result = await dispatcher.call_tool(
			'browser_fill_form',
			{'elements': [{'uid': email_uid, 'value': 'x'}, {'uid': find_uid(snapshot, 'combobox', 'Country'), 'value': 'Spain'}]},
		)

		assert not result.is_error
		assert f'{email_uid}: browser_fill_form timed out after 300ms' in result.text_content

	async def test_fill_form_requires_elements(self, dispatcher):
		result = await dispatcher.call_tool('browser_fill_form', {'elements': []})
		assert result.is_error

	async def test_drag(self, dispatcher, cdp_client, snapshot):
		result = await dispatcher.call_tool(
			'browser_drag', {'from_uid': find_uid(snapshot, 'button', 'Submit'), 'to_uid': find_uid(snapshot, 'textbox', 'Email')}
		)

		assert result.text_content == 'Successfully dragged an element'
		events = [event_type for event_type, _ in mouse_events(cdp_client)]
		assert events == ['mouseMoved', 'mousePressed'] + ['mouseMoved'] * 5 + ['mouseReleased']

	async def test_press_key_combination(self, dispatcher, cdp_client):
		result = await dispatcher.call_tool('browser_press_key', {'key': 'Control+A'})

		assert result.text_content == 'Successfully pressed key: Control+A'
		assert key_events(cdp_client) == [
			('rawKeyDown', 'Control', 2),
			('rawKeyDown', 'A', 2),
			('keyUp', 'A', 2),
			('keyUp', 'Control', 0),
		]

	async def test_press_enter_produces_text(self, dispatcher, cdp_client):
		await dispatcher.call_tool('browser_press_key', {'key': 'Enter'})

		key_down, key_up = cdp_client.calls_to('Input.dispatchKeyEvent')
		assert key_down['type'] == 'keyDown'
		assert key_down['text'] == '\r'
		assert key_down['windowsVirtualKeyCode'] == 13
		assert key_up['type'] == 'keyUp'

	async def test_press_key_with_unknown_modifier(self, dispatcher, cdp_client):
		result = await dispatcher.call_tool('browser_press_key', {'key': 'Hyper+A'})

		assert result.is_error
		assert result.text_content.startswith('Failed to press key: Unknown modifier "Hyper"')
		assert cdp_client.calls_to('Input.dispatchKeyEvent') == []

	async def test_upload_file(self, dispatcher, cdp_client, snapshot, tmp_path):
		file_path = tmp_path / 'report.pdf'
		file_path.write_bytes(b'%PDF-1.4')
		uid = find_uid(snapshot, 'button', 'Submit')

		result = await dispatcher.call_tool('browser_upload_file', {'uid': uid, 'filePath': str(file_path)})

		assert result.text_content == f'File uploaded from {file_path}.'
		assert cdp_client.calls_to('DOM.setFileInputFiles') == [{'files': [str(file_path.resolve())], 'backendNodeId': 6}]

	async def test_upload_missing_file(self, dispatcher, snapshot, tmp_path):
		missing = tmp_path / 'missing.txt'
		result = await dispatcher.call_tool('browser_upload_file', {'uid': find_uid(snapshot, 'button', 'Submit'), 'filePath': str(missing)})

		assert result.is_error
		assert result.text_content == f'Failed to upload file: File {missing} does not exist'


class TestKeyCombinations:
	@pytest.mark.parametrize(
		'combo, expected',
		[
			('Enter', (0, 'Enter')),
			('a', (0, 'a')),
			('Control+A', (2, 'A')),
			('Control+Shift+R', (10, 'R')),
			('Meta+Alt+K', (5, 'K')),
			('Control++', (2, '+')),
			('+', (0, '+')),
		],
	)
	def test_parse(self, combo, expected):
		assert parse_key_combination(combo) == expected

	@pytest.mark.parametrize('combo', ['', 'Control+', 'Hyper+A'])
	def test_invalid(self, combo):
		with pytest.raises(InvalidArgumentError):
			parse_key_combination(combo)


class TestScreenshot:
	async def test_viewport_screenshot(self, dispatcher, cdp_client):
		result = await dispatcher.call_tool('browser_screenshot', {})

		assert not result.is_error
		text, image = result.content
		assert isinstance(text, TextContent)
		assert text.text == "Took a screenshot of the current page's viewport."
		assert isinstance(image, ImageContent)
		assert image.mime_type == 'image/png'
		assert base64.b64decode(image.data) == PNG_BYTES
		assert cdp_client.calls_to('Page.captureScreenshot') == [{'format': 'png'}]
		assert result.to_dict()['content'][1]['mimeType'] == 'image/png'

	async def test_quality_only_applies_to_lossy_formats(self, dispatcher, cdp_client):
		await dispatcher.call_tool('browser_screenshot', {'format': 'png', 'quality': 50})
		await dispatcher.call_tool('browser_screenshot', {'format': 'jpeg', 'quality': 50})

		png, jpeg = cdp_client.calls_to('Page.captureScreenshot')
		assert 'quality' not in png
		assert jpeg == {'format': 'jpeg', 'quality': 50}

	async def test_full_page(self, dispatcher, cdp_client):
		result = await dispatcher.call_tool('browser_screenshot', {'fullPage': True})

		assert result.text_content == 'Took a screenshot of the full current page.'
		params = cdp_client.calls_to('Page.captureScreenshot')[0]
		assert params['clip'] == {'x': 0, 'y': 0, 'width': 800, 'height': 2400, 'scale': 1}
		assert params['captureBeyondViewport'] is True

	async def test_element_screenshot(self, dispatcher, cdp_client, snapshot):
		uid = find_uid(snapshot, 'button', 'Submit')
		result = await dispatcher.call_tool('browser_screenshot', {'uid': uid})

		assert result.text_content == f'Took a screenshot of node with uid "{uid}".'
		params = cdp_client.calls_to('Page.captureScreenshot')[0]
		assert params['clip'] == {'x': 10, 'y': 10, 'width': 20, 'height': 20, 'scale': 1}

	async def test_screenshot_saved_to_file(self, dispatcher, tmp_path):
		file_path = tmp_path / 'shot.png'
		result = await dispatcher.call_tool('browser_screenshot', {'filePath': str(file_path)})

		assert result.content == [TextContent(text=f"Took a screenshot of the current page's viewport.\nSaved screenshot to {file_path}.")]
		assert file_path.read_bytes() == PNG_BYTES


class TestEvaluate:
	async def test_returns_json(self, dispatcher, cdp_client):
		cdp_client.respond('Runtime.callFunctionOn', {'result': {'type': 'object', 'value': {'title': 'Test Page'}}})

		result = await dispatcher.call_tool('browser_evaluate', {'function': '() => ({title: document.title})'})

		assert result.text_content == 'Script ran on page and returned:\n```json\n{\n  "title": "Test Page"\n}\n```'
		call = cdp_client.calls_to('Runtime.callFunctionOn')[0]
		assert call['objectId'] == 'GLOBAL'
		assert call['awaitPromise'] is True

	async def test_element_arguments(self, dispatcher, cdp_client, snapshot):
		cdp_client.respond('Runtime.callFunctionOn', {'result': {'type': 'string', 'value': 'Submit'}})

		result = await dispatcher.call_tool(
			'browser_evaluate', {'function': '(el) => el.innerText', 'args': [{'uid': find_uid(snapshot, 'button', 'Submit')}]}
		)

		assert result.text_content == 'Script ran on page and returned:\n```json\nSubmit\n```'
		assert cdp_client.calls_to('Runtime.callFunctionOn')[0]['arguments'] == [{'objectId': 'OBJECT-6'}]

	async def test_script_exception(self, dispatcher, cdp_client):
		cdp_client.respond(
			'Runtime.callFunctionOn',
			{
				'result': {'type': 'object', 'subtype': 'error'},
				'exceptionDetails': {
					'text': 'Uncaught',
					'exception': {'type': 'object', 'subtype': 'error', 'description': 'ReferenceError: foo is not defined'},
				},
			},
		)

		result = await dispatcher.call_tool('browser_evaluate', {'function': '() => foo'})

		assert result.is_error
		assert result.text_content == 'Script error: ReferenceError: foo is not defined'


class TestDialogs:
	async def test_no_dialog(self, dispatcher, cdp_client):
		result = await dispatcher.call_tool('browser_handle_dialog', {'action': 'accept'})

		assert result.is_error
		assert result.text_content == 'No open dialog found'
		assert cdp_client.calls_to('Page.handleJavaScriptDialog') == []

	async def test_accept_prompt(self, context, dispatcher, cdp_client):
		cdp_client.emit_for_target(
			active_target_id(context),
			'Page.javascriptDialogOpening',
			{'url': 'about:blank', 'message': 'Your name?', 'type': 'prompt', 'hasBrowserHandler': False, 'defaultPrompt': ''},
		)
		assert context.get_pending_dialog().message == 'Your name?'

		result = await dispatcher.call_tool('browser_handle_dialog', {'action': 'accept', 'promptText': 'Ada'})

		assert result.text_content == 'Successfully accepted the dialog'
		assert cdp_client.calls_to('Page.handleJavaScriptDialog') == [{'accept': True, 'promptText': 'Ada'}]
		assert context.get_pending_dialog() is None

		again = await dispatcher.call_tool('browser_handle_dialog', {'action': 'dismiss'})
		assert again.is_error

	async def test_dismiss(self, context, dispatcher, cdp_client):
		cdp_client.emit_for_target(
			active_target_id(context), 'Page.javascriptDialogOpening', {'url': 'about:blank', 'message': 'Sure?', 'type': 'confirm'}
		)

		result = await dispatcher.call_tool('browser_handle_dialog', {'action': 'dismiss'})

		assert result.text_content == 'Successfully dismissed the dialog'
		assert cdp_client.calls_to('Page.handleJavaScriptDialog') == [{'accept': False}]

	async def test_dialog_closed_by_the_page_is_forgotten(self, context, cdp_client):
		target_id = active_target_id(context)
		cdp_client.emit_for_target(target_id, 'Page.javascriptDialogOpening', {'message': 'Hi', 'type': 'alert'})
		cdp_client.emit_for_target(target_id, 'Page.javascriptDialogClosed', {'result': True, 'userInput': ''})

		assert context.get_pending_dialog() is None


class TestEmulation:
	async def test_network_and_cpu(self, dispatcher, cdp_client):
		result = await dispatcher.call_tool('browser_emulate', {'networkConditions': 'Offline', 'cpuThrottlingRate': 4})

		assert result.text_content == 'Network: Offline\nCPU throttling: 4x'
		assert cdp_client.calls_to('Network.emulateNetworkConditions') == [
			{'offline': True, 'latency': 0, 'downloadThroughput': 0, 'uploadThroughput': 0}
		]
		assert cdp_client.calls_to('Emulation.setCPUThrottlingRate') == [{'rate': 4}]

	async def test_network_preset(self, dispatcher, cdp_client):
		await dispatcher.call_tool('browser_emulate', {'networkConditions': 'Slow 3G'})

		(conditions,) = cdp_client.calls_to('Network.emulateNetworkConditions')
		assert conditions['latency'] == 400
		assert conditions['downloadThroughput'] == 500 * 1024 / 8
		assert conditions['offline'] is False

	async def test_no_emulation_resets_throttling(self, dispatcher, cdp_client):
		await dispatcher.call_tool('browser_emulate', {'networkConditions': 'No emulation'})

		(conditions,) = cdp_client.calls_to('Network.emulateNetworkConditions')
		assert conditions['downloadThroughput'] == -1

	async def test_geolocation_omitted_null_and_set(self, dispatcher, cdp_client):
		result = await dispatcher.call_tool('browser_emulate', {})
		assert result.text_content == 'No emulation settings changed.'
		assert cdp_client.calls_to('Emulation.clearGeolocationOverride') == []

		result = await dispatcher.call_tool('browser_emulate', {'geolocation': None})
		assert result.text_content == 'Geolocation: cleared'
		assert len(cdp_client.calls_to('Emulation.clearGeolocationOverride')) == 1

		result = await dispatcher.call_tool('browser_emulate', {'geolocation': {'latitude': 48.8566, 'longitude': 2.3522}})
		assert result.text_content == 'Geolocation: 48.8566, 2.3522'
		assert cdp_client.calls_to('Emulation.setGeolocationOverride') == [{'latitude': 48.8566, 'longitude': 2.3522, 'accuracy': 100}]

	async def test_invalid_geolocation(self, dispatcher):
		result = await dispatcher.call_tool('browser_emulate', {'geolocation': {'latitude': 100, 'longitude': 0}})
		assert result.is_error
		assert 'geolocation.latitude' in result.text_content


class TestPerformance:
	async def test_single_trace_at_a_time(self, context, dispatcher, cdp_client):
		started = await dispatcher.call_tool('browser_perf_start', {'reload': False, 'autoStop': False})
		assert started.text_content == 'The performance trace is being recorded. Use browser_perf_stop to stop it.'
		assert context.is_performance_tracing()

		again = await dispatcher.call_tool('browser_perf_start', {'reload': False, 'autoStop': False})
		assert again.is_error
		assert 'a performance trace is already running' in again.text_content
		assert len(cdp_client.calls_to('Tracing.start')) == 1

		stopped = await dispatcher.call_tool('browser_perf_stop', {})
		assert stopped.text_content.startswith('The performance trace has been stopped.')
		assert 'Trace Events: 3' in stopped.text_content
		assert 'JS Heap Used: 2.0 KB' in stopped.text_content
		assert 'DOM Nodes: 42' in stopped.text_content
		assert 'Task Duration: 100.00ms' in stopped.text_content
		assert '- insightSetId: "main", available insights: DocumentLatency, LCPBreakdown, RenderBlocking' in stopped.text_content
		assert not context.is_performance_tracing()

		idle = await dispatcher.call_tool('browser_perf_stop', {})
		assert not idle.is_error
		assert idle.text_content == 'No performance trace is running.'

	async def test_failed_start_releases_the_trace(self, context, dispatcher, cdp_client):
		cdp_client.fail('Tracing.start', RuntimeError('Tracing has already been started'))

		result = await dispatcher.call_tool('browser_perf_start', {'reload': False, 'autoStop': False})

		assert result.is_error
		assert result.text_content == 'Failed to start trace: Tracing.start: Tracing has already been started'
		assert not context.is_performance_tracing()

	async def test_reload_trace_navigates_back_to_the_page(self, dispatcher, cdp_client, monkeypatch):
		monkeypatch.setattr(service, 'RELOAD_SETTLE_SECONDS', 0)
		await dispatcher.call_tool('browser_navigate', {'url': 'http://test/page1'})

		result = await dispatcher.call_tool('browser_perf_start', {'reload': True, 'autoStop': False})

		assert not result.is_error, result.text_content
		assert cdp_client.calls_to('Page.navigate')[-2:] == [{'url': 'about:blank'}, {'url': 'http://test/page1'}]
		await dispatcher.call_tool('browser_perf_stop', {})

	async def test_auto_stop(self, context, dispatcher, monkeypatch):
		monkeypatch.setattr(service, 'AUTO_STOP_SECONDS', 0)

		result = await dispatcher.call_tool('browser_perf_start', {'reload': False, 'autoStop': True})

		assert result.text_content.startswith('The performance trace has been stopped.')
		assert not context.is_performance_tracing()

	async def test_trace_ends_with_its_page(self, context, dispatcher):
		await dispatcher.call_tool('browser_new_page', {'url': 'http://test/traced'})
		await dispatcher.call_tool('browser_perf_start', {'reload': False, 'autoStop': False})
		await dispatcher.call_tool('browser_close_page', {'pageIdx': 1})

		result = await dispatcher.call_tool('browser_perf_stop', {})

		assert result.text_content.startswith('The performance trace has been stopped.')
		assert 'Trace Events' not in result.text_content
		assert not context.is_performance_tracing()

	async def test_insight(self, dispatcher):
		result = await dispatcher.call_tool('browser_perf_insight', {'insightSetId': 'main', 'insightName': 'DocumentLatency'})

		assert result.text_content.startswith('# Performance Insight: DocumentLatency\nInsight Set: main')
		assert 'Task Duration: 100.00ms' in result.text_content
		assert 'Long tasks detected.' in result.text_content

	async def test_unknown_insight_shows_general_metrics(self, dispatcher):
		result = await dispatcher.call_tool('browser_perf_insight', {'insightSetId': 'main', 'insightName': 'Whatever'})
		assert '## General Performance Metrics' in result.text_content


class TestConcurrency:
	async def test_slow_call_does_not_block_other_calls(self, context, dispatcher, cdp_client, monkeypatch):
		monkeypatch.setenv('AI_BROWSER_TOOL_TIMEOUT_MS', '500')
		cdp_client.hang('Page.captureScreenshot')

		slow = asyncio.create_task(dispatcher.call_tool('browser_screenshot', {}))
		fast = await dispatcher.call_tool('browser_list_pages', {})

		assert not fast.is_error
		assert not slow.done()
		assert (await slow).is_error

	async def test_closing_a_page_fails_its_in_flight_call(self, context, dispatcher, cdp_client, monkeypatch):
		monkeypatch.setenv('AI_BROWSER_TOOL_TIMEOUT_MS', '5000')
		await dispatcher.call_tool('browser_new_page', {'url': 'http://test/page1'})
		uid = find_uid(await context.create_snapshot(), 'button', 'Submit')
		cdp_client.hang('Input.dispatchMouseEvent')

		click = asyncio.create_task(dispatcher.call_tool('browser_click', {'uid': uid}))
		await wait_until(lambda: len(cdp_client.calls_to('Input.dispatchMouseEvent')) == 1)
		closed = await dispatcher.call_tool('browser_close_page', {'pageIdx': 1})

		assert not closed.is_error, closed.text_content
		result = await asyncio.wait_for(click, timeout=1)
		assert result.is_error
		assert result.text_content.startswith(f'Failed to click element {uid}: Input.dispatchMouseEvent:')
		assert 'was closed' in result.text_content
