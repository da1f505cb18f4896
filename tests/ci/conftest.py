"""Shared fixtures: a scripted in-process CDP client and a BrowserContext connected to it.

The fake answers the commands the engine sends with plausible CDP payloads, keeps
per-target url/history state, and lets tests emit CDP events on a target's session.
"""

import asyncio
import base64
import inspect
import itertools
from collections.abc import Callable
from typing import Any

import pytest
from cdp_use import CDPClient

from ai_browser.browser.context import BrowserContext
from ai_browser.dom.views import Snapshot
from ai_browser.tools.service import ToolDispatcher


def ax_node(node_id: str, role: str, name: str = '', parent_id: str | None = None, children=(), **extra) -> dict[str, Any]:
	node = {
		'nodeId': node_id,
		'role': {'type': 'role', 'value': role},
		'name': {'type': 'computedString', 'value': name},
		'childIds': list(children),
		'backendDOMNodeId': int(node_id),
		'ignored': False,
	}
	if parent_id is not None:
		node['parentId'] = parent_id
	node.update(extra)
	return node


DEFAULT_AX_NODES = [
	ax_node('1', 'RootWebArea', 'Test Page', children=['2', '3', '4', '5', '9']),
	ax_node('2', 'heading', 'Welcome', '1', properties=[{'name': 'level', 'value': {'type': 'integer', 'value': 1}}]),
	ax_node('3', 'generic', '', '1', children=['6']),
	ax_node('6', 'button', 'Submit', '3', properties=[{'name': 'focusable', 'value': {'type': 'booleanOrUndefined', 'value': True}}]),
	ax_node('4', 'textbox', 'Email', '1'),
	ax_node('5', 'combobox', 'Country', '1', children=['7', '8']),
	ax_node('7', 'option', 'France', '5'),
	ax_node('8', 'option', 'Spain', '5'),
	ax_node('9', 'generic', '', '1', ignored=True),
]

# 1x1 transparent png
PNG_BYTES = base64.b64decode(
	'iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII='
)


class _FakeDomainRegistration:
	def __init__(self, client: 'FakeCDPClient', domain: str):
		self._client = client
		self._domain = domain

	def __getattr__(self, event_name: str) -> Callable[[Callable], None]:
		def register(handler: Callable) -> None:
			self._client.event_handlers[f'{self._domain}.{event_name}'] = handler

		return register


class _FakeRegistration:
	def __init__(self, client: 'FakeCDPClient'):
		self._client = client

	def __getattr__(self, domain: str) -> _FakeDomainRegistration:
		return _FakeDomainRegistration(self._client, domain)


class FakeCDPClient(CDPClient):
	"""CDPClient stand-in that never opens a websocket.

	Usage:
		client.respond('Runtime.callFunctionOn', {'result': {'value': True}})
		client.hang('Input.dispatchMouseEvent')
		client.fail('Page.captureScreenshot', RuntimeError('boom'))
		client.emit_for_target(target_id, 'Page.loadEventFired', {'timestamp': 1.0})
	"""

	def __init__(self, page_urls: tuple[str, ...] = ('about:blank',)):
		# deliberately not calling CDPClient.__init__, there is no websocket to set up
		self.url = 'ws://fake'
		self.register = _FakeRegistration(self)
		self.event_handlers: dict[str, Callable] = {}
		self.calls: list[tuple[str, dict[str, Any], str | None]] = []
		self.overrides: dict[str, Any] = {}
		self.hanging: set[str] = set()
		self.failures: dict[str, BaseException] = {}
		self.ax_nodes: list[dict[str, Any]] = DEFAULT_AX_NODES
		self.titles: dict[str, str] = {}
		self.stopped = False

		self._target_ids = itertools.count(1)
		self._entry_ids = itertools.count(1)
		self.targets: dict[str, dict[str, Any]] = {}
		self.sessions: dict[str, str] = {}  # session_id -> target_id
		self.history: dict[str, tuple[list[dict[str, Any]], int]] = {}
		for url in page_urls:
			self._add_target(url)

	# ========== Scripting ==========

	def respond(self, method: str, response: dict[str, Any] | Callable[[dict[str, Any], str | None], Any]) -> None:
		self.overrides[method] = response

	def hang(self, method: str) -> None:
		self.hanging.add(method)

	def fail(self, method: str, error: BaseException) -> None:
		self.failures[method] = error

	def calls_to(self, method: str) -> list[dict[str, Any]]:
		return [params for called, params, _ in self.calls if called == method]

	def session_for(self, target_id: str) -> str:
		return next(session_id for session_id, owner in self.sessions.items() if owner == target_id)

	def emit(self, method: str, event: dict[str, Any], session_id: str | None = None) -> None:
		handler = self.event_handlers.get(method)
		if handler is not None:
			handler(event, session_id)

	def emit_for_target(self, target_id: str, method: str, event: dict[str, Any]) -> None:
		self.emit(method, event, self.session_for(target_id))

	def emit_soon(self, method: str, event: dict[str, Any], session_id: str | None = None) -> None:
		asyncio.get_running_loop().call_soon(self.emit, method, event, session_id)

	# ========== CDPClient surface ==========

	async def start(self) -> None:
		pass

	async def stop(self) -> None:
		self.stopped = True

	async def send_raw(self, method: str, params: Any = None, session_id: str | None = None) -> dict[str, Any]:
		params = params or {}
		self.calls.append((method, params, session_id))
		if method in self.hanging:
			await asyncio.Event().wait()
		if method in self.failures:
			raise self.failures[method]
		if method in self.overrides:
			response = self.overrides[method]
			if callable(response):
				response = response(params, session_id)
				if inspect.isawaitable(response):
					response = await response
			return response
		if method.endswith('.enable') or method.endswith('.disable'):
			return {}
		handler = getattr(self, '_handle_' + method.replace('.', '_'), None)
		if handler is None:
			return {}
		return handler(params, session_id)

	# ========== Default browser behaviour ==========

	def _add_target(self, url: str) -> str:
		target_id = f'TARGET{next(self._target_ids):04d}'
		self.targets[target_id] = {'targetId': target_id, 'type': 'page', 'title': self.titles.get(url, ''), 'url': url, 'attached': False}
		self.history[target_id] = ([{'id': next(self._entry_ids), 'url': url, 'title': ''}], 0)
		return target_id

	def _commit(self, target_id: str, url: str) -> None:
		"""Emit what Chromium emits for a main-frame load: commit, target info update, load event."""
		session_id = self.session_for(target_id)
		info = self.targets[target_id]
		info['url'] = url
		info['title'] = self.titles.get(url, url)
		loader_id = f'LOADER{next(self._entry_ids)}'
		self.emit('Page.frameNavigated', {'frame': {'id': target_id, 'loaderId': loader_id, 'url': url}}, session_id)
		self.emit('Target.targetInfoChanged', {'targetInfo': dict(info)})
		self.emit('Page.loadEventFired', {'timestamp': 1.0}, session_id)

	def _handle_Target_getTargets(self, params, session_id):
		return {'targetInfos': [dict(info) for info in self.targets.values()]}

	def _handle_Target_createTarget(self, params, session_id):
		return {'targetId': self._add_target(params.get('url', 'about:blank'))}

	def _handle_Target_attachToTarget(self, params, session_id):
		target_id = params['targetId']
		new_session_id = f'SESSION-{target_id}'
		self.sessions[new_session_id] = target_id
		self.targets[target_id]['attached'] = True
		return {'sessionId': new_session_id}

	def _handle_Target_getTargetInfo(self, params, session_id):
		return {'targetInfo': dict(self.targets[params['targetId']])}

	def _handle_Target_closeTarget(self, params, session_id):
		self.targets.pop(params['targetId'], None)
		return {'success': True}

	def _handle_Page_navigate(self, params, session_id):
		target_id = self.sessions[session_id]
		entries, index = self.history[target_id]
		entries = entries[: index + 1] + [{'id': next(self._entry_ids), 'url': params['url'], 'title': ''}]
		self.history[target_id] = (entries, len(entries) - 1)
		self._commit(target_id, params['url'])
		return {'frameId': target_id, 'loaderId': 'LOADER'}

	def _handle_Page_getNavigationHistory(self, params, session_id):
		entries, index = self.history[self.sessions[session_id]]
		return {'currentIndex': index, 'entries': entries}

	def _handle_Page_navigateToHistoryEntry(self, params, session_id):
		target_id = self.sessions[session_id]
		entries, _ = self.history[target_id]
		index = next(i for i, entry in enumerate(entries) if entry['id'] == params['entryId'])
		self.history[target_id] = (entries, index)
		self._commit(target_id, entries[index]['url'])
		return {}

	def _handle_Page_reload(self, params, session_id):
		target_id = self.sessions[session_id]
		self._commit(target_id, self.targets[target_id]['url'])
		return {}

	def _handle_Accessibility_getFullAXTree(self, params, session_id):
		return {'nodes': self.ax_nodes}

	def _handle_DOM_resolveNode(self, params, session_id):
		return {'object': {'type': 'object', 'objectId': f'OBJECT-{params["backendNodeId"]}'}}

	def _handle_DOM_getContentQuads(self, params, session_id):
		return {'quads': [[10, 10, 30, 10, 30, 30, 10, 30]]}

	def _handle_DOM_getBoxModel(self, params, session_id):
		quad = [10, 10, 30, 10, 30, 30, 10, 30]
		return {'model': {'content': quad, 'border': quad, 'width': 20, 'height': 20}}

	def _handle_Page_getLayoutMetrics(self, params, session_id):
		return {
			'cssVisualViewport': {'pageX': 0, 'pageY': 0, 'clientWidth': 800, 'clientHeight': 600},
			'cssContentSize': {'x': 0, 'y': 0, 'width': 800, 'height': 2400},
		}

	def _handle_Page_captureScreenshot(self, params, session_id):
		return {'data': base64.b64encode(PNG_BYTES).decode()}

	def _handle_Runtime_evaluate(self, params, session_id):
		return {'result': {'type': 'object', 'className': 'Window', 'objectId': 'GLOBAL'}}

	def _handle_Runtime_callFunctionOn(self, params, session_id):
		return {'result': {'type': 'undefined'}}

	def _handle_Tracing_end(self, params, session_id):
		self.emit_soon('Tracing.dataCollected', {'value': [{'name': 'a'}, {'name': 'b'}, {'name': 'c'}]}, session_id)
		self.emit_soon('Tracing.tracingComplete', {'dataLossOccurred': False}, session_id)
		return {}

	def _handle_Performance_getMetrics(self, params, session_id):
		return {
			'metrics': [
				{'name': 'JSHeapUsedSize', 'value': 2048},
				{'name': 'JSHeapTotalSize', 'value': 4096},
				{'name': 'Nodes', 'value': 42.0},
				{'name': 'TaskDuration', 'value': 0.1},
				{'name': 'ScriptDuration', 'value': 0.025},
			]
		}


def find_uid(snapshot: Snapshot, role: str, name: str) -> str:
	return next(uid for uid, node in snapshot.id_to_node.items() if node.role == role and node.name == name)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
	"""Poll until predicate() holds, for state updated by event-bus handlers that are dispatched without awaiting."""
	deadline = asyncio.get_running_loop().time() + timeout
	while not predicate():
		if asyncio.get_running_loop().time() > deadline:
			raise AssertionError('condition not met within timeout')
		await asyncio.sleep(0.01)


def active_target_id(context: BrowserContext) -> str:
	view_id = context.get_active_view_id()
	assert view_id is not None
	return context.view_manager.get_view(view_id).target_id


@pytest.fixture
def cdp_client():
	return FakeCDPClient()


@pytest.fixture
async def context(cdp_client):
	context = BrowserContext(monitor_connection=False)
	await context.connect(cdp_client=cdp_client)
	yield context
	await context.stop()


@pytest.fixture
def dispatcher(context):
	return ToolDispatcher(context)
