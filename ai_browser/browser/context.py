"""Coordination hub between the tool surface and the browser: active view, element actions, telemetry and tracing."""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Self

from cdp_use import CDPClient
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from ai_browser.browser.events import ActiveViewChangedEvent, BrowserDisconnectedEvent, ViewClosedEvent, ViewCreatedEvent
from ai_browser.browser.session import BrowserSession, CDPSession
from ai_browser.browser.views import (
	AlreadyTracingError,
	ConsoleMessageRecord,
	ElementNotFoundError,
	InvalidArgumentError,
	NetworkRequestRecord,
	NoActiveViewError,
	NoDialogError,
	NotFoundError,
	OperationTimeoutError,
	OptionNotFoundError,
	PendingDialog,
	PerformanceTraceResult,
	ProtocolError,
	ScreenshotResult,
	ScriptError,
)
from ai_browser.browser.view_manager import ViewManager
from ai_browser.browser.watchdog_base import BaseWatchdog
from ai_browser.browser.watchdogs.console_watchdog import ConsoleWatchdog, format_remote_object
from ai_browser.browser.watchdogs.crash_watchdog import CrashWatchdog
from ai_browser.browser.watchdogs.dom_watchdog import DOMWatchdog
from ai_browser.browser.watchdogs.navigation_watchdog import NavigationWatchdog
from ai_browser.browser.watchdogs.network_watchdog import NetworkWatchdog
from ai_browser.browser.watchdogs.popups_watchdog import PopupsWatchdog
from ai_browser.config import CONFIG
from ai_browser.dom.views import ElementNode, Snapshot
from ai_browser.utils import _log_pretty_url, time_execution_async

# CDP Modifier bits: Alt=1, Control=2, Meta/Command=4, Shift=8
MODIFIER_BITS = {
	'alt': 1,
	'option': 1,
	'control': 2,
	'ctrl': 2,
	'meta': 4,
	'cmd': 4,
	'command': 4,
	'shift': 8,
}

_MODIFIER_KEYS = {1: ('Alt', 'AltLeft', 18), 2: ('Control', 'ControlLeft', 17), 4: ('Meta', 'MetaLeft', 91), 8: ('Shift', 'ShiftLeft', 16)}

# key name -> (key, code, windowsVirtualKeyCode, text)
KEY_DEFINITIONS: dict[str, tuple[str, str, int, str | None]] = {
	'enter': ('Enter', 'Enter', 13, '\r'),
	'return': ('Enter', 'Enter', 13, '\r'),
	'tab': ('Tab', 'Tab', 9, None),
	'backspace': ('Backspace', 'Backspace', 8, None),
	'delete': ('Delete', 'Delete', 46, None),
	'escape': ('Escape', 'Escape', 27, None),
	'esc': ('Escape', 'Escape', 27, None),
	'space': (' ', 'Space', 32, ' '),
	'arrowup': ('ArrowUp', 'ArrowUp', 38, None),
	'arrowdown': ('ArrowDown', 'ArrowDown', 40, None),
	'arrowleft': ('ArrowLeft', 'ArrowLeft', 37, None),
	'arrowright': ('ArrowRight', 'ArrowRight', 39, None),
	'up': ('ArrowUp', 'ArrowUp', 38, None),
	'down': ('ArrowDown', 'ArrowDown', 40, None),
	'left': ('ArrowLeft', 'ArrowLeft', 37, None),
	'right': ('ArrowRight', 'ArrowRight', 39, None),
	'pageup': ('PageUp', 'PageUp', 33, None),
	'pagedown': ('PageDown', 'PageDown', 34, None),
	'home': ('Home', 'Home', 36, None),
	'end': ('End', 'End', 35, None),
	'insert': ('Insert', 'Insert', 45, None),
	**{f'f{n}': (f'F{n}', f'F{n}', 111 + n, None) for n in range(1, 13)},
}

_PUNCTUATION_CODES = {
	'+': ('Equal', 187),
	'=': ('Equal', 187),
	'-': ('Minus', 189),
	',': ('Comma', 188),
	'.': ('Period', 190),
	'/': ('Slash', 191),
	';': ('Semicolon', 186),
	"'": ('Quote', 222),
	'[': ('BracketLeft', 219),
	']': ('BracketRight', 221),
	'\\': ('Backslash', 220),
	'`': ('Backquote', 192),
}

TRACE_CATEGORIES = [
	'-*',
	'blink.console',
	'blink.user_timing',
	'devtools.timeline',
	'disabled-by-default-devtools.screenshot',
	'disabled-by-default-devtools.timeline',
	'disabled-by-default-devtools.timeline.frame',
	'disabled-by-default-devtools.timeline.stack',
	'disabled-by-default-v8.cpu_profiler',
	'latencyInfo',
	'loading',
	'v8.execute',
	'v8',
]

WAIT_FOR_TEXT_JS = """
(text, timeoutMs) => new Promise((resolve) => {
	const found = () => !!document.body && document.body.innerText.includes(text);
	if (found()) {
		resolve(true);
		return;
	}
	const observer = new MutationObserver(() => {
		if (found()) {
			observer.disconnect();
			clearTimeout(timer);
			resolve(true);
		}
	});
	observer.observe(document.documentElement, {childList: true, subtree: true, characterData: true});
	const timer = setTimeout(() => {
		observer.disconnect();
		resolve(false);
	}, timeoutMs);
})
"""

SELECT_OPTION_JS = """
function(value) {
	if (this.tagName !== 'SELECT') {
		return null;
	}
	for (const option of this.options) {
		if (option.value === value || option.textContent.trim() === value) {
			this.value = option.value;
			this.dispatchEvent(new Event('input', {bubbles: true}));
			this.dispatchEvent(new Event('change', {bubbles: true}));
			return true;
		}
	}
	return false;
}
"""

SELECT_CONTENTS_JS = """
function() {
	if (typeof this.select === 'function') {
		this.select();
	} else if (this.isContentEditable) {
		const range = document.createRange();
		range.selectNodeContents(this);
		const selection = window.getSelection();
		selection.removeAllRanges();
		selection.addRange(range);
	}
}
"""

# errors Runtime.evaluate reports when the document it ran in went away mid-call
_CONTEXT_LOST_MARKERS = ('Execution context was destroyed', 'Inspected target navigated or closed', 'Cannot find context')


def parse_key_combination(combo: str) -> tuple[int, str]:
	"""Split 'Control+Shift+R' into (modifier bits, 'R'). A trailing '+' is the key itself, as in 'Control++'."""
	if not combo:
		raise InvalidArgumentError('A key is required.')
	if combo == '+':
		return 0, '+'
	if combo.endswith('++'):
		modifier_names, key = combo[:-2].split('+'), '+'
	else:
		*modifier_names, key = combo.split('+')
	if not key:
		raise InvalidArgumentError(f'Invalid key combination: "{combo}"')

	modifiers = 0
	for name in modifier_names:
		bit = MODIFIER_BITS.get(name.lower())
		if bit is None:
			raise InvalidArgumentError(f'Unknown modifier "{name}" in "{combo}". Modifiers: Control, Shift, Alt, Meta')
		modifiers |= bit
	return modifiers, key


def _key_definition(key: str) -> tuple[str, str, int, str | None]:
	named = KEY_DEFINITIONS.get(key.lower())
	if named is not None:
		return named
	if len(key) != 1:
		# unknown named key, let the browser interpret it
		return key, key, 0, None
	if key.isalpha():
		return key, f'Key{key.upper()}', ord(key.upper()), key
	if key.isdigit():
		return key, f'Digit{key}', ord(key), key
	code, key_code = _PUNCTUATION_CODES.get(key, ('', 0))
	return key, code, key_code, key


def _quad_center(quad: list[float]) -> tuple[float, float]:
	xs, ys = quad[0::2], quad[1::2]
	return sum(xs) / len(xs), sum(ys) / len(ys)


def _quad_bounds(quad: list[float]) -> tuple[float, float, float, float]:
	xs, ys = quad[0::2], quad[1::2]
	return min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys)


class BrowserContext(BaseModel):
	"""Everything a tool call needs, scoped to the active view.

	Owns the browser session, the view manager and the watchdogs that keep
	telemetry, dialog and snapshot state current in the background.

	```python
	context = BrowserContext()
	await context.connect('http://127.0.0.1:9222')
	snapshot = await context.create_snapshot()
	await context.click_element(next(iter(snapshot.id_to_node)))
	```
	"""

	model_config = ConfigDict(arbitrary_types_allowed=True, extra='forbid', revalidate_instances='never')

	browser_session: BrowserSession = Field(default_factory=BrowserSession)
	preserved_navigations: int = Field(default_factory=lambda: CONFIG.AI_BROWSER_PRESERVED_NAVIGATIONS)
	monitor_connection: bool = Field(default=True, description='Ping the browser in the background to notice a dead websocket')

	_view_manager: ViewManager | None = PrivateAttr(default=None)
	_network_watchdog: NetworkWatchdog | None = PrivateAttr(default=None)
	_console_watchdog: ConsoleWatchdog | None = PrivateAttr(default=None)
	_popups_watchdog: PopupsWatchdog | None = PrivateAttr(default=None)
	_navigation_watchdog: NavigationWatchdog | None = PrivateAttr(default=None)
	_dom_watchdog: DOMWatchdog | None = PrivateAttr(default=None)
	_crash_watchdog: CrashWatchdog | None = PrivateAttr(default=None)
	_watchdogs_attached: bool = PrivateAttr(default=False)

	_active_view_id: str | None = PrivateAttr(default=None)

	# view the running trace was started on, None while idle
	_trace_view_id: str | None = PrivateAttr(default=None)
	_trace_started_at: float | None = PrivateAttr(default=None)

	@property
	def logger(self) -> logging.Logger:
		return logging.getLogger(f'ai_browser.{self.browser_session}.BrowserContext')

	def model_post_init(self, __context) -> None:
		self._view_manager = ViewManager(browser_session=self.browser_session)

	@property
	def view_manager(self) -> ViewManager:
		assert self._view_manager is not None
		return self._view_manager

	# ========== Startup ==========

	def attach_all_watchdogs(self) -> None:
		"""Initialize and attach all watchdogs with explicit handler registration."""
		if self._watchdogs_attached:
			self.logger.debug('Watchdogs already attached, skipping duplicate attachment')
			return

		event_bus = self.browser_session.event_bus

		self._network_watchdog = NetworkWatchdog(
			event_bus=event_bus, browser_session=self.browser_session, preserved_navigations=self.preserved_navigations
		)
		self._console_watchdog = ConsoleWatchdog(
			event_bus=event_bus, browser_session=self.browser_session, preserved_navigations=self.preserved_navigations
		)
		self._popups_watchdog = PopupsWatchdog(event_bus=event_bus, browser_session=self.browser_session)
		self._navigation_watchdog = NavigationWatchdog(event_bus=event_bus, browser_session=self.browser_session)
		self._dom_watchdog = DOMWatchdog(event_bus=event_bus, browser_session=self.browser_session)
		watchdogs: list[BaseWatchdog] = [
			self._network_watchdog,
			self._console_watchdog,
			self._popups_watchdog,
			self._navigation_watchdog,
			self._dom_watchdog,
		]
		if self.monitor_connection:
			self._crash_watchdog = CrashWatchdog(event_bus=event_bus, browser_session=self.browser_session)
			watchdogs.append(self._crash_watchdog)

		for watchdog in watchdogs:
			watchdog.attach_to_session()

		BaseWatchdog.attach_handler_to_session(self.browser_session, ViewCreatedEvent, self.on_ViewCreatedEvent)
		BaseWatchdog.attach_handler_to_session(self.browser_session, ViewClosedEvent, self.on_ViewClosedEvent)
		BaseWatchdog.attach_handler_to_session(self.browser_session, BrowserDisconnectedEvent, self.on_BrowserDisconnectedEvent)
		self._watchdogs_attached = True

	async def connect(self, cdp_url: str | None = None, cdp_client: CDPClient | None = None) -> Self:
		"""Connect to a running browser, adopt its pages and select the first one."""
		self.attach_all_watchdogs()
		await self.browser_session.connect(cdp_url=cdp_url, cdp_client=cdp_client)
		views = await self.view_manager.start()
		if not self.view_manager.has_view(self._active_view_id):
			self._set_active(views[0].id if views else self.view_manager.view_ids[0])
		await self.browser_session.announce_connected()
		self.logger.info(f'🌐 Connected to browser with {len(self.view_manager.view_ids)} open page(s)')
		return self

	async def stop(self) -> None:
		await self.browser_session.stop()

	# ========== Active view ==========

	def get_active_view_id(self) -> str | None:
		if not self.view_manager.has_view(self._active_view_id):
			return None
		return self._active_view_id

	def set_active_view_id(self, view_id: str) -> None:
		if not self.view_manager.has_view(view_id):
			raise NotFoundError(f'No page with id {view_id}')
		self._set_active(view_id)

	def _set_active(self, view_id: str | None) -> None:
		if view_id == self._active_view_id:
			return
		self._active_view_id = view_id
		self.logger.debug(f'👉 Active view is now {view_id[-4:] if view_id else None}')
		self.browser_session.event_bus.dispatch(ActiveViewChangedEvent(view_id=view_id))

	def _require_active_view_id(self) -> str:
		view_id = self.get_active_view_id()
		if view_id is None:
			raise NoActiveViewError()
		return view_id

	def _active_cdp_session(self) -> CDPSession:
		return self.view_manager.get_cdp_session(self._require_active_view_id())

	async def on_ViewCreatedEvent(self, event: ViewCreatedEvent) -> None:
		# a view opened while none is selected, e.g. the blank page replacing one the browser closed
		if self.get_active_view_id() is None:
			self._set_active(event.view_id)

	async def on_ViewClosedEvent(self, event: ViewClosedEvent) -> None:
		if event.view_id != self._active_view_id:
			return
		survivors = self.view_manager.view_ids
		self._set_active(survivors[-1] if survivors else None)

	async def on_BrowserDisconnectedEvent(self, event: BrowserDisconnectedEvent) -> None:
		self._set_active(None)
		self._trace_view_id = None
		self._trace_started_at = None

	# ========== Raw protocol ==========

	async def send_cdp_command(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
		return await self._active_cdp_session().send(method, params)

	def get_page_url(self) -> str:
		return self.view_manager.get_view(self._require_active_view_id()).url

	# ========== Waiting ==========

	def load_marker(self) -> int:
		"""Load counter of the active view, take it before issuing a navigation and pass it to wait_for_navigation()."""
		assert self._navigation_watchdog is not None, 'BrowserContext is not connected'
		return self._navigation_watchdog.load_marker(self._require_active_view_id())

	async def wait_for_navigation(self, timeout_ms: float | None = None, after: int | None = None) -> None:
		assert self._navigation_watchdog is not None, 'BrowserContext is not connected'
		timeout_ms = timeout_ms or CONFIG.AI_BROWSER_NAVIGATION_TIMEOUT_MS
		view_id = self._require_active_view_id()
		cdp_session = self.view_manager.get_cdp_session(view_id)
		await self._navigation_watchdog.wait_for_load(view_id, cdp_session, timeout_ms=timeout_ms, after=after)

	async def wait_for_text(self, text: str, timeout_ms: float | None = None) -> None:
		"""Resolve once text is rendered in the active view, re-arming the observer if the page navigates meanwhile."""
		timeout_ms = timeout_ms or CONFIG.AI_BROWSER_NAVIGATION_TIMEOUT_MS
		deadline = time.monotonic() + timeout_ms / 1000
		while True:
			remaining_ms = (deadline - time.monotonic()) * 1000
			if remaining_ms <= 0:
				break
			expression = f'({WAIT_FOR_TEXT_JS})({json.dumps(text)}, {int(remaining_ms)})'
			try:
				result = await asyncio.wait_for(
					self.send_cdp_command(
						'Runtime.evaluate', {'expression': expression, 'awaitPromise': True, 'returnByValue': True}
					),
					timeout=remaining_ms / 1000 + 1,
				)
			except TimeoutError:
				break
			except ProtocolError as e:
				if not any(marker in e.message for marker in _CONTEXT_LOST_MARKERS):
					raise
				self.logger.debug(f'🔄 Page navigated while waiting for text "{text[:40]}", waiting on the new document')
				await asyncio.sleep(0.1)
				continue

			if 'exceptionDetails' in result:
				details = result['exceptionDetails']
				description = (details.get('exception') or {}).get('description') or details.get('text', '')
				if any(marker in description for marker in _CONTEXT_LOST_MARKERS):
					await asyncio.sleep(0.1)
					continue
				raise ScriptError(f'Waiting for text failed: {description}')
			if result.get('result', {}).get('value') is True:
				return
			break
		raise OperationTimeoutError(f'Timeout waiting for text: "{text}"')

	# ========== Snapshot ==========

	async def create_snapshot(self, verbose: bool = False) -> Snapshot:
		assert self._dom_watchdog is not None, 'BrowserContext is not connected'
		view_id = self._require_active_view_id()
		view = self.view_manager.get_view(view_id)
		return await self._dom_watchdog.create_snapshot(view, self.view_manager.get_cdp_session(view_id), verbose=verbose)

	def get_element_by_uid(self, uid: str) -> ElementNode:
		assert self._dom_watchdog is not None, 'BrowserContext is not connected'
		return self._dom_watchdog.get_element_by_uid(self._require_active_view_id(), uid)

	def _backend_node_id(self, uid: str) -> int:
		element = self.get_element_by_uid(uid)
		if element.backend_node_id is None:
			raise ElementNotFoundError(f'Element {uid} ({element.role} "{element.name}") has no DOM node to act on')
		return element.backend_node_id

	async def _resolve_object_id(self, cdp_session: CDPSession, uid: str) -> str:
		result = await cdp_session.send('DOM.resolveNode', {'backendNodeId': self._backend_node_id(uid)})
		object_id = result.get('object', {}).get('objectId')
		if not object_id:
			raise ElementNotFoundError(f'Element {uid} is no longer attached to the page, take a new snapshot')
		return object_id

	# ========== Element geometry ==========

	async def _get_element_center(self, cdp_session: CDPSession, uid: str) -> tuple[float, float]:
		backend_node_id = self._backend_node_id(uid)

		try:
			await cdp_session.send('DOM.scrollIntoViewIfNeeded', {'backendNodeId': backend_node_id})
		except ProtocolError as e:
			self.logger.debug(f'Failed to scroll element {uid} into view: {e}')

		# Method 1: DOM.getContentQuads (best for inline elements and complex layouts)
		try:
			quads = (await cdp_session.send('DOM.getContentQuads', {'backendNodeId': backend_node_id})).get('quads') or []
			if quads:
				return _quad_center(quads[0])
		except ProtocolError as e:
			self.logger.debug(f'DOM.getContentQuads failed for {uid}: {e}')

		# Method 2: fall back to DOM.getBoxModel
		try:
			model = (await cdp_session.send('DOM.getBoxModel', {'backendNodeId': backend_node_id})).get('model') or {}
			if len(model.get('content') or []) >= 8:
				return _quad_center(model['content'])
		except ProtocolError as e:
			self.logger.debug(f'DOM.getBoxModel failed for {uid}: {e}')

		raise ElementNotFoundError(f'Element {uid} is not visible on the page, it has no layout box')

	# ========== Input ==========

	@time_execution_async('--click_element')
	async def click_element(self, uid: str, dbl_click: bool = False) -> None:
		cdp_session = self._active_cdp_session()
		x, y = await self._get_element_center(cdp_session, uid)
		self.logger.debug(f'👆 {"Double clicking" if dbl_click else "Clicking"} {uid} at x: {x:.0f}px y: {y:.0f}px')
		await cdp_session.send('Input.dispatchMouseEvent', {'type': 'mouseMoved', 'x': x, 'y': y})
		for click_count in range(1, 3 if dbl_click else 2):
			for event_type in ('mousePressed', 'mouseReleased'):
				await cdp_session.send(
					'Input.dispatchMouseEvent',
					{'type': event_type, 'x': x, 'y': y, 'button': 'left', 'clickCount': click_count},
				)

	async def hover_element(self, uid: str) -> None:
		cdp_session = self._active_cdp_session()
		x, y = await self._get_element_center(cdp_session, uid)
		await cdp_session.send('Input.dispatchMouseEvent', {'type': 'mouseMoved', 'x': x, 'y': y})

	async def drag_element(self, from_uid: str, to_uid: str) -> None:
		cdp_session = self._active_cdp_session()
		start_x, start_y = await self._get_element_center(cdp_session, from_uid)
		await cdp_session.send('Input.dispatchMouseEvent', {'type': 'mouseMoved', 'x': start_x, 'y': start_y})
		await cdp_session.send(
			'Input.dispatchMouseEvent', {'type': 'mousePressed', 'x': start_x, 'y': start_y, 'button': 'left', 'clickCount': 1}
		)
		# the drop target is measured while the source is held, scrolling to it must not release the drag
		end_x, end_y = await self._get_element_center(cdp_session, to_uid)
		steps = 5
		for step in range(1, steps + 1):
			await cdp_session.send(
				'Input.dispatchMouseEvent',
				{
					'type': 'mouseMoved',
					'x': start_x + (end_x - start_x) * step / steps,
					'y': start_y + (end_y - start_y) * step / steps,
					'button': 'left',
					'buttons': 1,
				},
			)
		await cdp_session.send(
			'Input.dispatchMouseEvent', {'type': 'mouseReleased', 'x': end_x, 'y': end_y, 'button': 'left', 'clickCount': 1}
		)
		self.logger.debug(f'🤏 Dragged {from_uid} onto {to_uid}')

	async def press_key(self, combo: str) -> None:
		modifiers, key_name = parse_key_combination(combo)
		cdp_session = self._active_cdp_session()
		key, code, key_code, text = _key_definition(key_name)

		held = 0
		for bit, (modifier_key, modifier_code, modifier_key_code) in _MODIFIER_KEYS.items():
			if modifiers & bit:
				held |= bit
				await cdp_session.send(
					'Input.dispatchKeyEvent',
					{
						'type': 'rawKeyDown',
						'key': modifier_key,
						'code': modifier_code,
						'windowsVirtualKeyCode': modifier_key_code,
						'modifiers': held,
					},
				)

		key_params: dict[str, Any] = {'key': key, 'code': code, 'windowsVirtualKeyCode': key_code, 'modifiers': modifiers}
		# text is only produced without Control/Alt/Meta held, otherwise it is a shortcut
		if text is not None and not modifiers & ~8:
			await cdp_session.send('Input.dispatchKeyEvent', {'type': 'keyDown', 'text': text, **key_params})
		else:
			await cdp_session.send('Input.dispatchKeyEvent', {'type': 'rawKeyDown', **key_params})
		await cdp_session.send('Input.dispatchKeyEvent', {'type': 'keyUp', **key_params})

		for bit, (modifier_key, modifier_code, modifier_key_code) in reversed(_MODIFIER_KEYS.items()):
			if modifiers & bit:
				held &= ~bit
				await cdp_session.send(
					'Input.dispatchKeyEvent',
					{
						'type': 'keyUp',
						'key': modifier_key,
						'code': modifier_code,
						'windowsVirtualKeyCode': modifier_key_code,
						'modifiers': held,
					},
				)
		self.logger.debug(f'⌨️ Pressed key: {combo}')

	# ========== Forms ==========

	async def fill_form_element(self, uid: str, value: str) -> None:
		"""Fill one form element, picking an option for select-like comboboxes.

		A combobox owning option nodes is treated as a select. If none of its options
		match, it is an editable combobox showing suggestions and gets typed into.
		"""
		element = self.get_element_by_uid(uid)
		if element.role == 'combobox' and element.has_child_with_role('option'):
			try:
				await self.select_option(uid, value)
				return
			except OptionNotFoundError as e:
				self.logger.debug(f'{e}, filling {uid} as an editable combobox')
		await self.fill_element(uid, value)

	async def select_option(self, uid: str, value: str) -> None:
		element = self.get_element_by_uid(uid)
		cdp_session = self._active_cdp_session()
		object_id = await self._resolve_object_id(cdp_session, uid)
		result = await cdp_session.send(
			'Runtime.callFunctionOn',
			{
				'functionDeclaration': SELECT_OPTION_JS,
				'objectId': object_id,
				'arguments': [{'value': value}],
				'returnByValue': True,
			},
		)
		selected = result.get('result', {}).get('value')
		if selected is True:
			return

		if selected is None:
			# not a native <select>, pick the matching option node of the ARIA listbox instead
			option = self._find_option(element, value)
			if option is not None:
				await self.click_element(option.uid)
				return

		raise OptionNotFoundError(f'Could not find option "{value}" in element {uid}')

	@staticmethod
	def _find_option(element: ElementNode, value: str) -> ElementNode | None:
		stack = list(element.children)
		while stack:
			node = stack.pop(0)
			if node.role == 'option' and (node.name.strip() == value or node.attributes.get('value') == value):
				return node
			stack.extend(node.children)
		return None

	async def fill_element(self, uid: str, value: str) -> None:
		cdp_session = self._active_cdp_session()
		backend_node_id = self._backend_node_id(uid)
		object_id = await self._resolve_object_id(cdp_session, uid)

		try:
			await cdp_session.send('DOM.scrollIntoViewIfNeeded', {'backendNodeId': backend_node_id})
		except ProtocolError as e:
			self.logger.debug(f'Failed to scroll element {uid} into view: {e}')
		await cdp_session.send('DOM.focus', {'backendNodeId': backend_node_id})

		# select the current content so the new value replaces it
		await cdp_session.send('Runtime.callFunctionOn', {'functionDeclaration': SELECT_CONTENTS_JS, 'objectId': object_id})
		if value:
			await cdp_session.send('Input.insertText', {'text': value})
		else:
			for event_type in ('rawKeyDown', 'keyUp'):
				await cdp_session.send(
					'Input.dispatchKeyEvent', {'type': event_type, 'key': 'Delete', 'code': 'Delete', 'windowsVirtualKeyCode': 46}
				)
		self.logger.debug(f'⌨️ Filled {uid} with {len(value)} characters')

	async def upload_file(self, uid: str, file_path: str) -> None:
		path = Path(file_path).expanduser()
		if not path.exists():
			raise InvalidArgumentError(f'File {file_path} does not exist')
		await self.send_cdp_command(
			'DOM.setFileInputFiles', {'files': [str(path.resolve())], 'backendNodeId': self._backend_node_id(uid)}
		)

	async def evaluate_script(self, function: str, element_uids: list[str] | None = None) -> Any:
		"""Call a JS function declaration in the active view with the given elements as arguments, return its JSON value."""
		cdp_session = self._active_cdp_session()
		arguments = [{'objectId': await self._resolve_object_id(cdp_session, uid)} for uid in element_uids or []]

		global_object = await cdp_session.send('Runtime.evaluate', {'expression': 'globalThis'})
		result = await cdp_session.send(
			'Runtime.callFunctionOn',
			{
				'functionDeclaration': function,
				'objectId': global_object['result']['objectId'],
				'arguments': arguments,
				'awaitPromise': True,
				'returnByValue': True,
			},
		)
		if 'exceptionDetails' in result:
			details = result['exceptionDetails']
			exception = details.get('exception')
			raise ScriptError(format_remote_object(exception) if exception else details.get('text', 'Script failed'))
		return result.get('result', {}).get('value')

	# ========== Screenshots & viewport ==========

	async def capture_screenshot(
		self,
		format: str = 'png',
		quality: int | None = None,
		uid: str | None = None,
		full_page: bool = False,
	) -> ScreenshotResult:
		if uid and full_page:
			raise InvalidArgumentError('Providing both "uid" and "fullPage" is not allowed.')

		cdp_session = self._active_cdp_session()
		params: dict[str, Any] = {'format': format}
		if quality is not None and format != 'png':
			params['quality'] = quality

		if uid:
			backend_node_id = self._backend_node_id(uid)
			try:
				await cdp_session.send('DOM.scrollIntoViewIfNeeded', {'backendNodeId': backend_node_id})
			except ProtocolError as e:
				self.logger.debug(f'Failed to scroll element {uid} into view: {e}')
			model = (await cdp_session.send('DOM.getBoxModel', {'backendNodeId': backend_node_id}))['model']
			x, y, width, height = _quad_bounds(model['border'])
			metrics = await cdp_session.send('Page.getLayoutMetrics')
			viewport = metrics.get('cssVisualViewport') or metrics.get('visualViewport') or {}
			params['clip'] = {
				'x': x + viewport.get('pageX', 0),
				'y': y + viewport.get('pageY', 0),
				'width': width,
				'height': height,
				'scale': 1,
			}
			params['captureBeyondViewport'] = True
		elif full_page:
			metrics = await cdp_session.send('Page.getLayoutMetrics')
			content_size = metrics.get('cssContentSize') or metrics['contentSize']
			params['clip'] = {'x': 0, 'y': 0, 'width': content_size['width'], 'height': content_size['height'], 'scale': 1}
			params['captureBeyondViewport'] = True

		result = await cdp_session.send('Page.captureScreenshot', params)
		return ScreenshotResult(data=result['data'], mime_type=f'image/{format}')

	async def set_viewport_size(self, width: int, height: int) -> None:
		await self.send_cdp_command(
			'Emulation.setDeviceMetricsOverride', {'width': width, 'height': height, 'deviceScaleFactor': 0, 'mobile': False}
		)

	# ========== Telemetry ==========

	def get_network_requests(self, include_preserved: bool = False) -> list[NetworkRequestRecord]:
		assert self._network_watchdog is not None, 'BrowserContext is not connected'
		return self._network_watchdog.get_requests(self._require_active_view_id(), include_preserved)

	def get_network_request(self, record_id: int) -> NetworkRequestRecord:
		assert self._network_watchdog is not None, 'BrowserContext is not connected'
		record = self._network_watchdog.get_request(record_id)
		if record is None:
			raise NotFoundError(f'Request not found: {record_id}')
		return record

	def get_console_messages(self, include_preserved: bool = False) -> list[ConsoleMessageRecord]:
		assert self._console_watchdog is not None, 'BrowserContext is not connected'
		return self._console_watchdog.get_messages(self._require_active_view_id(), include_preserved)

	def get_console_message(self, record_id: int) -> ConsoleMessageRecord:
		assert self._console_watchdog is not None, 'BrowserContext is not connected'
		record = self._console_watchdog.get_message(record_id)
		if record is None:
			raise NotFoundError(f'Message not found: {record_id}')
		return record

	# ========== Dialogs ==========

	def get_pending_dialog(self) -> PendingDialog | None:
		assert self._popups_watchdog is not None, 'BrowserContext is not connected'
		view_id = self.get_active_view_id()
		return self._popups_watchdog.get_pending_dialog(view_id) if view_id else None

	async def handle_dialog(self, accept: bool, prompt_text: str | None = None) -> None:
		assert self._popups_watchdog is not None, 'BrowserContext is not connected'
		view_id = self._require_active_view_id()
		dialog = self._popups_watchdog.get_pending_dialog(view_id)
		if dialog is None:
			raise NoDialogError('No open dialog found')

		params: dict[str, Any] = {'accept': accept}
		if prompt_text is not None:
			params['promptText'] = prompt_text
		await self.view_manager.get_cdp_session(view_id).send('Page.handleJavaScriptDialog', params)
		self._popups_watchdog.clear_pending_dialog(view_id)
		self.logger.info(f'🔕 {"Accepted" if accept else "Dismissed"} {dialog.type} dialog: {dialog.message[:100]}')

	# ========== Performance ==========

	def is_performance_tracing(self) -> bool:
		return self._trace_view_id is not None

	async def start_performance_trace(self) -> None:
		if self._trace_view_id is not None:
			raise AlreadyTracingError(
				'A performance trace is already running. Use browser_perf_stop to stop it. '
				'Only one trace can be running at any given time.'
			)
		view_id = self._require_active_view_id()
		cdp_session = self.view_manager.get_cdp_session(view_id)

		# claim the trace before the first await so a concurrent start fails
		self._trace_view_id = view_id
		try:
			await cdp_session.send('Performance.enable')
			await cdp_session.send(
				'Tracing.start', {'traceConfig': {'includedCategories': TRACE_CATEGORIES}, 'transferMode': 'ReportEvents'}
			)
		except BaseException:
			self._trace_view_id = None
			raise
		self._trace_started_at = time.monotonic()
		self.logger.info(f'⏺️ Started performance trace on {_log_pretty_url(self.view_manager.get_view(view_id).url, 60)}')

	async def stop_performance_trace(self) -> PerformanceTraceResult | None:
		"""Stop the running trace and collect metrics. Stopping while idle returns None."""
		view_id, started_at = self._trace_view_id, self._trace_started_at
		if view_id is None:
			return None

		event_count = 0

		def _on_data_collected(event: dict[str, Any], session_id: str | None = None) -> None:
			nonlocal event_count
			event_count += len(event.get('value', []))

		try:
			if self.view_manager.has_view(view_id):
				cdp_session = self.view_manager.get_cdp_session(view_id)
				unsubscribe = cdp_session.subscribe('Tracing.dataCollected', _on_data_collected)
				try:
					completed = asyncio.ensure_future(
						cdp_session.wait_for_event('Tracing.tracingComplete', timeout_ms=CONFIG.AI_BROWSER_NAVIGATION_TIMEOUT_MS)
					)
					try:
						await cdp_session.send('Tracing.end')
					except BaseException:
						completed.cancel()
						raise
					await completed
				finally:
					unsubscribe()
			else:
				self.logger.warning('⚠️ The traced page was closed, its trace ended with it')
		finally:
			self._trace_view_id = None
			self._trace_started_at = None

		duration = round((time.monotonic() - (started_at or time.monotonic())) * 1000)
		metrics = await self.get_performance_metrics() if self.get_active_view_id() else {}
		self.logger.info(f'⏹️ Stopped performance trace after {duration}ms ({event_count} trace events)')
		return PerformanceTraceResult(duration=duration, metrics=metrics, event_count=event_count)

	async def get_performance_metrics(self) -> dict[str, float]:
		cdp_session = self._active_cdp_session()
		await cdp_session.send('Performance.enable')
		result = await cdp_session.send('Performance.getMetrics')
		return {metric['name']: metric['value'] for metric in result.get('metrics', [])}
