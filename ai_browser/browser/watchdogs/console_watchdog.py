"""Watchdog recording console output and uncaught exceptions of every view."""

from functools import partial
from typing import Any, ClassVar

from bubus import BaseEvent
from cdp_use.cdp.target import SessionID
from pydantic import Field, PrivateAttr

from ai_browser.browser.buffer import NavigationBuffer, next_record_id
from ai_browser.browser.events import BrowserDisconnectedEvent, ViewClosedEvent, ViewCreatedEvent
from ai_browser.browser.views import ConsoleMessageRecord
from ai_browser.browser.watchdog_base import BaseWatchdog
from ai_browser.config import CONFIG

# CDP names a couple of console API types differently from the console method that produced them
_CONSOLE_TYPE_ALIASES = {'warning': 'warn'}


def format_remote_object(remote_object: dict[str, Any]) -> str:
	"""Render a Runtime.RemoteObject the way the DevTools console prints it, roughly."""
	if 'value' in remote_object:
		value = remote_object['value']
		if isinstance(value, str):
			return value
		if value is None:
			return 'null'
		if isinstance(value, bool):
			return 'true' if value else 'false'
		return str(value)
	if 'unserializableValue' in remote_object:
		return remote_object['unserializableValue']
	if remote_object.get('type') == 'undefined':
		return 'undefined'
	return remote_object.get('description') or remote_object.get('className') or remote_object.get('type', '')


def format_stack_trace(stack_trace: dict[str, Any] | None) -> str | None:
	if not stack_trace or not stack_trace.get('callFrames'):
		return None
	lines = []
	for frame in stack_trace['callFrames']:
		function_name = frame.get('functionName') or '<anonymous>'
		# CDP line/column numbers are 0-based
		lines.append(f'    at {function_name} ({frame.get("url", "")}:{frame.get("lineNumber", 0) + 1}:{frame.get("columnNumber", 0) + 1})')
	return '\n'.join(lines)


class ConsoleWatchdog(BaseWatchdog):
	"""Turns Runtime.consoleAPICalled and Runtime.exceptionThrown into ConsoleMessageRecords."""

	LISTENS_TO: ClassVar[list[type[BaseEvent]]] = [ViewCreatedEvent, ViewClosedEvent, BrowserDisconnectedEvent]
	EMITS: ClassVar[list[type[BaseEvent]]] = []

	preserved_navigations: int = Field(default_factory=lambda: CONFIG.AI_BROWSER_PRESERVED_NAVIGATIONS)

	_messages: NavigationBuffer[ConsoleMessageRecord] = PrivateAttr()

	def model_post_init(self, __context) -> None:
		self._messages = NavigationBuffer(self.preserved_navigations)

	def get_messages(self, view_id: str, include_preserved: bool = False) -> list[ConsoleMessageRecord]:
		return self._messages.records(view_id, include_preserved)

	def get_message(self, record_id: int) -> ConsoleMessageRecord | None:
		return self._messages.get(record_id)

	async def on_ViewCreatedEvent(self, event: ViewCreatedEvent) -> None:
		cdp_session = self.browser_session.get_cdp_session(event.target_id)
		if cdp_session is None:
			self.logger.warning(f'⚠️ [ConsoleWatchdog] No CDP session for new view {event.view_id[-4:]}, console will not be recorded')
			return
		view_id = event.view_id
		self.subscribe_view(view_id, cdp_session, 'Runtime.consoleAPICalled', partial(self._on_console_api_called, view_id))
		self.subscribe_view(view_id, cdp_session, 'Runtime.exceptionThrown', partial(self._on_exception_thrown, view_id))
		self.subscribe_view(view_id, cdp_session, 'Page.frameNavigated', partial(self._on_frame_navigated, view_id))

	async def on_ViewClosedEvent(self, event: ViewClosedEvent) -> None:
		self.unsubscribe_view(event.view_id)
		self._messages.drop_view(event.view_id)

	async def on_BrowserDisconnectedEvent(self, event: BrowserDisconnectedEvent) -> None:
		self.unsubscribe_all_views()
		self._messages.clear()

	def _on_console_api_called(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		args = [format_remote_object(arg) for arg in event.get('args', [])]
		call_frames = (event.get('stackTrace') or {}).get('callFrames') or []
		top_frame = call_frames[0] if call_frames else {}
		message_type = event.get('type', 'log')
		self._messages.add(
			view_id,
			ConsoleMessageRecord(
				id=next_record_id(),
				view_id=view_id,
				type=_CONSOLE_TYPE_ALIASES.get(message_type, message_type),
				text=' '.join(args),
				timestamp=event.get('timestamp', 0.0),
				url=top_frame.get('url') or None,
				line_number=top_frame.get('lineNumber'),
				column_number=top_frame.get('columnNumber'),
				stack_trace=format_stack_trace(event.get('stackTrace')),
				args=args,
			),
		)

	def _on_exception_thrown(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		details = event.get('exceptionDetails', {})
		exception = details.get('exception') or {}
		text = exception.get('description') or details.get('text') or 'Uncaught exception'
		self._messages.add(
			view_id,
			ConsoleMessageRecord(
				id=next_record_id(),
				view_id=view_id,
				type='error',
				text=text,
				timestamp=event.get('timestamp', 0.0),
				url=details.get('url') or None,
				line_number=details.get('lineNumber'),
				column_number=details.get('columnNumber'),
				stack_trace=format_stack_trace(details.get('stackTrace')),
			),
		)

	def _on_frame_navigated(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		if event['frame'].get('parentId'):
			return
		self._messages.start_navigation(view_id)
