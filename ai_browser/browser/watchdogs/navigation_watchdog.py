"""Navigation watchdog counting page loads so waits never miss a load that already happened."""

from functools import partial
from typing import Any, ClassVar

from bubus import BaseEvent
from cdp_use.cdp.target import SessionID
from pydantic import PrivateAttr

from ai_browser.browser.events import BrowserDisconnectedEvent, ViewClosedEvent, ViewCreatedEvent
from ai_browser.browser.session import CDPSession
from ai_browser.browser.watchdog_base import BaseWatchdog


class NavigationWatchdog(BaseWatchdog):
	"""Counts Page.loadEventFired per view and logs main-frame commits.

	Callers take a load marker before issuing a navigation command and pass it to
	wait_for_load(); if the load already fired in between, the wait returns at once
	instead of waiting for a second load that never comes.
	"""

	LISTENS_TO: ClassVar[list[type[BaseEvent]]] = [ViewCreatedEvent, ViewClosedEvent, BrowserDisconnectedEvent]
	EMITS: ClassVar[list[type[BaseEvent]]] = []

	_load_counts: dict[str, int] = PrivateAttr(default_factory=dict)

	def load_marker(self, view_id: str) -> int:
		return self._load_counts.get(view_id, 0)

	async def wait_for_load(self, view_id: str, cdp_session: CDPSession, timeout_ms: float, after: int | None = None) -> None:
		if after is not None and self._load_counts.get(view_id, 0) > after:
			return
		await cdp_session.wait_for_event('Page.loadEventFired', timeout_ms=timeout_ms)

	async def on_ViewCreatedEvent(self, event: ViewCreatedEvent) -> None:
		cdp_session = self.browser_session.get_cdp_session(event.target_id)
		if cdp_session is None:
			return
		view_id = event.view_id
		self.subscribe_view(view_id, cdp_session, 'Page.loadEventFired', partial(self._on_load_event_fired, view_id))
		self.subscribe_view(view_id, cdp_session, 'Page.frameNavigated', partial(self._on_frame_navigated, view_id))

	async def on_ViewClosedEvent(self, event: ViewClosedEvent) -> None:
		self.unsubscribe_view(event.view_id)
		self._load_counts.pop(event.view_id, None)

	async def on_BrowserDisconnectedEvent(self, event: BrowserDisconnectedEvent) -> None:
		self.unsubscribe_all_views()
		self._load_counts.clear()

	def _on_load_event_fired(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		self._load_counts[view_id] = self._load_counts.get(view_id, 0) + 1

	def _on_frame_navigated(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		if event['frame'].get('parentId'):
			return
		self.logger.debug(f'🧭 View {view_id[-4:]} committed navigation to {event["frame"].get("url", "")[:100]}')
