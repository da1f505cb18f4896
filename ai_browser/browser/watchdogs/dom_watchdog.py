"""DOM watchdog owning the current accessibility snapshot of each view."""

from functools import partial
from typing import Any, ClassVar

from bubus import BaseEvent
from cdp_use.cdp.target import SessionID
from pydantic import PrivateAttr

from ai_browser.browser.events import BrowserDisconnectedEvent, ViewClosedEvent, ViewCreatedEvent
from ai_browser.browser.session import CDPSession
from ai_browser.browser.views import ElementNotFoundError, View
from ai_browser.browser.watchdog_base import BaseWatchdog
from ai_browser.dom.service import AccessibilitySnapshotBuilder
from ai_browser.dom.views import ElementNode, Snapshot


class DOMWatchdog(BaseWatchdog):
	"""Keeps at most one live snapshot per view.

	Taking a snapshot replaces the previous one at once, and a main-frame
	navigation drops it, so uids from either are rejected from that moment on.
	A capture that a navigation overlaps is returned but never kept.
	"""

	LISTENS_TO: ClassVar[list[type[BaseEvent]]] = [ViewCreatedEvent, ViewClosedEvent, BrowserDisconnectedEvent]
	EMITS: ClassVar[list[type[BaseEvent]]] = []

	_snapshots: dict[str, Snapshot] = PrivateAttr(default_factory=dict)
	_navigation_counts: dict[str, int] = PrivateAttr(default_factory=dict)
	_builder: AccessibilitySnapshotBuilder | None = PrivateAttr(default=None)

	@property
	def builder(self) -> AccessibilitySnapshotBuilder:
		if self._builder is None:
			self._builder = AccessibilitySnapshotBuilder(logger=self.logger)
		return self._builder

	async def create_snapshot(self, view: View, cdp_session: CDPSession, verbose: bool = False) -> Snapshot:
		# drop the old snapshot before the capture starts, its uids must not outlive this call
		self._snapshots.pop(view.id, None)
		navigations_before = self._navigation_counts.get(view.id)
		snapshot = await self.builder.build(cdp_session, title=view.title, url=view.url, verbose=verbose)
		snapshot.view_id = view.id
		if self._navigation_counts.get(view.id) != navigations_before:
			self.logger.debug(f'🧭 View {view.id[-4:]} navigated during the snapshot, its uids are not kept')
			return snapshot
		self._snapshots[view.id] = snapshot
		return snapshot

	def get_element_by_uid(self, view_id: str, uid: str) -> ElementNode:
		generation, sep, _ = uid.partition('_')
		if not sep or not generation.isdigit():
			raise ElementNotFoundError(f'Element not found: "{uid}" is not a valid uid. Take a snapshot and use the uids it lists.')

		snapshot = self._snapshots.get(view_id)
		if snapshot is None or snapshot.generation_id != int(generation):
			raise ElementNotFoundError(
				f'Element not found: uid "{uid}" is from an outdated snapshot. Take a new snapshot and use the uids it lists.'
			)

		element = snapshot.id_to_node.get(uid)
		if element is None:
			raise ElementNotFoundError(f'Element not found: {uid}')
		return element

	def invalidate(self, view_id: str) -> None:
		self._snapshots.pop(view_id, None)

	async def on_ViewCreatedEvent(self, event: ViewCreatedEvent) -> None:
		cdp_session = self.browser_session.get_cdp_session(event.target_id)
		if cdp_session is None:
			return
		self._navigation_counts[event.view_id] = 0
		self.subscribe_view(event.view_id, cdp_session, 'Page.frameNavigated', partial(self._on_frame_navigated, event.view_id))

	async def on_ViewClosedEvent(self, event: ViewClosedEvent) -> None:
		self.unsubscribe_view(event.view_id)
		self._snapshots.pop(event.view_id, None)
		self._navigation_counts.pop(event.view_id, None)

	async def on_BrowserDisconnectedEvent(self, event: BrowserDisconnectedEvent) -> None:
		self.unsubscribe_all_views()
		self._snapshots.clear()
		self._navigation_counts.clear()

	def _on_frame_navigated(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		if event['frame'].get('parentId'):
			return
		if view_id in self._navigation_counts:
			self._navigation_counts[view_id] += 1
		self.invalidate(view_id)
