"""Lifecycle of the browser views (page targets) the engine drives."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from cdp_use.cdp.target import SessionID, TargetID
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from uuid_extensions import uuid7str

from ai_browser.browser.events import BrowserDisconnectedEvent, ViewClosedEvent, ViewCreatedEvent
from ai_browser.browser.session import BrowserSession, CDPSession
from ai_browser.browser.views import (
	BrowserError,
	InvalidOperationError,
	NotFoundError,
	ProtocolError,
	View,
	ViewState,
)
from ai_browser.utils import _log_pretty_url, cancel_and_wait


def _is_driveable_page(target_info: dict[str, Any]) -> bool:
	if target_info.get('type') != 'page':
		return False
	url = target_info.get('url', '')
	return not url.startswith(('devtools://', 'chrome-extension://', 'chrome-error://'))


class ViewManager(BaseModel):
	"""Creates, tracks and destroys views, and keeps their title/url current.

	Views are kept in creation order, which is the order page indexes refer to.
	At least one view always exists while connected: destroying the last one is
	refused and connecting to a browser with no pages opens an about:blank view.
	When the browser itself closes the last page, a blank view takes its place.
	"""

	model_config = ConfigDict(arbitrary_types_allowed=True, extra='forbid', revalidate_instances='never')

	browser_session: BrowserSession = Field()

	_views: dict[str, View] = PrivateAttr(default_factory=dict)
	_view_ids_by_target: dict[TargetID, str] = PrivateAttr(default_factory=dict)
	_cdp_unsubscribers: list[Callable[[], None]] = PrivateAttr(default_factory=list)
	_replacement_task: asyncio.Task[None] | None = PrivateAttr(default=None)

	@property
	def logger(self) -> logging.Logger:
		return logging.getLogger(f'ai_browser.{self.browser_session}.ViewManager')

	def model_post_init(self, __context) -> None:
		from ai_browser.browser.watchdog_base import BaseWatchdog

		BaseWatchdog.attach_handler_to_session(self.browser_session, BrowserDisconnectedEvent, self.on_BrowserDisconnectedEvent)

	# ========== Startup ==========

	async def start(self) -> list[View]:
		"""Begin tracking target changes and adopt the pages already open in the browser."""
		self._cdp_unsubscribers.append(self.browser_session.subscribe('Target.targetInfoChanged', self._on_target_info_changed))
		self._cdp_unsubscribers.append(self.browser_session.subscribe('Target.targetDestroyed', self._on_target_destroyed))
		return await self.adopt_existing_targets()

	async def adopt_existing_targets(self) -> list[View]:
		targets = (await self.browser_session.send('Target.getTargets')).get('targetInfos', [])
		adopted = []
		for target_info in targets:
			if not _is_driveable_page(target_info) or target_info['targetId'] in self._view_ids_by_target:
				continue
			view = await self._attach_view(target_info['targetId'], target_info.get('url') or 'about:blank')
			view.title = target_info.get('title') or view.title
			adopted.append(view)

		if not self._views:
			self.logger.debug('📄 No open pages found, creating a blank one')
			adopted.append(await self.create('about:blank'))
		else:
			self.logger.debug(f'📄 Adopted {len(adopted)} existing page(s)')
		return adopted

	# ========== Lifecycle ==========

	async def create(self, url: str = 'about:blank') -> View:
		"""Open a new view and start navigating it to url.

		The view is announced (ViewCreatedEvent) before the navigation starts so that
		telemetry listeners see the very first request. Does not wait for the load.
		"""
		target_id = (await self.browser_session.send('Target.createTarget', {'url': 'about:blank'}))['targetId']
		view = await self._attach_view(target_id, 'about:blank')
		self.logger.debug(f'➕ Created view {view.id[-4:]} 🅣 {target_id[-4:]}')
		if url and url != 'about:blank':
			await self.navigate(view.id, url)
		return view

	async def _attach_view(self, target_id: TargetID, url: str) -> View:
		cdp_session = await self.browser_session.attach_to_target(target_id)
		view = View(
			id=uuid7str(),
			target_id=target_id,
			session_id=cdp_session.session_id,
			title=cdp_session.title if cdp_session.title != 'Unknown title' else '',
			url=cdp_session.url or url,
		)
		self._views[view.id] = view
		self._view_ids_by_target[target_id] = view.id

		event = self.browser_session.event_bus.dispatch(
			ViewCreatedEvent(view_id=view.id, target_id=target_id, session_id=cdp_session.session_id, url=view.url)
		)
		await event
		return view

	async def destroy(self, view_id: str) -> None:
		"""Close a view. The only remaining view cannot be closed."""
		view = self.get_view(view_id)
		if len(self._views) <= 1:
			raise InvalidOperationError('The last open page cannot be closed.')

		# forget the view first so a concurrent Target.targetDestroyed is a no-op
		self._forget(view)
		await self.browser_session.detach_from_target(view.target_id, reason=f'View {view.id[-4:]} was closed')
		try:
			await self.browser_session.send('Target.closeTarget', {'targetId': view.target_id})
		except ProtocolError as e:
			self.logger.warning(f'⚠️ Target.closeTarget failed for view {view.id[-4:]}, treating it as closed: {e}')

		self.logger.debug(f'➖ Closed view {view.id[-4:]} 🅣 {view.target_id[-4:]}')
		event = self.browser_session.event_bus.dispatch(ViewClosedEvent(view_id=view.id, target_id=view.target_id))
		await event

	def _forget(self, view: View) -> None:
		self._views.pop(view.id, None)
		self._view_ids_by_target.pop(view.target_id, None)

	# ========== Navigation ==========

	async def navigate(self, view_id: str, url: str) -> None:
		cdp_session = self.get_cdp_session(view_id)
		self.logger.debug(f'🔗 Navigating view {view_id[-4:]} to {_log_pretty_url(url, 60)}')
		result = await cdp_session.send('Page.navigate', {'url': url})
		if result.get('errorText'):
			raise ProtocolError('Page.navigate', f'{result["errorText"]} at {url}')

	async def go_back(self, view_id: str) -> None:
		await self._go_to_history_offset(view_id, -1)

	async def go_forward(self, view_id: str) -> None:
		await self._go_to_history_offset(view_id, 1)

	async def _go_to_history_offset(self, view_id: str, offset: int) -> None:
		cdp_session = self.get_cdp_session(view_id)
		history = await cdp_session.send('Page.getNavigationHistory')
		index = history['currentIndex'] + offset
		entries = history.get('entries', [])
		if index < 0 or index >= len(entries):
			direction = 'back' if offset < 0 else 'forward'
			raise InvalidOperationError(f'Cannot navigate {direction}: no history entry in that direction')
		await cdp_session.send('Page.navigateToHistoryEntry', {'entryId': entries[index]['id']})

	async def reload(self, view_id: str, ignore_cache: bool = False) -> None:
		cdp_session = self.get_cdp_session(view_id)
		await cdp_session.send('Page.reload', {'ignoreCache': ignore_cache})

	# ========== State ==========

	def get_view(self, view_id: str) -> View:
		view = self._views.get(view_id)
		if view is None:
			raise NotFoundError(f'No page with id {view_id}')
		return view

	def has_view(self, view_id: str | None) -> bool:
		return view_id is not None and view_id in self._views

	@property
	def view_ids(self) -> list[str]:
		return list(self._views)

	def get_cdp_session(self, view_id: str) -> CDPSession:
		view = self.get_view(view_id)
		cdp_session = self.browser_session.get_cdp_session(view.target_id)
		if cdp_session is None:
			raise NotFoundError(f'Page {view_id} has no attached CDP session')
		return cdp_session

	def get_all_states(self) -> list[ViewState]:
		return [view.to_state() for view in self._views.values()]

	def get_state(self, view_id: str) -> ViewState:
		return self.get_view(view_id).to_state()

	# ========== CDP target events ==========

	def _on_target_info_changed(self, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		target_info = event['targetInfo']
		view_id = self._view_ids_by_target.get(target_info['targetId'])
		if view_id is None:
			return
		view = self._views[view_id]
		view.title = target_info.get('title', view.title)
		view.url = target_info.get('url', view.url)

	def _on_target_destroyed(self, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		view_id = self._view_ids_by_target.get(event['targetId'])
		if view_id is None:
			return
		view = self._views[view_id]
		self.logger.debug(f'💥 View {view.id[-4:]} 🅣 {view.target_id[-4:]} was destroyed by the browser')
		self._forget(view)
		self.browser_session.forget_target(view.target_id, reason=f'View {view.id[-4:]} was destroyed')
		self.browser_session.event_bus.dispatch(ViewClosedEvent(view_id=view.id, target_id=view.target_id))
		if not self._views and self._replacement_task is None:
			self._replacement_task = asyncio.ensure_future(self._replace_last_view())

	async def _replace_last_view(self) -> None:
		try:
			if self._views or not self.browser_session.is_connected:
				return
			self.logger.debug('📄 The browser closed the last page, opening a blank one')
			await self.create('about:blank')
		except BrowserError as e:
			self.logger.warning(f'⚠️ Could not open a page to replace the last closed one: {e}')
		finally:
			self._replacement_task = None

	async def on_BrowserDisconnectedEvent(self, event: BrowserDisconnectedEvent) -> None:
		await cancel_and_wait(self._replacement_task)
		self._replacement_task = None
		self._views.clear()
		self._view_ids_by_target.clear()
		for unsubscribe in self._cdp_unsubscribers:
			unsubscribe()
		self._cdp_unsubscribers.clear()
