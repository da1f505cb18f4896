"""Watchdog tracking JavaScript dialogs (alert, confirm, prompt, beforeunload) until they are answered."""

from functools import partial
from typing import Any, ClassVar

from bubus import BaseEvent
from cdp_use.cdp.target import SessionID
from pydantic import PrivateAttr

from ai_browser.browser.events import BrowserDisconnectedEvent, ViewClosedEvent, ViewCreatedEvent
from ai_browser.browser.views import PendingDialog
from ai_browser.browser.watchdog_base import BaseWatchdog


class PopupsWatchdog(BaseWatchdog):
	"""Records the open dialog of each view. Dialogs are left open for the agent to accept or dismiss."""

	LISTENS_TO: ClassVar[list[type[BaseEvent]]] = [ViewCreatedEvent, ViewClosedEvent, BrowserDisconnectedEvent]
	EMITS: ClassVar[list[type[BaseEvent]]] = []

	_pending_dialogs: dict[str, PendingDialog] = PrivateAttr(default_factory=dict)

	def get_pending_dialog(self, view_id: str) -> PendingDialog | None:
		return self._pending_dialogs.get(view_id)

	def clear_pending_dialog(self, view_id: str) -> None:
		self._pending_dialogs.pop(view_id, None)

	async def on_ViewCreatedEvent(self, event: ViewCreatedEvent) -> None:
		cdp_session = self.browser_session.get_cdp_session(event.target_id)
		if cdp_session is None:
			self.logger.warning(f'⚠️ [PopupsWatchdog] No CDP session for new view {event.view_id[-4:]}, dialogs will not be tracked')
			return
		view_id = event.view_id
		self.subscribe_view(view_id, cdp_session, 'Page.javascriptDialogOpening', partial(self._on_dialog_opening, view_id))
		self.subscribe_view(view_id, cdp_session, 'Page.javascriptDialogClosed', partial(self._on_dialog_closed, view_id))

	async def on_ViewClosedEvent(self, event: ViewClosedEvent) -> None:
		self.unsubscribe_view(event.view_id)
		self._pending_dialogs.pop(event.view_id, None)

	async def on_BrowserDisconnectedEvent(self, event: BrowserDisconnectedEvent) -> None:
		self.unsubscribe_all_views()
		self._pending_dialogs.clear()

	def _on_dialog_opening(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		dialog = PendingDialog(
			type=event.get('type', 'alert'),
			message=event.get('message', ''),
			default_value=event.get('defaultPrompt'),
			view_id=view_id,
			url=event.get('url'),
		)
		self._pending_dialogs[view_id] = dialog
		self.logger.info(f"🔔 JavaScript {dialog.type} dialog opened: '{dialog.message[:100]}'")

	def _on_dialog_closed(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		if self._pending_dialogs.pop(view_id, None) is not None:
			self.logger.debug(f'🔕 JavaScript dialog closed on view {view_id[-4:]} (accepted={event.get("result")})')
