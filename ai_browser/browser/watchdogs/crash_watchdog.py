"""Browser watchdog for detecting a dead CDP connection and crashed pages."""

import asyncio
from collections.abc import Callable
from typing import Any, ClassVar

from bubus import BaseEvent
from cdp_use.cdp.target import SessionID
from pydantic import Field, PrivateAttr

from ai_browser.browser.events import BrowserConnectedEvent, BrowserDisconnectedEvent
from ai_browser.browser.session import is_connection_error
from ai_browser.browser.watchdog_base import BaseWatchdog
from ai_browser.utils import cancel_and_wait


class CrashWatchdog(BaseWatchdog):
	"""Pings the browser periodically and invalidates everything when the websocket is gone.

	Commands sent over a dead socket already report the loss, the monitoring loop
	catches it while the engine sits idle.
	"""

	LISTENS_TO: ClassVar[list[type[BaseEvent]]] = [BrowserConnectedEvent, BrowserDisconnectedEvent]
	EMITS: ClassVar[list[type[BaseEvent]]] = [BrowserDisconnectedEvent]

	check_interval_seconds: float = Field(default=5.0)
	ping_timeout_seconds: float = Field(default=5.0)

	_monitoring_task: asyncio.Task | None = PrivateAttr(default=None)
	_unsubscribe_crashes: Callable[[], None] | None = PrivateAttr(default=None)

	async def on_BrowserConnectedEvent(self, event: BrowserConnectedEvent) -> None:
		"""Start monitoring when browser is connected."""
		if self._unsubscribe_crashes is None:
			self._unsubscribe_crashes = self.browser_session.subscribe('Target.targetCrashed', self._on_target_crashed)
		if self._monitoring_task and not self._monitoring_task.done():
			return
		self._monitoring_task = asyncio.create_task(self._monitoring_loop())

	async def on_BrowserDisconnectedEvent(self, event: BrowserDisconnectedEvent) -> None:
		"""Stop monitoring when the browser is gone."""
		if self._unsubscribe_crashes is not None:
			self._unsubscribe_crashes()
			self._unsubscribe_crashes = None
		task, self._monitoring_task = self._monitoring_task, None
		# the loop itself may be the one reporting the disconnect, it exits on its own then
		if task is not None and task is not asyncio.current_task():
			await cancel_and_wait(task)
			self.logger.debug('[CrashWatchdog] Monitoring loop stopped')

	async def _monitoring_loop(self) -> None:
		while True:
			try:
				await asyncio.sleep(self.check_interval_seconds)
				if not await self._check_browser_health():
					break
			except asyncio.CancelledError:
				break
			except Exception as e:
				self.logger.error(f'[CrashWatchdog] Error in monitoring loop: {e}')

	async def _check_browser_health(self) -> bool:
		"""Returns False once the connection is known to be gone."""
		if not self.browser_session.is_connected:
			return False
		try:
			await self.browser_session.ping(timeout=self.ping_timeout_seconds)
		except Exception as e:
			cause = e.__cause__ or e
			if is_connection_error(cause) or not self.browser_session.is_connected:
				self.logger.error(f'[CrashWatchdog] ❌ Browser connection lost: {type(cause).__name__}: {cause}')
				self._monitoring_task = None
				await self.browser_session.handle_connection_lost(f'{type(cause).__name__}: {cause}')
				return False
			self.logger.warning(f'[CrashWatchdog] ⚠️ Browser health check failed: {type(e).__name__}: {e}')
		return True

	def _on_target_crashed(self, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		target_id = event.get('targetId', '')
		self.logger.error(f'[CrashWatchdog] 💥 Page target {target_id[-4:]} crashed (status={event.get("status")}), reload it to recover')
