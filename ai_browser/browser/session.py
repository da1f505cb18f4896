"""CDP transport: one root websocket, per-target sessions and an in-process event fan-out."""

import asyncio
import logging
from collections.abc import Callable
from functools import cached_property
from typing import Any, Self

import httpx
from bubus import EventBus
from cdp_use import CDPClient
from cdp_use.cdp.target import SessionID, TargetID
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from uuid_extensions import uuid7str

from ai_browser.browser.events import BrowserConnectedEvent, BrowserDisconnectedEvent
from ai_browser.browser.views import BrowserError, OperationTimeoutError, ProtocolError

CDPEventHandler = Callable[[dict[str, Any], SessionID | None], Any]

DEFAULT_DOMAINS = ['Page', 'DOM', 'Runtime', 'Network']

red = '\033[91m'
reset = '\033[0m'


def is_connection_error(error: BaseException) -> bool:
	"""True when an exception means the websocket to the browser is gone."""
	return isinstance(error, ConnectionError) or 'ConnectionClosed' in type(error).__name__


class CDPEventRouter:
	"""Fans out CDP events to any number of in-process subscribers.

	cdp-use keeps a single handler per event method per client, so the router
	registers itself once per method and dispatches to every matching subscriber.
	Subscribers are plain sync callables ``handler(event, session_id)`` and run in
	registration order; a failing subscriber is logged and does not stop the rest.
	"""

	def __init__(self, logger: logging.Logger):
		self.logger = logger
		self._client: CDPClient | None = None
		self._subscribers: dict[str, list[tuple[SessionID | None, CDPEventHandler]]] = {}
		self._registered_methods: set[str] = set()

	def bind(self, client: CDPClient) -> None:
		self._client = client
		self._registered_methods.clear()
		for method in self._subscribers:
			self._register_method(method)

	def unbind(self) -> None:
		self._client = None
		self._registered_methods.clear()

	def subscribe(self, method: str, handler: CDPEventHandler, session_id: SessionID | None = None) -> Callable[[], None]:
		"""Subscribe to a CDP event, optionally only for one target session. Returns the unsubscribe callable."""
		entry = (session_id, handler)
		self._subscribers.setdefault(method, []).append(entry)
		if self._client is not None and method not in self._registered_methods:
			self._register_method(method)

		def unsubscribe() -> None:
			entries = self._subscribers.get(method)
			if entries and entry in entries:
				entries.remove(entry)

		return unsubscribe

	def subscriber_count(self, method: str | None = None) -> int:
		if method is not None:
			return len(self._subscribers.get(method, []))
		return sum(len(entries) for entries in self._subscribers.values())

	def dispatch(self, method: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		# copy, subscribers may unsubscribe themselves while being called
		for subscribed_session_id, handler in list(self._subscribers.get(method, [])):
			if subscribed_session_id is not None and subscribed_session_id != session_id:
				continue
			try:
				handler(event, session_id)
			except Exception as e:
				self.logger.error(f'❌ CDP subscriber {getattr(handler, "__name__", handler)} failed on {method}: {type(e).__name__}: {e}')

	def _register_method(self, method: str) -> None:
		assert self._client is not None
		domain, event_name = method.split('.', 1)

		def _on_cdp_event(event: dict[str, Any], session_id: SessionID | None = None) -> None:
			self.dispatch(method, event, session_id)

		# e.g. client.register.Network.requestWillBeSent(handler)
		getattr(getattr(self._client.register, domain), event_name)(_on_cdp_event)
		self._registered_methods.add(method)


class CDPSession(BaseModel):
	"""A flattened CDP session attached to one page target.

	Commands and waits issued through a session fail promptly with ProtocolError once
	the session is detached, instead of hanging on a target that no longer exists.
	"""

	model_config = ConfigDict(arbitrary_types_allowed=True, revalidate_instances='never')

	cdp_client: CDPClient

	target_id: TargetID
	session_id: SessionID
	title: str = 'Unknown title'
	url: str = 'about:blank'

	_router: CDPEventRouter | None = PrivateAttr(default=None)
	_closed: asyncio.Event = PrivateAttr(default_factory=asyncio.Event)
	_close_reason: str | None = PrivateAttr(default=None)
	_on_connection_error: Callable[[BaseException], None] | None = PrivateAttr(default=None)

	@classmethod
	async def for_target(
		cls,
		cdp_client: CDPClient,
		target_id: TargetID,
		router: CDPEventRouter,
		domains: list[str] | None = None,
		on_connection_error: Callable[[BaseException], None] | None = None,
	) -> Self:
		"""Attach to a target over the shared root websocket and enable the given domains."""
		cdp_session = cls(cdp_client=cdp_client, target_id=target_id, session_id='connecting')
		cdp_session._router = router
		cdp_session._on_connection_error = on_connection_error
		return await cdp_session.attach(domains=domains)

	async def attach(self, domains: list[str] | None = None) -> Self:
		try:
			result = await self.cdp_client.send_raw('Target.attachToTarget', {'targetId': self.target_id, 'flatten': True})
		except Exception as e:
			raise ProtocolError('Target.attachToTarget', f'{type(e).__name__}: {e}') from e
		self.session_id = result['sessionId']

		domains = domains or DEFAULT_DOMAINS

		# Enable all domains in parallel
		results = await asyncio.gather(*(self.send(f'{domain}.enable') for domain in domains), return_exceptions=True)
		for domain, result in zip(domains, results):
			if isinstance(result, Exception):
				logging.getLogger(f'ai_browser.CDPSession.{self.target_id[-4:]}').warning(
					f'⚠️ Failed to enable {domain} domain on target {self.target_id[-4:]}: {result}'
				)

		try:
			target_info = (await self.cdp_client.send_raw('Target.getTargetInfo', {'targetId': self.target_id}))['targetInfo']
			self.title = target_info.get('title') or self.title
			self.url = target_info.get('url') or self.url
		except Exception:
			pass  # title/url are cosmetic, they are refreshed by Target.targetInfoChanged anyway

		return self

	@property
	def is_closed(self) -> bool:
		return self._closed.is_set()

	def close(self, reason: str = 'Target closed') -> None:
		"""Mark the session dead, failing every in-flight send and wait on it."""
		if self._closed.is_set():
			return
		self._close_reason = reason
		self._closed.set()

	async def detach(self, reason: str = 'Target closed') -> None:
		was_open = not self.is_closed
		self.close(reason)
		if was_open:
			try:
				await self.cdp_client.send_raw('Target.detachFromTarget', {'sessionId': self.session_id})
			except Exception:
				pass  # target may already be gone, which is what we wanted anyway

	async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
		"""Send a command on this session, wrapping failures in ProtocolError(method)."""
		if self._closed.is_set():
			raise ProtocolError(method, self._close_reason or 'Target closed')

		command = asyncio.ensure_future(self.cdp_client.send_raw(method, params or {}, self.session_id))
		closed = asyncio.ensure_future(self._closed.wait())
		try:
			done, _ = await asyncio.wait({command, closed}, return_when=asyncio.FIRST_COMPLETED)
		finally:
			closed.cancel()
			if not command.done():
				command.cancel()

		if command not in done:
			raise ProtocolError(method, self._close_reason or 'Target closed')

		try:
			return command.result()
		except BrowserError:
			raise
		except Exception as e:
			if is_connection_error(e) and self._on_connection_error is not None:
				self._on_connection_error(e)
			raise ProtocolError(method, str(e) or type(e).__name__) from e

	def subscribe(self, method: str, handler: CDPEventHandler) -> Callable[[], None]:
		assert self._router is not None, 'CDPSession was not created through CDPSession.for_target()'
		return self._router.subscribe(method, handler, session_id=self.session_id)

	async def wait_for_event(
		self,
		method: str,
		timeout_ms: float,
		predicate: Callable[[dict[str, Any]], bool] | None = None,
	) -> dict[str, Any]:
		"""Wait for the next matching CDP event on this session.

		The subscription is one-shot and is released on every exit path: success,
		timeout, session closed or caller cancellation.
		"""
		if self._closed.is_set():
			raise ProtocolError(method, self._close_reason or 'Target closed')

		future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()

		def _on_event(event: dict[str, Any], session_id: SessionID | None = None) -> None:
			if future.done():
				return
			if predicate is None or predicate(event):
				future.set_result(event)

		unsubscribe = self.subscribe(method, _on_event)
		closed = asyncio.ensure_future(self._closed.wait())
		try:
			done, _ = await asyncio.wait({future, closed}, timeout=timeout_ms / 1000, return_when=asyncio.FIRST_COMPLETED)
			if future in done:
				return future.result()
			if closed in done:
				raise ProtocolError(method, self._close_reason or 'Target closed')
			raise OperationTimeoutError(f'Timed out after {timeout_ms:.0f}ms waiting for {method}')
		finally:
			unsubscribe()
			closed.cancel()
			if not future.done():
				future.cancel()

	def __str__(self) -> str:
		return f'CDPSession🅣 {self.target_id[-4:]}'


class BrowserSession(BaseModel):
	"""Connection to an already running Chromium over its remote-debugging endpoint.

	Owns the root CDP websocket, the per-target sessions attached through it, the
	CDP event router every component subscribes through, and the event bus that
	carries lifecycle events between components.

	```python
	session = BrowserSession(cdp_url='http://127.0.0.1:9222')
	await session.connect()
	unsubscribe = session.subscribe('Target.targetDestroyed', handler)
	```
	"""

	model_config = ConfigDict(
		arbitrary_types_allowed=True,
		validate_assignment=True,
		extra='forbid',
		revalidate_instances='never',
	)

	id: str = Field(default_factory=lambda: str(uuid7str()), description='Unique identifier for this browser session')
	cdp_url: str | None = Field(default=None, description='http:// remote-debugging endpoint or ws:// browser websocket url')

	# Main shared event bus for the browser session and every component listening to it
	event_bus: EventBus = Field(default_factory=EventBus)

	_cdp_client_root: CDPClient | None = PrivateAttr(default=None)
	_router: CDPEventRouter | None = PrivateAttr(default=None)
	_cdp_sessions: dict[TargetID, CDPSession] = PrivateAttr(default_factory=dict)
	_disconnecting: bool = PrivateAttr(default=False)

	@property
	def logger(self) -> logging.Logger:
		return logging.getLogger(f'ai_browser.{self}')

	@cached_property
	def _id_for_logs(self) -> str:
		return self.id[-4:]

	def __repr__(self) -> str:
		return f'BrowserSession🅑 {self._id_for_logs} (cdp_url={self.cdp_url})'

	def __str__(self) -> str:
		return f'BrowserSession🅑 {self._id_for_logs}'

	@property
	def router(self) -> CDPEventRouter:
		if self._router is None:
			self._router = CDPEventRouter(logging.getLogger(f'ai_browser.{self}.router'))
		return self._router

	@property
	def cdp_client(self) -> CDPClient:
		if self._cdp_client_root is None:
			raise ProtocolError('Browser', 'Browser is not connected')
		return self._cdp_client_root

	@property
	def is_connected(self) -> bool:
		return self._cdp_client_root is not None

	async def resolve_websocket_url(self, cdp_url: str) -> str:
		"""Turn an http:// debugging endpoint into the browser websocket url via /json/version."""
		if cdp_url.startswith('ws'):
			return cdp_url
		url = cdp_url.rstrip('/')
		if not url.endswith('/json/version'):
			url = url + '/json/version'
		async with httpx.AsyncClient() as client:
			version_info = await client.get(url)
			version_info.raise_for_status()
			return version_info.json()['webSocketDebuggerUrl']

	async def connect(self, cdp_url: str | None = None, cdp_client: CDPClient | None = None) -> Self:
		"""Open the root websocket, or adopt an already started client, and start target discovery.

		This MUST succeed or the browser is unusable. Fails hard on any error.
		"""
		if cdp_client is None:
			self.cdp_url = cdp_url or self.cdp_url
			if not self.cdp_url:
				raise RuntimeError('Cannot setup CDP connection without CDP URL')
			ws_url = await self.resolve_websocket_url(self.cdp_url)
			self.logger.debug(f'🌎 Connecting to existing chromium-based browser via CDP: {ws_url}')
			cdp_client = CDPClient(ws_url)
			try:
				await cdp_client.start()
			except Exception as e:
				self.logger.error(f'❌ FATAL: Failed to setup CDP connection: {e}')
				raise RuntimeError(f'Failed to establish CDP connection to browser: {e}') from e

		self._cdp_client_root = cdp_client
		self._disconnecting = False
		self.router.bind(cdp_client)
		try:
			await self.send('Target.setDiscoverTargets', {'discover': True})
		except Exception:
			self._cdp_client_root = None
			self.router.unbind()
			raise
		self.logger.debug('CDP client connected successfully')
		return self

	async def announce_connected(self) -> None:
		event = self.event_bus.dispatch(BrowserConnectedEvent(cdp_url=self.cdp_url or 'in-process'))
		await event

	def subscribe(self, method: str, handler: CDPEventHandler, session_id: SessionID | None = None) -> Callable[[], None]:
		return self.router.subscribe(method, handler, session_id=session_id)

	async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
		"""Send a browser-level command (no target session)."""
		client = self.cdp_client
		try:
			return await client.send_raw(method, params or {})
		except BrowserError:
			raise
		except Exception as e:
			if is_connection_error(e):
				self.on_connection_error(e)
			raise ProtocolError(method, str(e) or type(e).__name__) from e

	async def attach_to_target(self, target_id: TargetID, domains: list[str] | None = None) -> CDPSession:
		if target_id in self._cdp_sessions and not self._cdp_sessions[target_id].is_closed:
			return self._cdp_sessions[target_id]
		cdp_session = await CDPSession.for_target(
			self.cdp_client, target_id, self.router, domains=domains, on_connection_error=self.on_connection_error
		)
		self._cdp_sessions[target_id] = cdp_session
		self.logger.debug(f'🔌 Attached {cdp_session} session={cdp_session.session_id[-4:]} url={cdp_session.url}')
		return cdp_session

	def get_cdp_session(self, target_id: TargetID) -> CDPSession | None:
		return self._cdp_sessions.get(target_id)

	async def detach_from_target(self, target_id: TargetID, reason: str = 'Target closed') -> None:
		cdp_session = self._cdp_sessions.pop(target_id, None)
		if cdp_session is not None:
			await cdp_session.detach(reason)

	def forget_target(self, target_id: TargetID, reason: str = 'Target destroyed') -> None:
		"""Drop a target that the browser already destroyed, no CDP traffic."""
		cdp_session = self._cdp_sessions.pop(target_id, None)
		if cdp_session is not None:
			cdp_session.close(reason)

	def on_connection_error(self, error: BaseException) -> None:
		if self._disconnecting or self._cdp_client_root is None:
			return
		self.logger.error(f'{red}❌ Browser closed or CDP connection disconnected by remote: {type(error).__name__}: {error}{reset}')
		asyncio.ensure_future(self.handle_connection_lost(f'{type(error).__name__}: {error}'))

	async def handle_connection_lost(self, reason: str) -> None:
		"""Invalidate every session and announce the disconnect exactly once."""
		if self._disconnecting:
			return
		self._disconnecting = True
		for cdp_session in self._cdp_sessions.values():
			cdp_session.close(f'Browser disconnected: {reason}')
		self._cdp_sessions.clear()
		self._cdp_client_root = None
		self.router.unbind()
		event = self.event_bus.dispatch(BrowserDisconnectedEvent(reason=reason))
		await event

	async def stop(self) -> None:
		"""Disconnect from the browser without closing it."""
		client = self._cdp_client_root
		if client is None:
			return
		await self.handle_connection_lost('Stopped by client')
		try:
			await client.stop()
		except Exception as e:
			self.logger.debug(f'Error while closing CDP websocket: {type(e).__name__}: {e}')
		await self.event_bus.stop(clear=True, timeout=5)
		self.event_bus = EventBus()

	async def ping(self, timeout: float = 5.0) -> None:
		"""Cheap liveness probe for the root websocket."""
		try:
			await asyncio.wait_for(self.send('Browser.getVersion'), timeout=timeout)
		except TimeoutError as e:
			raise OperationTimeoutError(f'Browser did not answer Browser.getVersion within {timeout}s') from e
