"""Watchdog recording every network request of every view, grouped by navigation."""

from functools import partial
from typing import Any, ClassVar

from bubus import BaseEvent
from cdp_use.cdp.target import SessionID
from pydantic import Field, PrivateAttr

from ai_browser.browser.buffer import NavigationBuffer, next_record_id
from ai_browser.browser.events import BrowserDisconnectedEvent, ViewClosedEvent, ViewCreatedEvent
from ai_browser.browser.views import NetworkRequestRecord, RequestTiming
from ai_browser.browser.watchdog_base import BaseWatchdog
from ai_browser.config import CONFIG


def _duration_ms(start: float | None, end: float | None) -> float | None:
	if start is None or end is None:
		return None
	return round((end - start) * 1000)


class NetworkWatchdog(BaseWatchdog):
	"""Turns Network.* CDP events into NetworkRequestRecords.

	A main-frame Page.frameNavigated starts a new navigation in the buffer. The
	document request that caused it (same loaderId) was sent before the commit, so it
	is carried over into the navigation it belongs to.
	"""

	LISTENS_TO: ClassVar[list[type[BaseEvent]]] = [ViewCreatedEvent, ViewClosedEvent, BrowserDisconnectedEvent]
	EMITS: ClassVar[list[type[BaseEvent]]] = []

	preserved_navigations: int = Field(default_factory=lambda: CONFIG.AI_BROWSER_PRESERVED_NAVIGATIONS)

	_requests: NavigationBuffer[NetworkRequestRecord] = PrivateAttr()
	# (view_id, CDP requestId) -> latest record for that request, until it finishes or fails
	_in_flight: dict[tuple[str, str], NetworkRequestRecord] = PrivateAttr(default_factory=dict)

	def model_post_init(self, __context) -> None:
		self._requests = NavigationBuffer(self.preserved_navigations)

	# ========== Public accessors ==========

	def get_requests(self, view_id: str, include_preserved: bool = False) -> list[NetworkRequestRecord]:
		return self._requests.records(view_id, include_preserved)

	def get_request(self, record_id: int) -> NetworkRequestRecord | None:
		return self._requests.get(record_id)

	# ========== Lifecycle ==========

	async def on_ViewCreatedEvent(self, event: ViewCreatedEvent) -> None:
		cdp_session = self.browser_session.get_cdp_session(event.target_id)
		if cdp_session is None:
			self.logger.warning(f'⚠️ [NetworkWatchdog] No CDP session for new view {event.view_id[-4:]}, requests will not be recorded')
			return
		view_id = event.view_id
		self.subscribe_view(view_id, cdp_session, 'Network.requestWillBeSent', partial(self._on_request_will_be_sent, view_id))
		self.subscribe_view(view_id, cdp_session, 'Network.responseReceived', partial(self._on_response_received, view_id))
		self.subscribe_view(view_id, cdp_session, 'Network.loadingFinished', partial(self._on_loading_finished, view_id))
		self.subscribe_view(view_id, cdp_session, 'Network.loadingFailed', partial(self._on_loading_failed, view_id))
		self.subscribe_view(view_id, cdp_session, 'Page.frameNavigated', partial(self._on_frame_navigated, view_id))

	async def on_ViewClosedEvent(self, event: ViewClosedEvent) -> None:
		self.unsubscribe_view(event.view_id)
		self._requests.drop_view(event.view_id)
		self._in_flight = {key: record for key, record in self._in_flight.items() if key[0] != event.view_id}

	async def on_BrowserDisconnectedEvent(self, event: BrowserDisconnectedEvent) -> None:
		self.unsubscribe_all_views()
		self._requests.clear()
		self._in_flight.clear()

	# ========== CDP event handlers ==========

	def _on_request_will_be_sent(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		request = event['request']
		request_id = event['requestId']

		# a redirect reuses the requestId: close the previous hop with the redirect response
		redirect_response = event.get('redirectResponse')
		previous = self._in_flight.pop((view_id, request_id), None)
		if redirect_response and previous is not None:
			self._apply_response(previous, redirect_response)
			previous.redirected_to = request['url']
			previous.timing.end_time = event.get('timestamp')
			previous.timing.duration = _duration_ms(previous.timing.start_time, previous.timing.end_time)

		record = NetworkRequestRecord(
			id=next_record_id(),
			request_id=request_id,
			view_id=view_id,
			loader_id=event.get('loaderId'),
			url=request['url'],
			method=request.get('method', 'GET'),
			resource_type=(event.get('type') or 'Other').lower(),
			timing=RequestTiming(start_time=event.get('timestamp')),
			request_headers=dict(request.get('headers') or {}),
			request_body=request.get('postData'),
		)
		self._requests.add(view_id, record)
		self._in_flight[(view_id, request_id)] = record

	def _on_response_received(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		record = self._in_flight.get((view_id, event['requestId']))
		if record is None:
			return
		self._apply_response(record, event['response'])
		if event.get('type'):
			record.resource_type = event['type'].lower()

	def _on_loading_finished(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		record = self._in_flight.pop((view_id, event['requestId']), None)
		if record is None:
			return
		record.timing.end_time = event.get('timestamp')
		record.timing.duration = _duration_ms(record.timing.start_time, record.timing.end_time)

	def _on_loading_failed(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		record = self._in_flight.pop((view_id, event['requestId']), None)
		if record is None:
			return
		record.error = event.get('errorText') or ('canceled' if event.get('canceled') else 'failed')
		record.timing.end_time = event.get('timestamp')
		record.timing.duration = _duration_ms(record.timing.start_time, record.timing.end_time)

	def _on_frame_navigated(self, view_id: str, event: dict[str, Any], session_id: SessionID | None = None) -> None:
		frame = event['frame']
		if frame.get('parentId'):
			return  # iframe navigations stay in the current navigation
		loader_id = frame.get('loaderId')
		self._requests.start_navigation(view_id, carry_over=lambda record: loader_id is not None and record.loader_id == loader_id)
		# stop tracking requests that were evicted with their navigation
		self._in_flight = {key: record for key, record in self._in_flight.items() if self._requests.get(record.id) is record}

	@staticmethod
	def _apply_response(record: NetworkRequestRecord, response: dict[str, Any]) -> None:
		record.status = response.get('status')
		record.status_text = response.get('statusText')
		record.mime_type = response.get('mimeType')
		record.response_headers = dict(response.get('headers') or {})
