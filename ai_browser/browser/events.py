"""Lifecycle events passed between browser components over the session's event bus.

CDP telemetry (network, console, dialogs, loads) is NOT routed through here, it is
applied to in-memory state directly from the CDP event handlers so it is never
delayed behind a slow bus handler.
"""

import inspect

from bubus import BaseEvent


class BrowserConnectedEvent(BaseEvent):
	"""The root CDP websocket is open and initial views were adopted."""

	cdp_url: str

	event_timeout: float | None = 30.0  # seconds


class BrowserDisconnectedEvent(BaseEvent):
	"""The root CDP websocket closed or was stopped, every view is gone."""

	reason: str | None = None

	event_timeout: float | None = 30.0  # seconds


class ViewCreatedEvent(BaseEvent):
	"""A view was attached and is ready for listeners, before its first navigation."""

	view_id: str
	target_id: str
	session_id: str
	url: str

	event_timeout: float | None = 30.0  # seconds


class ViewClosedEvent(BaseEvent):
	"""A view was closed by us or destroyed by the browser."""

	view_id: str
	target_id: str

	event_timeout: float | None = 10.0  # seconds


class ActiveViewChangedEvent(BaseEvent):
	"""The active view pointer moved, view_id is None when no view is left."""

	view_id: str | None = None

	event_timeout: float | None = 10.0  # seconds


def _check_event_names_dont_overlap():
	"""
	check that event names defined in this file are valid and non-overlapping
	"""
	event_names = {
		name.split('[')[0]
		for name in globals().keys()
		if not name.startswith('_')
		and inspect.isclass(globals()[name])
		and issubclass(globals()[name], BaseEvent)
		and name != 'BaseEvent'
	}
	for name_a in event_names:
		assert name_a.endswith('Event'), f'Event with name {name_a} does not end with "Event"'
		for name_b in event_names:
			if name_a != name_b:
				assert name_a not in name_b, (
					f'Event with name {name_a} is a substring of {name_b}, all events must be completely unique to avoid find-and-replace accidents'
				)


# one event name being a substring of another makes grep useless for tracing handlers
_check_event_names_dont_overlap()
