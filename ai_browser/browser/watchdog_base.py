"""Base watchdog class for background browser monitoring components."""

import inspect
import time
from collections.abc import Callable, Iterable
from typing import Any, ClassVar

from bubus import BaseEvent, EventBus
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from ai_browser.browser.session import BrowserSession, CDPEventHandler, CDPSession


class BaseWatchdog(BaseModel):
	"""Base class for all browser watchdogs.

	Watchdogs consume CDP events in the background and keep in-memory state current
	whether or not a tool call is running. They register bus handlers automatically
	based on method names.

	Handler methods should be named: on_EventTypeName(self, event: EventTypeName)
	"""

	model_config = ConfigDict(
		arbitrary_types_allowed=True,  # allow non-serializable objects like EventBus/BrowserSession in fields
		extra='forbid',  # dont allow implicit class/instance state, everything must be a properly typed Field or PrivateAttr
		validate_assignment=False,  # avoid re-triggering  __init__ / validators on values on every assignment
		revalidate_instances='never',  # avoid re-triggering __init__ / validators and erasing private attrs
	)

	# Class variables to statically define the list of events relevant to each watchdog
	# (not enforced, just to make it easier to understand the code and debug watchdogs at runtime)
	LISTENS_TO: ClassVar[list[type[BaseEvent[Any]]]] = []  # Events this watchdog listens to
	EMITS: ClassVar[list[type[BaseEvent[Any]]]] = []  # Events this watchdog emits

	# Core dependencies
	event_bus: EventBus = Field()
	browser_session: BrowserSession = Field()

	# view_id -> unsubscribe callables for CDP event subscriptions scoped to that view's target session
	_view_subscriptions: dict[str, list[Callable[[], None]]] = PrivateAttr(default_factory=dict)

	@property
	def logger(self):
		"""Get the logger from the browser session."""
		return self.browser_session.logger

	def subscribe_view(self, view_id: str, cdp_session: CDPSession, method: str, handler: CDPEventHandler) -> None:
		self._view_subscriptions.setdefault(view_id, []).append(cdp_session.subscribe(method, handler))

	def unsubscribe_view(self, view_id: str) -> None:
		for unsubscribe in self._view_subscriptions.pop(view_id, []):
			unsubscribe()

	def unsubscribe_all_views(self) -> None:
		for view_id in list(self._view_subscriptions):
			self.unsubscribe_view(view_id)

	@staticmethod
	def attach_handler_to_session(browser_session: 'BrowserSession', event_class: type[BaseEvent[Any]], handler) -> None:
		"""Attach a single event handler to a browser session's event bus.

		Args:
			browser_session: The browser session to attach to
			event_class: The event class to listen for
			handler: The handler method (must start with 'on_' and end with event type)
		"""
		event_bus = browser_session.event_bus

		# Validate handler naming convention
		assert hasattr(handler, '__name__'), 'Handler must have a __name__ attribute'
		assert handler.__name__.startswith('on_'), f'Handler {handler.__name__} must start with "on_"'
		assert handler.__name__.endswith(event_class.__name__), (
			f'Handler {handler.__name__} must end with event type {event_class.__name__}'
		)

		# Get the watchdog instance if this is a bound method
		watchdog_instance = getattr(handler, '__self__', None)
		watchdog_class_name = watchdog_instance.__class__.__name__ if watchdog_instance else 'Unknown'

		red = '\033[91m'
		green = '\033[92m'
		cyan = '\033[96m'
		reset = '\033[0m'

		# Create a wrapper function with unique name to avoid duplicate handler warnings
		# Capture handler by value to avoid closure issues
		def make_unique_handler(actual_handler):
			async def unique_handler(event):
				event_str = f'#{event.event_id[-4:]}'
				time_start = time.time()
				watchdog_and_handler_str = f'[{watchdog_class_name}.{actual_handler.__name__}({event_str})]'.ljust(54)
				browser_session.logger.debug(f'{cyan}🚌 {watchdog_and_handler_str} ⏳ Starting...{reset}')

				try:
					result = await actual_handler(event)

					if isinstance(result, Exception):
						raise result

					time_elapsed = time.time() - time_start
					result_summary = '' if result is None else f' ➡️ <{type(result).__name__}>'
					browser_session.logger.debug(
						f'{green}🚌 {watchdog_and_handler_str} ✅ Succeeded ({time_elapsed:.2f}s){reset}{result_summary}'
					)
					return result
				except Exception as e:
					time_elapsed = time.time() - time_start
					browser_session.logger.error(
						f'{red}🚌 {watchdog_and_handler_str} ❌ Failed ({time_elapsed:.2f}s): {type(e).__name__}: {e}{reset}'
					)
					raise

			return unique_handler

		unique_handler = make_unique_handler(handler)
		unique_handler.__name__ = f'{watchdog_class_name}.{handler.__name__}'

		# Check if this handler is already registered - throw error if duplicate
		existing_handlers = event_bus.handlers.get(event_class.__name__, [])
		handler_names = [getattr(h, '__name__', str(h)) for h in existing_handlers]

		if unique_handler.__name__ in handler_names:
			raise RuntimeError(
				f'[{watchdog_class_name}] Duplicate handler registration attempted! '
				f'Handler {unique_handler.__name__} is already registered for {event_class.__name__}. '
				f'This likely means attach_to_session() was called multiple times.'
			)

		event_bus.on(event_class, unique_handler)

	def attach_to_session(self) -> None:
		"""Register every on_<EventName> method of this watchdog on the session's event bus."""
		assert self.browser_session is not None, 'Watchdog created without a browser session'

		from ai_browser.browser import events

		event_classes = {}
		for name in dir(events):
			obj = getattr(events, name)
			if inspect.isclass(obj) and issubclass(obj, BaseEvent) and obj is not BaseEvent:
				event_classes[name] = obj

		registered_events = set()
		for method_name in dir(self):
			if method_name.startswith('on_') and callable(getattr(self, method_name)):
				event_name = method_name[3:]  # Remove 'on_' prefix

				if event_name in event_classes:
					event_class = event_classes[event_name]

					if self.LISTENS_TO:
						assert event_class in self.LISTENS_TO, (
							f'[{self.__class__.__name__}] Handler {method_name} listens to {event_name} '
							f'but {event_name} is not declared in LISTENS_TO: {[e.__name__ for e in self.LISTENS_TO]}'
						)

					self.attach_handler_to_session(self.browser_session, event_class, getattr(self, method_name))
					registered_events.add(event_class)

		if self.LISTENS_TO:
			missing_handlers = set(self.LISTENS_TO) - registered_events
			if missing_handlers:
				missing_names = [e.__name__ for e in missing_handlers]
				self.logger.warning(
					f'[{self.__class__.__name__}] LISTENS_TO declares {missing_names} '
					f'but no handlers found (missing on_{"_, on_".join(missing_names)} methods)'
				)

	def __del__(self) -> None:
		"""Cancel any private asyncio tasks still running during garbage collection."""
		try:
			for attr_name in dir(self):
				# e.g. _monitoring_task = asyncio.Task
				if attr_name.startswith('_') and attr_name.endswith('_task'):
					try:
						task = getattr(self, attr_name)
						if hasattr(task, 'cancel') and callable(task.cancel) and not task.done():
							task.cancel()
					except Exception:
						pass  # Ignore errors during cleanup

				if attr_name.startswith('_') and attr_name.endswith('_tasks') and isinstance(getattr(self, attr_name), Iterable):
					for task in getattr(self, attr_name):
						try:
							if hasattr(task, 'cancel') and callable(task.cancel) and not task.done():
								task.cancel()
						except Exception:
							pass  # Ignore errors during cleanup
		except Exception as e:
			from ai_browser.utils import logger

			logger.error(f'⚠️ Error during {self.__class__.__name__} garbage collection __del__(): {type(e)}: {e}')
