from datetime import datetime, timezone
from typing import Any, ClassVar, Literal

from cdp_use.cdp.target import SessionID, TargetID
from pydantic import BaseModel, ConfigDict, Field

DialogType = Literal['alert', 'confirm', 'prompt', 'beforeunload']


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


# Pydantic
class View(BaseModel):
	"""One live browser page (CDP target) managed by the ViewManager"""

	model_config = ConfigDict(extra='forbid', revalidate_instances='never')

	id: str
	target_id: TargetID
	session_id: SessionID
	title: str = ''
	url: str = 'about:blank'
	created_at: datetime = Field(default_factory=_utcnow)

	def to_state(self) -> 'ViewState':
		return ViewState(id=self.id, title=self.title, url=self.url)


class ViewState(BaseModel):
	"""The externally visible summary of a view"""

	id: str
	title: str
	url: str


class RequestTiming(BaseModel):
	start_time: float | None = None  # CDP monotonic seconds
	end_time: float | None = None
	duration: float | None = None  # milliseconds, set once loading finished or failed


class NetworkRequestRecord(BaseModel):
	"""A single network request observed on a view, updated in place as CDP events arrive"""

	model_config = ConfigDict(validate_assignment=False)

	id: int
	request_id: str
	view_id: str
	loader_id: str | None = None
	url: str
	method: str = 'GET'
	resource_type: str = 'other'
	status: int | None = None
	status_text: str | None = None
	mime_type: str | None = None
	timing: RequestTiming = Field(default_factory=RequestTiming)
	request_headers: dict[str, Any] = Field(default_factory=dict)
	response_headers: dict[str, Any] = Field(default_factory=dict)
	request_body: str | None = None
	error: str | None = None
	redirected_to: str | None = None


class ConsoleMessageRecord(BaseModel):
	"""A console API call or uncaught exception observed on a view"""

	id: int
	view_id: str
	type: str = 'log'
	text: str = ''
	timestamp: float = 0.0
	url: str | None = None
	line_number: int | None = None
	column_number: int | None = None
	stack_trace: str | None = None
	args: list[str] = Field(default_factory=list)


class PendingDialog(BaseModel):
	"""A JavaScript dialog that is open and waiting for a response"""

	type: DialogType
	message: str
	default_value: str | None = None
	view_id: str
	url: str | None = None


class ScreenshotResult(BaseModel):
	data: str  # base64
	mime_type: str


class PerformanceTraceResult(BaseModel):
	duration: int  # milliseconds
	metrics: dict[str, float] = Field(default_factory=dict)
	event_count: int = 0


# Errors
class BrowserError(Exception):
	"""Base class for every failure the engine reports.

	Each subclass carries a stable `code` so callers and logs can tell failures
	apart without parsing messages.
	"""

	code: ClassVar[str] = 'BrowserError'

	message: str
	details: dict[str, Any] | None = None

	def __init__(self, message: str, details: dict[str, Any] | None = None):
		self.message = message
		self.details = details
		super().__init__(message)

	def __str__(self) -> str:
		if self.details:
			return f'{self.message} ({self.details})'
		return self.message


class NoActiveViewError(BrowserError):
	code = 'NoActiveView'

	def __init__(self, message: str = 'No active browser page.', details: dict[str, Any] | None = None):
		super().__init__(message, details)


class ElementNotFoundError(BrowserError):
	code = 'ElementNotFound'


class InvalidArgumentError(BrowserError):
	code = 'InvalidArgument'


class OperationTimeoutError(BrowserError, TimeoutError):
	code = 'Timeout'


class ProtocolError(BrowserError):
	"""A CDP command failed, always names the method that failed."""

	code = 'ProtocolError'

	def __init__(self, method: str, message: str, details: dict[str, Any] | None = None):
		self.method = method
		super().__init__(f'{method}: {message}', details)


class AlreadyTracingError(BrowserError):
	code = 'AlreadyTracing'


class NoDialogError(BrowserError):
	code = 'NoDialog'


class NotFoundError(BrowserError):
	code = 'NotFound'


class InvalidOperationError(BrowserError):
	code = 'InvalidOperation'


class OptionNotFoundError(BrowserError):
	"""Raised by select_option when no option matches, lets form filling fall back to typing."""

	code = 'OptionNotFound'


class ScriptError(BrowserError):
	"""JavaScript evaluated in the page threw."""

	code = 'ScriptError'
