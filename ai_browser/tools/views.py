from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

TIMEOUT_DESCRIPTION = 'Maximum wait time in milliseconds. If set to 0, the default timeout will be used.'
UID_DESCRIPTION = 'The uid of an element on the page from the page content snapshot'

NetworkConditions = Literal['No emulation', 'Offline', 'Slow 3G', 'Fast 3G', 'Regular 4G', 'DSL', 'WiFi']


# Result envelope
class TextContent(BaseModel):
	type: Literal['text'] = 'text'
	text: str


class ImageContent(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	type: Literal['image'] = 'image'
	data: str  # base64
	mime_type: str = Field(alias='mimeType')


class ToolResult(BaseModel):
	"""Normalized outcome of one tool call: content blocks, flagged when the call failed."""

	content: list[TextContent | ImageContent] = Field(default_factory=list)
	is_error: bool = False

	@classmethod
	def text(cls, text: str, is_error: bool = False) -> 'ToolResult':
		return cls(content=[TextContent(text=text)], is_error=is_error)

	@classmethod
	def error(cls, text: str) -> 'ToolResult':
		return cls.text(text, is_error=True)

	@classmethod
	def image(cls, text: str, data: str, mime_type: str) -> 'ToolResult':
		return cls(content=[TextContent(text=text), ImageContent(data=data, mime_type=mime_type)])

	@property
	def text_content(self) -> str:
		return '\n'.join(block.text for block in self.content if isinstance(block, TextContent))

	def to_dict(self) -> dict[str, Any]:
		result: dict[str, Any] = {'content': [block.model_dump(by_alias=True) for block in self.content]}
		if self.is_error:
			result['isError'] = True
		return result


# Tool parameter models
class ToolParams(BaseModel):
	"""Tool arguments arrive in camelCase, unknown keys are rejected."""

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='forbid')


class NoParams(ToolParams):
	pass


class SelectPageParams(ToolParams):
	page_idx: int = Field(description='The index of the page to select. Call browser_list_pages to get available pages.')
	bring_to_front: bool | None = Field(default=None, description='Whether to focus the page and bring it to the top.')


class NewPageParams(ToolParams):
	url: str = Field(description='URL to load in a new page.')
	timeout: int | None = Field(default=None, description=TIMEOUT_DESCRIPTION)


class ClosePageParams(ToolParams):
	page_idx: int = Field(description='The index of the page to close. Call list_pages to list pages.')


class NavigateParams(ToolParams):
	type: Literal['url', 'back', 'forward', 'reload'] | None = Field(
		default=None, description='Navigate the page by URL, back or forward in history, or reload.'
	)
	url: str | None = Field(default=None, description='Target URL (only type=url)')
	ignore_cache: bool | None = Field(default=None, description='Whether to ignore cache on reload.')
	timeout: int | None = Field(default=None, description=TIMEOUT_DESCRIPTION)


class WaitForParams(ToolParams):
	text: str = Field(description='Text to appear on the page')
	timeout: int | None = Field(default=None, description=TIMEOUT_DESCRIPTION)


class ResizeParams(ToolParams):
	width: int = Field(gt=0, description='Page width')
	height: int = Field(gt=0, description='Page height')


class HandleDialogParams(ToolParams):
	action: Literal['accept', 'dismiss'] = Field(description='Whether to dismiss or accept the dialog')
	prompt_text: str | None = Field(default=None, description='Optional prompt text to enter into the dialog.')


class ClickParams(ToolParams):
	uid: str = Field(description=UID_DESCRIPTION)
	dbl_click: bool | None = Field(default=None, description='Set to true for double clicks. Default is false.')


class HoverParams(ToolParams):
	uid: str = Field(description=UID_DESCRIPTION)


class FillParams(ToolParams):
	uid: str = Field(description=UID_DESCRIPTION)
	value: str = Field(description='The value to fill in')


class FormElement(ToolParams):
	uid: str = Field(description='The uid of the element to fill out')
	value: str = Field(description='Value for the element')


class FillFormParams(ToolParams):
	elements: list[FormElement] = Field(min_length=1, description='Elements from snapshot to fill out.')


class DragParams(ToolParams):
	from_uid: str = Field(alias='from_uid', description='The uid of the element to drag')
	to_uid: str = Field(alias='to_uid', description='The uid of the element to drop into')


class PressKeyParams(ToolParams):
	key: str = Field(
		min_length=1,
		description='A key or a combination (e.g., "Enter", "Control+A", "Control++", "Control+Shift+R"). Modifiers: Control, Shift, Alt, Meta',
	)


class UploadFileParams(ToolParams):
	uid: str = Field(
		description='The uid of the file input element or an element that will open file chooser on the page from the page content snapshot'
	)
	file_path: str = Field(description='The local path of the file to upload')


class SnapshotParams(ToolParams):
	verbose: bool | None = Field(
		default=None, description='Whether to include all possible information available in the full a11y tree. Default is false.'
	)
	file_path: str | None = Field(
		default=None,
		description='The absolute path, or a path relative to the current working directory, to save the snapshot to instead of attaching it to the response.',
	)


class ScreenshotParams(ToolParams):
	format: Literal['png', 'jpeg', 'webp'] | None = Field(
		default=None, description='Type of format to save the screenshot as. Default is "png"'
	)
	quality: int | None = Field(
		default=None, ge=0, le=100, description='Compression quality for JPEG and WebP formats (0-100). Ignored for PNG format.'
	)
	uid: str | None = Field(
		default=None, description=f'{UID_DESCRIPTION}. If omitted takes a pages screenshot.'
	)
	full_page: bool | None = Field(
		default=None,
		description='If set to true takes a screenshot of the full page instead of the currently visible viewport. Incompatible with uid.',
	)
	file_path: str | None = Field(
		default=None,
		description='The absolute path, or a path relative to the current working directory, to save the screenshot to instead of attaching it to the response.',
	)

	@model_validator(mode='after')
	def _uid_and_full_page_are_exclusive(self) -> 'ScreenshotParams':
		if self.uid and self.full_page:
			raise ValueError('Providing both "uid" and "fullPage" is not allowed.')
		return self


class ElementArg(ToolParams):
	uid: str = Field(description=UID_DESCRIPTION)


class EvaluateParams(ToolParams):
	function: str = Field(
		description="""A JavaScript function declaration to be executed by the tool in the currently selected page.
Example without arguments: `() => {
  return document.title
}` or `async () => {
  return await fetch("example.com")
}`.
Example with arguments: `(el) => {
  return el.innerText;
}`
"""
	)
	args: list[ElementArg] | None = Field(default=None, description='An optional list of arguments to pass to the function.')


class NetworkRequestsParams(ToolParams):
	page_size: int | None = Field(
		default=None, gt=0, description='Maximum number of requests to return. When omitted, returns all requests.'
	)
	page_idx: int | None = Field(
		default=None, ge=0, description='Page number to return (0-based). When omitted, returns the first page.'
	)
	resource_types: list[str] | None = Field(
		default=None,
		description='Filter requests to only return requests of the specified resource types. When omitted or empty, returns all requests.',
	)
	include_preserved_requests: bool | None = Field(
		default=None, description='Set to true to return the preserved requests over the last 3 navigations.'
	)


class NetworkRequestParams(ToolParams):
	reqid: int | None = Field(default=None, description='The reqid of the network request.')


class ConsoleParams(ToolParams):
	page_size: int | None = Field(
		default=None, gt=0, description='Maximum number of messages to return. When omitted, returns all messages.'
	)
	page_idx: int | None = Field(
		default=None, ge=0, description='Page number to return (0-based). When omitted, returns the first page.'
	)
	types: list[str] | None = Field(
		default=None,
		description='Filter messages to only return messages of the specified types. When omitted or empty, returns all messages.',
	)
	include_preserved_messages: bool | None = Field(
		default=None, description='Set to true to return the preserved messages over the last 3 navigations.'
	)


class ConsoleMessageParams(ToolParams):
	msgid: int = Field(description='The msgid of a console message on the page from the listed console messages')


class Geolocation(ToolParams):
	latitude: float = Field(ge=-90, le=90, description='Latitude between -90 and 90.')
	longitude: float = Field(ge=-180, le=180, description='Longitude between -180 and 180.')


class EmulateParams(ToolParams):
	network_conditions: NetworkConditions | None = Field(
		default=None, description='Throttle network. Set to "No emulation" to disable. If omitted, conditions remain unchanged.'
	)
	cpu_throttling_rate: float | None = Field(
		default=None,
		ge=1,
		le=20,
		description='Represents the CPU slowdown factor. Set the rate to 1 to disable throttling. If omitted, throttling remains unchanged.',
	)
	# explicit null clears the override, omitting it leaves geolocation alone (see model_fields_set)
	geolocation: Geolocation | None = Field(
		default=None, description='Geolocation to emulate. Set to null to clear the geolocation override.'
	)


class PerfStartParams(ToolParams):
	reload: bool = Field(description='Determines if, once tracing has started, the page should be automatically reloaded.')
	auto_stop: bool = Field(description='Determines if the trace recording should be automatically stopped.')


class PerfInsightParams(ToolParams):
	insight_set_id: str = Field(
		description='The id for the specific insight set. Only use the ids given in the "Available insight sets" list.'
	)
	insight_name: str = Field(
		description='The name of the Insight you want more information on. For example: "DocumentLatency" or "LCPBreakdown"'
	)
