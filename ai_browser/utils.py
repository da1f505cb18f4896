import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from functools import wraps
from typing import Any, ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec('P')
R = TypeVar('R')


def time_execution_async(
	additional_text: str = '',
) -> Callable[[Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]]:
	def decorator(func: Callable[P, Coroutine[Any, Any, R]]) -> Callable[P, Coroutine[Any, Any, R]]:
		@wraps(func)
		async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
			start_time = time.time()
			result = await func(*args, **kwargs)
			execution_time = time.time() - start_time
			# Only log if execution takes more than 0.25 seconds to avoid spamming the logs
			if execution_time > 0.25:
				self_has_logger = args and getattr(args[0], 'logger', None)
				if self_has_logger:
					logger = getattr(args[0], 'logger')
				elif 'browser_context' in kwargs:
					logger = getattr(kwargs['browser_context'], 'logger')
				else:
					logger = logging.getLogger(__name__)
				logger.debug(f'⏳ {additional_text.strip("-")}() took {execution_time:.2f}s')
			return result

		return wrapper

	return decorator


def _log_pretty_url(s: str, max_len: int | None = 22) -> str:
	"""Truncate/pretty-print a URL with a maximum length, removing the protocol and www. prefix"""
	s = s.replace('https://', '').replace('http://', '').replace('www.', '')
	if max_len is not None and len(s) > max_len:
		return s[:max_len] + '…'
	return s


async def cancel_and_wait(task: asyncio.Task[Any] | None) -> None:
	"""Cancel a background task and wait for it to unwind, ignoring its outcome."""
	if task is None or task.done():
		return
	task.cancel()
	try:
		await task
	except (asyncio.CancelledError, Exception):
		pass


def format_bytes(num_bytes: float) -> str:
	if num_bytes < 1024:
		return f'{num_bytes:.0f} B'
	if num_bytes < 1024 * 1024:
		return f'{num_bytes / 1024:.1f} KB'
	if num_bytes < 1024 * 1024 * 1024:
		return f'{num_bytes / (1024 * 1024):.1f} MB'
	return f'{num_bytes / (1024 * 1024 * 1024):.1f} GB'
