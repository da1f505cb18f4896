import logging
import sys

from dotenv import load_dotenv

load_dotenv()

from ai_browser.config import CONFIG


def addLoggingLevel(levelName, levelNum, methodName=None):
	"""
	Adds a new logging level to the `logging` module and the currently
	configured logging class.

	`levelName` becomes an attribute of the `logging` module with the value
	`levelNum`. `methodName` becomes a convenience method for both `logging`
	itself and the class returned by `logging.getLoggerClass()`. If
	`methodName` is not specified, `levelName.lower()` is used.

	Raises `AttributeError` if the level name or the method name is already
	defined.

	Example
	-------
	>>> addLoggingLevel('TRACE', logging.DEBUG - 5)
	>>> logging.getLogger(__name__).setLevel('TRACE')
	>>> logging.getLogger(__name__).trace('that worked')
	"""
	if not methodName:
		methodName = levelName.lower()

	if hasattr(logging, levelName):
		raise AttributeError(f'{levelName} already defined in logging module')
	if hasattr(logging, methodName):
		raise AttributeError(f'{methodName} already defined in logging module')
	if hasattr(logging.getLoggerClass(), methodName):
		raise AttributeError(f'{methodName} already defined in logger class')

	def logForLevel(self, message, *args, **kwargs):
		if self.isEnabledFor(levelNum):
			self._log(levelNum, message, args, **kwargs)

	def logToRoot(message, *args, **kwargs):
		logging.log(levelNum, message, *args, **kwargs)

	logging.addLevelName(levelNum, levelName)
	setattr(logging, levelName, levelNum)
	setattr(logging.getLoggerClass(), methodName, logForLevel)
	setattr(logging, methodName, logToRoot)


class AIBrowserFormatter(logging.Formatter):
	"""Shortens ai_browser.* logger names to their component outside of DEBUG mode."""

	def __init__(self, fmt, log_level):
		super().__init__(fmt)
		self.log_level = log_level

	def format(self, record):
		if self.log_level > logging.DEBUG and isinstance(record.name, str) and record.name.startswith('ai_browser.'):
			if 'BrowserSession' in record.name:
				record.name = 'BrowserSession'
			elif 'CDPSession' in record.name:
				record.name = 'CDPSession'
			elif 'tools' in record.name:
				record.name = 'tools'
			elif 'dom' in record.name:
				record.name = 'dom'
			else:
				parts = record.name.split('.')
				if len(parts) >= 2:
					record.name = parts[-1]
		return super().format(record)


def setup_logging(stream=None, log_level=None, force_setup=False, debug_log_file=None, info_log_file=None):
	"""Setup logging configuration for ai-browser.

	Args:
		stream: Output stream for logs (default: sys.stdout). Use sys.stderr for MCP mode.
		log_level: Override log level (default: uses CONFIG.AI_BROWSER_LOGGING_LEVEL)
		force_setup: Force reconfiguration even if handlers already exist
		debug_log_file: Path to log file for debug level logs only
		info_log_file: Path to log file for info level logs only
	"""
	try:
		addLoggingLevel('RESULT', 35)
	except AttributeError:
		pass  # already registered by an earlier call

	log_type = log_level or CONFIG.AI_BROWSER_LOGGING_LEVEL

	if logging.getLogger().hasHandlers() and not force_setup:
		return logging.getLogger('ai_browser')

	root = logging.getLogger()
	root.handlers = []

	console = logging.StreamHandler(stream or sys.stdout)

	if log_type == 'result':
		log_level = 35
	elif log_type == 'debug':
		log_level = logging.DEBUG
	else:
		log_level = logging.INFO

	if log_type == 'result':
		console.setLevel('RESULT')
		console.setFormatter(AIBrowserFormatter('%(message)s', log_level))
	else:
		console.setLevel(log_level)
		console.setFormatter(AIBrowserFormatter('%(levelname)-8s [%(name)s] %(message)s', log_level))

	root.addHandler(console)

	file_handlers = []

	debug_log_file = debug_log_file or CONFIG.AI_BROWSER_DEBUG_LOG_FILE
	info_log_file = info_log_file or CONFIG.AI_BROWSER_INFO_LOG_FILE

	if debug_log_file:
		debug_handler = logging.FileHandler(debug_log_file, encoding='utf-8')
		debug_handler.setLevel(logging.DEBUG)
		debug_handler.setFormatter(AIBrowserFormatter('%(asctime)s - %(levelname)-8s [%(name)s] %(message)s', logging.DEBUG))
		file_handlers.append(debug_handler)
		root.addHandler(debug_handler)

	if info_log_file:
		info_handler = logging.FileHandler(info_log_file, encoding='utf-8')
		info_handler.setLevel(logging.INFO)
		info_handler.setFormatter(AIBrowserFormatter('%(asctime)s - %(levelname)-8s [%(name)s] %(message)s', logging.INFO))
		file_handlers.append(info_handler)
		root.addHandler(info_handler)

	effective_log_level = logging.DEBUG if debug_log_file else log_level
	root.setLevel(effective_log_level)

	ai_browser_logger = logging.getLogger('ai_browser')
	ai_browser_logger.propagate = False
	ai_browser_logger.handlers = []
	ai_browser_logger.addHandler(console)
	for handler in file_handlers:
		ai_browser_logger.addHandler(handler)
	ai_browser_logger.setLevel(effective_log_level)

	# bubus logs every event dispatch at DEBUG, keep it at INFO unless we are debugging
	bubus_logger = logging.getLogger('bubus')
	bubus_logger.propagate = False
	bubus_logger.handlers = []
	bubus_logger.addHandler(console)
	for handler in file_handlers:
		bubus_logger.addHandler(handler)
	bubus_logger.setLevel(logging.INFO if log_type == 'result' else effective_log_level)

	cdp_level = getattr(logging, CONFIG.CDP_LOGGING_LEVEL.upper(), logging.WARNING)
	for logger_name in ['websockets.client', 'cdp_use', 'cdp_use.client', 'cdp_use.cdp', 'cdp_use.cdp.registry']:
		cdp_logger = logging.getLogger(logger_name)
		cdp_logger.setLevel(cdp_level)
		cdp_logger.handlers = []
		cdp_logger.addHandler(console)
		cdp_logger.propagate = False

	for logger_name in ['httpx', 'httpcore', 'urllib3', 'asyncio', 'websockets', 'mcp', 'mcp.server.lowlevel.server']:
		third_party = logging.getLogger(logger_name)
		third_party.setLevel(logging.ERROR)
		third_party.propagate = False

	return logging.getLogger('ai_browser')
