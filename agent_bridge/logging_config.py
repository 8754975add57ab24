"""
Structured Logging Configuration

structlog over the stdlib ``logging`` tree. Every record carries the service
name, the emitting component and, while a bridge session is being serviced,
its voice channel id as the correlation id. Credentials are redacted before
rendering: Discord bot tokens, ElevenLabs API keys and the query string of
signed websocket URLs.

Renders JSON by default, or a colorized console format for local runs.
"""

import contextvars
import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler

import structlog
from structlog import dev as structlog_dev

# Voice channel id of the bridge session currently being serviced
correlation_id_var = contextvars.ContextVar('correlation_id', default=None)

SERVICE_NAME = 'agent-bridge'
REDACTED = '***REDACTED***'

# Compared with separators removed, so "xi-api-key" also matches "xi_api_key"
SENSITIVE_KEYS = (
    'apikey', 'apikeys', 'xiapikey',
    'token', 'tokens', 'bottoken', 'accesstoken',
    'authorization', 'bearer',
    'secret', 'secrets', 'password', 'credential', 'credentials',
    'signedurl',
)

# Query parameters of a signed URL authorize a conversation on their own
_URL_QUERY = re.compile(r'(wss?://[^\s?]+)\?\S*')

# Third-party loggers that are chatty at INFO
_NOISY_LOGGERS = ('websockets', 'aiohttp.access', 'discord', 'discord.gateway', 'discord.ext.voice_recv')


def get_correlation_id():
    return correlation_id_var.get()


def set_correlation_id(value):
    """Mark the current task (and tasks it spawns) as servicing ``value``."""
    correlation_id_var.set(str(value) if value is not None else None)
    return value


def bind_session_context(channel_id, guild_id=None):
    """Bind channel/guild for every log line emitted from the current task."""
    set_correlation_id(channel_id)
    structlog.contextvars.bind_contextvars(guild=str(guild_id) if guild_id is not None else None)


def add_correlation_id(logger, method_name, event_dict):
    correlation_id = get_correlation_id()
    if correlation_id and 'correlation_id' not in event_dict:
        event_dict['correlation_id'] = correlation_id
    return event_dict


def add_service_context(logger, method_name, event_dict):
    event_dict['service'] = SERVICE_NAME
    event_dict.setdefault('component', event_dict.get('logger') or getattr(logger, 'name', None) or 'unknown')
    return event_dict


def _normalize_key(key) -> str:
    return re.sub(r'[_\-\s]', '', str(key).lower())


def _is_sensitive_key(key) -> bool:
    normalized = _normalize_key(key)
    # Suffix match so "bot_token" is caught while "token_count" is not
    return any(normalized == pattern or normalized.endswith(pattern) for pattern in SENSITIVE_KEYS)


def _redact_value(value):
    if value is None or isinstance(value, bool) or value == '':
        return value
    if isinstance(value, str):
        return f"{value[:2]}{REDACTED}" if len(value) > 4 else REDACTED
    if isinstance(value, (list, tuple)):
        return [_redact_value(item) for item in value]
    return REDACTED


def _scrub_urls(value):
    if isinstance(value, str) and '://' in value:
        return _URL_QUERY.sub(lambda m: f"{m.group(1)}?{REDACTED}", value)
    return value


def _sanitize(value):
    if isinstance(value, dict):
        return {
            key: _redact_value(item) if _is_sensitive_key(key) else _sanitize(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_sanitize(item) for item in value]
    return _scrub_urls(value)


def sanitize_secrets(logger, method_name, event_dict):
    """
    Redact credentials from a log event.

    Values under sensitive keys keep a two character prefix for debugging.
    Websocket URLs anywhere in the event lose their query string.
    """
    return _sanitize(event_dict)


def _show_tracebacks(level_name: str) -> bool:
    mode = os.getenv("LOG_SHOW_TRACEBACKS", "auto").strip().lower()
    if mode in ("always", "never"):
        return mode == "always"
    return level_name == "DEBUG"


def configure_logging(log_level="info", log_format="json", log_file_path=None):
    """
    Set up structured logging for the process.

    ``log_level`` and ``log_format`` come from LoggingConfig (which LOG_LEVEL
    already overrides). Optional environment switches:
      - LOG_FORMAT: json|console
      - LOG_COLOR: 0|1 (console only)
      - LOG_FILE_PATH: also write to a rotating file
      - LOG_SHOW_TRACEBACKS: auto|always|never (auto = only at debug)
    """
    level_name = str(log_level).upper()
    level_value = getattr(logging, level_name, logging.INFO)
    log_format = (os.getenv("LOG_FORMAT") or log_format or "json").strip().lower()
    log_file_path = os.getenv("LOG_FILE_PATH") or log_file_path
    show_tracebacks = _show_tracebacks(level_name)

    def drop_exc_info(logger, method_name, event_dict):
        if not show_tracebacks:
            event_dict.pop("exc_info", None)
        return event_dict

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_service_context,
        add_correlation_id,
        sanitize_secrets,
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            drop_exc_info,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if log_format == "console":
        colors = os.getenv("LOG_COLOR", "1").strip() not in ("0", "false", "False")
        renderer = structlog_dev.ConsoleRenderer(colors=colors)
    else:
        renderer = structlog.processors.JSONRenderer()

    # discord.py and websockets log through stdlib; run them through the same chain
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level_value)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file_path:
        try:
            directory = os.path.dirname(log_file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = RotatingFileHandler(log_file_path, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            structlog.get_logger(__name__).warning(
                "File logging disabled; continuing with console only",
                error=str(e),
                path=log_file_path,
            )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level_value, logging.WARNING))
