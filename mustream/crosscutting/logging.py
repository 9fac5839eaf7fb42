import json
import logging
import re
from datetime import datetime
from typing import Dict, Any, Optional
from contextvars import ContextVar

# Context variables for correlation
server_id_var: ContextVar[Optional[str]] = ContextVar('server_id', default=None)
browse_var: ContextVar[Optional[str]] = ContextVar('browse', default=None)


class SecretMasker:
    """Masks sensitive information in log messages."""

    def __init__(self):
        """Initialize secret masker with patterns."""
        self.patterns = [
            # API tokens and keys
            r'(?i)(token|key|secret|password|auth)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
            # Jellyfin access tokens and api keys in query strings
            r'(?i)(api_key|access_token)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{16,})["\']?',
            # Subsonic salted-token auth parameters
            r'(?i)\b([ts])=([a-zA-Z0-9]{6,})',
            # MediaBrowser authorization header token
            r'(?i)(Token)="([a-zA-Z0-9\-_\.]{10,})"',
        ]

        self.compiled_patterns = [re.compile(pattern) for pattern in self.patterns]

    def mask_secrets(self, text: str) -> str:
        """Mask sensitive information in text."""
        if not text:
            return text

        masked_text = text

        for pattern in self.compiled_patterns:
            def replace_match(match):
                prefix = match.group(1)
                secret = match.group(2)
                # Keep first 4 and last 4 characters, mask the rest
                if len(secret) > 8:
                    masked_secret = secret[:4] + '*' * (len(secret) - 8) + secret[-4:]
                else:
                    masked_secret = '*' * len(secret)
                return f"{prefix}: {masked_secret}"

            masked_text = pattern.sub(replace_match, masked_text)

        return masked_text

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive information in dictionary."""
        if not data:
            return data

        masked_data = {}

        for key, value in data.items():
            if isinstance(value, str):
                masked_data[key] = self.mask_secrets(value)
            elif isinstance(value, dict):
                masked_data[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [self.mask_dict(item) if isinstance(item, dict)
                                  else self.mask_secrets(item) if isinstance(item, str)
                                  else item for item in value]
            else:
                masked_data[key] = value

        return masked_data


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self):
        """Initialize formatter."""
        super().__init__()
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        server_id = server_id_var.get()
        browse = browse_var.get()

        log_entry = {
            'ts': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': self.masker.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if server_id:
            log_entry['serverId'] = server_id
        if browse:
            log_entry['browse'] = browse

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        if hasattr(record, 'fields') and record.fields:
            log_entry['fields'] = self.masker.mask_dict(record.fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class CorrelationContext:
    """Context manager for correlation data."""

    def __init__(self, server_id: Optional[str] = None, browse: Optional[str] = None):
        """Initialize correlation context."""
        self.server_id = server_id
        self.browse = browse
        self._old_values = {}

    def __enter__(self):
        """Set correlation context."""
        if self.server_id is not None:
            self._old_values['server_id'] = server_id_var.get()
            server_id_var.set(self.server_id)

        if self.browse is not None:
            self._old_values['browse'] = browse_var.get()
            browse_var.set(self.browse)

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Restore correlation context."""
        if 'server_id' in self._old_values:
            server_id_var.set(self._old_values['server_id'])
        if 'browse' in self._old_values:
            browse_var.set(self._old_values['browse'])


def setup_logging(level: str = 'INFO',
                 log_file: Optional[str] = None,
                 server_id: Optional[str] = None) -> logging.Logger:
    """Setup structured logging for the mustream logger tree."""
    logger = logging.getLogger('mustream')
    logger.setLevel(getattr(logging, level.upper()))

    logger.handlers.clear()

    formatter = StructuredFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if server_id:
        server_id_var.set(server_id)

    return logger


def get_logger(name: str = 'mustream') -> logging.Logger:
    """Get logger with structured formatting."""
    return logging.getLogger(name)


def log_with_fields(logger: logging.Logger, level: str, message: str,
                   fields: Optional[Dict[str, Any]] = None, **kwargs):
    """Log message with additional fields."""
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return
    record = logger.makeRecord(
        logger.name, levelno, '', 0, message, (), None
    )

    merged = dict(fields or {})
    merged.update(kwargs)
    if merged:
        record.fields = merged

    logger.handle(record)


def log_fetch_error(logger: logging.Logger, kind: str, offset: int, limit: int,
                    error: Exception, attempt: int = 1, **kwargs):
    """Log a failed page fetch."""
    log_with_fields(logger, 'WARNING', f'Error fetching {kind} page: {error}', {
        'kind': kind,
        'offset': offset,
        'limit': limit,
        'attempt': attempt,
        'error_type': type(error).__name__,
        **kwargs
    })


def log_phase_switch(logger: logging.Logger, hit_count: int, batch_size: int, seen: int):
    """Log the random album iterator falling back to a deterministic sweep."""
    log_with_fields(logger, 'DEBUG', 'Random album iteration switching to deterministic order', {
        'hit_count': hit_count,
        'batch_size': batch_size,
        'success_ratio': hit_count / batch_size if batch_size else 0.0,
        'seen_albums': seen,
    })


def log_iterator_exhausted(logger: logging.Logger, kind: str, served: int):
    """Log that an iterator has returned its end-marker."""
    log_with_fields(logger, 'DEBUG', f'{kind} iteration exhausted', {
        'kind': kind,
        'served': served,
    })
