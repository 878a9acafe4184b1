import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

# Context variables for correlation
run_id_var: ContextVar[Optional[str]] = ContextVar('run_id', default=None)
source_playlist_id_var: ContextVar[Optional[str]] = ContextVar('source_playlist_id', default=None)
stage_var: ContextVar[Optional[str]] = ContextVar('stage', default=None)
provider_var: ContextVar[Optional[str]] = ContextVar('provider', default=None)

_CONTEXT_VARS = {
    'run_id': run_id_var,
    'source_playlist_id': source_playlist_id_var,
    'stage': stage_var,
    'provider': provider_var,
}

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class SecretMasker:
    """Masks sensitive information in log messages."""

    def __init__(self):
        """Initialize secret masker with patterns."""
        self.patterns = [
            # API tokens and keys
            r'(?i)(token|key|secret|password|auth)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
            # OAuth access and refresh tokens
            r'(?i)(access_token|refresh_token)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Client secrets
            r'(?i)(client_secret)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # OAuth codes
            r'(?i)(code|authorization_code)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\./]{20,})["\']?',
        ]
        self.compiled_patterns = [re.compile(pattern) for pattern in self.patterns]
        self.bearer_pattern = re.compile(r'(?i)\b(bearer)\s+([a-zA-Z0-9\-_\.]{20,})')

    @staticmethod
    def _mask(secret: str) -> str:
        # Keep first 4 and last 4 characters, mask the rest
        if len(secret) > 8:
            return secret[:4] + '*' * (len(secret) - 8) + secret[-4:]
        return '*' * len(secret)

    def mask_secrets(self, text: str) -> str:
        """Mask sensitive information in text."""
        if not text:
            return text

        masked_text = text
        for pattern in self.compiled_patterns:
            masked_text = pattern.sub(
                lambda match: f"{match.group(1)}: {self._mask(match.group(2))}", masked_text
            )
        masked_text = self.bearer_pattern.sub(
            lambda match: f"{match.group(1)} {self._mask(match.group(2))}", masked_text
        )
        return masked_text

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive information in dictionary."""
        if not data:
            return data

        masked_data = {}
        for key, value in data.items():
            if isinstance(value, str):
                if re.search(r'(?i)(token|secret|password|code)$', key):
                    masked_data[key] = self._mask(value)
                else:
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
        super().__init__()
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'ts': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': self.masker.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        # Add correlation fields if available
        run_id = run_id_var.get()
        source_playlist_id = source_playlist_id_var.get()
        stage = stage_var.get()
        provider = provider_var.get()
        if run_id:
            log_entry['runId'] = run_id
        if source_playlist_id:
            log_entry['sourcePlaylistId'] = source_playlist_id
        if stage:
            log_entry['stage'] = stage
        if provider:
            log_entry['provider'] = provider

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        if getattr(record, 'fields', None):
            log_entry['fields'] = self.masker.mask_dict(record.fields)

        return json.dumps(log_entry, ensure_ascii=False)


class MaskingFormatter(logging.Formatter):
    """Plain text formatter that masks secrets and appends the run stage."""

    def __init__(self, fmt: str = PLAIN_FORMAT):
        super().__init__(fmt)
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        text = self.masker.mask_secrets(super().format(record))
        stage = stage_var.get()
        return f"{text} [{stage}]" if stage else text


class CorrelationContext:
    """Context manager for correlation data."""

    def __init__(self, run_id: Optional[str] = None,
                 source_playlist_id: Optional[str] = None,
                 stage: Optional[str] = None,
                 provider: Optional[str] = None):
        self._values = {
            'run_id': run_id,
            'source_playlist_id': source_playlist_id,
            'stage': stage,
            'provider': provider,
        }
        self._tokens = {}

    def __enter__(self):
        """Set correlation context."""
        for name, value in self._values.items():
            if value is not None:
                self._tokens[name] = _CONTEXT_VARS[name].set(value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Restore correlation context."""
        for name, token in self._tokens.items():
            _CONTEXT_VARS[name].reset(token)
        self._tokens = {}


def setup_logging(level: str = 'INFO',
                  log_file: Optional[str] = None,
                  json_format: bool = False,
                  run_id: Optional[str] = None) -> logging.Logger:
    """Configure the 'tubesync' logger hierarchy."""
    logger = logging.getLogger('tubesync')
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()
    logger.propagate = False

    formatter = StructuredFormatter() if json_format else MaskingFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        # Rotate at ~100MB with up to 14 backups
        file_handler = RotatingFileHandler(log_file, maxBytes=100 * 1024 * 1024, backupCount=14)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if run_id:
        run_id_var.set(run_id)

    return logger


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None, exc_info: bool = False, **kwargs):
    """Log message with additional fields."""
    extra_fields = dict(fields or {})
    extra_fields.update(kwargs)
    logger.log(getattr(logging, level.upper()), message,
               extra={'fields': extra_fields} if extra_fields else None,
               exc_info=exc_info)


def log_run_start(logger: logging.Logger, run_id: str, source_playlist_id: str, **kwargs):
    """Log sync run start."""
    with CorrelationContext(run_id=run_id, source_playlist_id=source_playlist_id, stage='init'):
        log_with_fields(logger, 'INFO', 'Sync run started', {
            'source_provider': 'spotify',
            'target_provider': 'youtube',
            **kwargs
        })


def log_run_complete(logger: logging.Logger, run_id: str, source_playlist_id: str,
                     matched: int, not_found: int, failed: int, **kwargs):
    """Log sync run completion."""
    with CorrelationContext(run_id=run_id, source_playlist_id=source_playlist_id, stage='done'):
        log_with_fields(logger, 'INFO', 'Sync run completed', {
            'matched': matched,
            'not_found': not_found,
            'failed': failed,
            **kwargs
        })


def log_error(logger: logging.Logger, message: str, error: Exception, **kwargs):
    """Log error with exception details."""
    log_with_fields(logger, 'ERROR', message, {
        'error_type': type(error).__name__,
        'error_message': str(error),
        **kwargs
    }, exc_info=True)
