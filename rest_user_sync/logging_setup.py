"""
Logging setup and configuration for REST User Sync.

Two log families are written into the configured log directory:

- ``app.log``: everything the sync emits, rotated at midnight.
- ``audit.log``: only the ``audit`` logger, one line per identity decision,
  run summary and security event.

Both share the same retention and are scrubbed of credentials, bearer tokens
and action-token link keys before anything reaches disk or the console.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List
from datetime import datetime, timedelta

APP_LOG = 'app.log'
AUDIT_LOG = 'audit.log'
AUDIT_LOGGER_NAME = 'audit'

DEFAULTS = {
    'level': 'INFO',
    'log_dir': 'logs',
    'rotation': 'daily',
    'retention_days': 7,
    'console_output': True,
    'console_level': 'WARNING',
    'audit_file': True,
}


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'smtp_password', 'token', 'secret', 'key',
        'credential', 'pwd', 'authorization', 'bearer',
        'api_key', 'client_secret', 'access_token', 'refresh_token',
        'action_token_secret'
    ]

    HEADER_PATTERN = re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', re.IGNORECASE)

    def __init__(self, name: str = ''):
        super().__init__(name)
        self._patterns = []
        for keyword in self.SENSITIVE_KEYWORDS:
            # key=value, also inside query strings such as action links
            self._patterns.append((re.compile(rf'(\b{keyword}\s*=\s*)[^\s,&}}\]]+', re.IGNORECASE), r'\1****'))
            # "key": "value"
            self._patterns.append((re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'))
            # "key": 123
            self._patterns.append((re.compile(rf'("{keyword}"\s*:\s*)([^",}}\s]+)(\s*[,}}\]])', re.IGNORECASE),
                                   r'\1****\3'))
        self._patterns.append((self.HEADER_PATTERN, r'\1****'))

    def scrub(self, text: str) -> str:
        for pattern, replacement in self._patterns:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            record.msg = self.scrub(str(record.msg))
        return True


class LoggingManager:
    """
    Manages logging configuration for the REST User Sync application.

    The root logger gets the application file and console handlers; the
    ``audit`` logger additionally gets its own file so the trail of sync
    decisions survives independently of the debug noise in ``app.log``.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = DEFAULTS['retention_days']
        self.audit_enabled = False

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: ``logging`` section of the sync configuration
        """
        if self.configured:
            return

        settings = self._read_settings(config)
        self.log_dir = settings['log_dir']
        self.retention_days = settings['retention_days']
        self.audit_enabled = settings['audit_file']
        self._ensure_log_directory()

        level = getattr(logging, settings['level'], logging.INFO)
        scrubber = SensitiveDataFilter()
        file_format = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        root_logger.addHandler(self._attach(self._create_file_handler(settings['rotation']),
                                            level, file_format, scrubber))

        if settings['console_output']:
            console_format = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', datefmt='%H:%M:%S')
            console_level = getattr(logging, settings['console_level'], logging.WARNING)
            root_logger.addHandler(self._attach(logging.StreamHandler(), console_level, console_format, scrubber))

        audit = logging.getLogger(AUDIT_LOGGER_NAME)
        audit.handlers.clear()
        if self.audit_enabled:
            audit_format = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', datefmt='%Y-%m-%dT%H:%M:%S')
            audit_handler = self._create_file_handler(settings['rotation'], AUDIT_LOG)
            audit.addHandler(self._attach(audit_handler, logging.INFO, audit_format, scrubber))

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={settings['level']}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={settings['console_output']}, "
            f"audit_file={self.audit_enabled}"
        )

    @staticmethod
    def _read_settings(config: Dict[str, Any]) -> Dict[str, Any]:
        settings = dict(DEFAULTS)
        settings.update({k: v for k, v in (config or {}).items() if v is not None})
        settings['level'] = str(settings['level']).upper()
        settings['console_level'] = str(settings['console_level']).upper()
        settings['retention_days'] = int(settings['retention_days'])
        return settings

    @staticmethod
    def _attach(handler: logging.Handler, level: int, formatter: logging.Formatter,
                scrubber: SensitiveDataFilter) -> logging.Handler:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(scrubber)
        return handler

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str, filename: str = APP_LOG) -> logging.Handler:
        """
        Create a file handler for one log family.

        Args:
            rotation: 'daily'/'midnight' for date-suffixed rotation, anything else for a plain file
            filename: Base file name inside the log directory

        Returns:
            Logging handler; the audit file is opened lazily on its first record
        """
        log_file = os.path.join(self.log_dir, filename)
        delay = filename != APP_LOG

        if str(rotation).lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                backupCount=self.retention_days,
                encoding='utf-8',
                delay=delay
            )
            handler.suffix = '%Y-%m-%d'
            return handler
        return logging.FileHandler(log_file, encoding='utf-8', delay=delay)

    def _cleanup_old_logs(self) -> None:
        """Remove rotated files of either log family older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        current = {os.path.join(self.log_dir, APP_LOG), os.path.join(self.log_dir, AUDIT_LOG)}

        for log_file in self.get_log_files():
            if log_file in current:
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
                    print(f"Removed old log file: {log_file}")
            except (OSError, ValueError) as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        """Current and rotated files of both log families, sorted."""
        if not self.log_dir:
            return []
        files = []
        for family in (APP_LOG, AUDIT_LOG):
            files.extend(glob.glob(os.path.join(self.log_dir, family + '*')))
        return sorted(files)

    def get_log_stats(self) -> Dict[str, Any]:
        """
        Get statistics about current logging setup.

        Returns:
            Dictionary with logging statistics
        """
        log_files = self.get_log_files()
        sizes = {}
        for log_file in log_files:
            try:
                sizes[log_file] = os.path.getsize(log_file)
            except OSError:
                sizes[log_file] = 0
        total_size = sum(sizes.values())
        audit_files = [f for f in log_files if os.path.basename(f).startswith(AUDIT_LOG)]

        return {
            'configured': self.configured,
            'log_directory': self.log_dir,
            'retention_days': self.retention_days,
            'log_files_count': len(log_files),
            'audit_files_count': len(audit_files),
            'total_size_bytes': total_size,
            'total_size_mb': round(total_size / (1024 * 1024), 2)
        }


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    _logging_manager.setup_logging(config)


def get_logging_stats() -> Dict[str, Any]:
    return _logging_manager.get_log_stats()


class AuditLogger:
    """Records identity decisions, run summaries and security events on the ``audit`` logger."""

    def __init__(self):
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log_identity_operation(self, operation: str, username: str, source: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Identity operation {status}: {operation} user={username} source={source}")

    def log_run(self, source: str, mode: str, summary: str):
        self.logger.info(f"Sync run finished: source={source} mode={mode} result=[{summary}]")

    def log_configuration_access(self, config_file: str):
        self.logger.info(f"Configuration loaded: {config_file}")

    def log_security_event(self, event: str, details: str = ""):
        message = f"Security event: {event}"
        if details:
            message += f" - {details}"
        self.logger.warning(message)


audit_logger = AuditLogger()
