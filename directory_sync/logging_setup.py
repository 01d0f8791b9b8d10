"""
Logging setup for Directory Sync.

Configures the root logger with a rotating log file and console output, both
passed through :class:`SensitiveDataFilter`, and exposes ``audit_logger`` for
the trail of registry mutations and directory binds.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any, List, Pattern, Tuple

LOG_FILE_NAME = 'directory-sync.log'
FILE_FORMAT = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                                datefmt='%Y-%m-%d %H:%M:%S')
CONSOLE_FORMAT = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', datefmt='%H:%M:%S')

SENSITIVE_KEYS = (
    'password', 'bind_password', 'smtp_password', 'token', 'secret', 'credential',
    'pwd', 'authorization', 'api_key', 'client_secret', 'access_token', 'refresh_token',
)


def _build_scrub_rules() -> List[Tuple[Pattern, str]]:
    rules = []
    for key in SENSITIVE_KEYS:
        # key=value
        rules.append((re.compile(rf'({key}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'))
        # "key": "value" or 'key': 'value'
        rules.append((re.compile(rf'(["\']{key}["\']\s*:\s*["\'])[^"\']*(["\'])', re.IGNORECASE), r'\1****\2'))
        # "key": value
        rules.append((re.compile(rf'(["\']{key}["\']\s*:\s*)[^"\',}}\s]+(\s*[,}}\]])', re.IGNORECASE), r'\1****\2'))
    # Authorization: <scheme> <credentials>
    rules.append((re.compile(r'''(Authorization['"]?\s*[:=]\s*['"]?(?:Bearer|Basic|OAuth)\s+)[^\s,}\]'"]+''',
                             re.IGNORECASE), r'\1****'))
    return rules


class SensitiveDataFilter(logging.Filter):
    """Masks passwords, secrets and tokens in log messages."""

    RULES = _build_scrub_rules()

    def filter(self, record):
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = self.scrub(message)
        record.args = None
        return True

    @classmethod
    def scrub(cls, message: str) -> str:
        for pattern, replacement in cls.RULES:
            message = pattern.sub(replacement, message)
        return message


class LoggingManager:
    """
    Owns the root logger configuration.

    Log files rotate at midnight (``rotation: daily`` or ``midnight``) and
    rotated files older than ``retention_days`` are deleted at start-up.
    Any other ``rotation`` value writes a single, never rotated file. An empty
    ``log_dir`` disables file logging.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Configure the root logger once. Later calls are ignored.

        Args:
            config: ``logging`` configuration section
        """
        if self.configured:
            return

        config = config or {}
        level_name = str(config.get('level', 'INFO')).upper()
        console_level_name = str(config.get('console_level', 'INFO')).upper()
        console_enabled = config.get('console_output', True)
        self.log_dir = config.get('log_dir', 'logs')
        self.retention_days = config.get('retention_days', 7)

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, level_name, logging.INFO))
        root_logger.handlers.clear()

        handlers = []
        if self.log_dir:
            self._ensure_log_directory()
            handlers.append((self._create_file_handler(config.get('rotation', 'daily')), level_name, FILE_FORMAT))
        if console_enabled:
            handlers.append((logging.StreamHandler(), console_level_name, CONSOLE_FORMAT))

        scrubber = SensitiveDataFilter()
        for handler, handler_level, formatter in handlers:
            handler.setLevel(getattr(logging, handler_level, logging.INFO))
            handler.setFormatter(formatter)
            handler.addFilter(scrubber)
            root_logger.addHandler(handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={level_name}, dir={self.log_dir or '-'}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def _ensure_log_directory(self) -> None:
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            # Logging isn't configured yet
            print(f"Warning: can't create log directory {self.log_dir} ({e}), logging to current directory")
            self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        if str(rotation).lower() not in ('daily', 'midnight'):
            return logging.FileHandler(log_file, encoding='utf-8')

        handler = logging.handlers.TimedRotatingFileHandler(
            filename=log_file,
            when='midnight',
            backupCount=self.retention_days,
            encoding='utf-8',
        )
        handler.suffix = '%Y-%m-%d'
        return handler

    def _cleanup_old_logs(self) -> None:
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff = datetime.now() - timedelta(days=self.retention_days)
        rotated = [path for path in self.get_log_files() if not path.endswith(LOG_FILE_NAME)]
        for path in rotated:
            try:
                if datetime.fromtimestamp(os.path.getmtime(path)) < cutoff:
                    os.remove(path)
                    print(f"Removed expired log file: {path}")
            except OSError as e:
                print(f"Warning: can't remove expired log file {path}: {e}")

    def get_log_files(self) -> List[str]:
        """Current and rotated log files, sorted by name."""
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure process-wide logging from the ``logging`` section."""
    _logging_manager.setup_logging(config)


class AuditLogger:
    """Audit trail of registry mutations and credential use."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    @staticmethod
    def _status(success: bool) -> str:
        return "SUCCESS" if success else "FAILURE"

    def log_mutation(self, operation: str, target: str, success: bool, dry_run: bool = False):
        status = "DRY-RUN" if dry_run else self._status(success)
        self.logger.info(f"Registry mutation {status}: {operation} target={target}")

    def log_authentication_attempt(self, system: str, principal: str, success: bool):
        self.logger.info(f"Authentication {self._status(success)}: {system} principal={principal}")

    def log_configuration_access(self, config_file: str):
        self.logger.info(f"Configuration loaded: {config_file}")


audit_logger = AuditLogger()
