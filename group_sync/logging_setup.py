"""
Logging setup for Group Sync.

Logs go to the console and, when a log directory is configured, to a file
rotated at midnight and kept for a number of days. Secrets are scrubbed from
every record before it reaches a handler.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

LOG_FILE_NAME = 'group-sync.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials and tokens from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'secret', 'client_secret',
        'client_assertion', 'access_token', 'refresh_token', 'token', 'credential',
        'authorization'
    ]

    _ASSIGNMENT = [
        re.compile(rf'({keyword}\s*=\s*)[^\s,&}}\]]+', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _QUOTED = [
        re.compile(rf'([\'"]{keyword}[\'"]\s*:\s*[\'"])[^\'"]*([\'"])', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _BEARER = re.compile(r'(Bearer\s+)[A-Za-z0-9\-._~+/]+=*', re.IGNORECASE)

    def scrub(self, text: str) -> str:
        for pattern in self._ASSIGNMENT:
            text = pattern.sub(r'\1****', text)
        for pattern in self._QUOTED:
            text = pattern.sub(r'\1****\2', text)
        return self._BEARER.sub(r'\1****', text)

    def filter(self, record):
        if record.args:
            # Render once so values passed as arguments are scrubbed too
            record.msg = record.getMessage()
            record.args = None
        record.msg = self.scrub(str(record.msg))
        return True


class LoggingManager:
    """
    Manages logging configuration for the Group Sync application.

    Console output is always on; file output only with a log directory.
    """

    def __init__(self):
        self.configured = False
        self.log_dir: Optional[str] = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]] = None, force: bool = False) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging settings ('level', 'log_dir', 'retention_days')
            force: Reconfigure even if logging was already set up
        """
        if self.configured and not force:
            return

        config = config or {}
        log_level = getattr(logging, str(config.get('level') or 'INFO').upper(), logging.INFO)
        self.log_dir = config.get('log_dir')
        self.retention_days = int(config.get('retention_days') or 7)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.handlers.clear()

        sensitive_filter = SensitiveDataFilter()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        ))
        console_handler.addFilter(sensitive_filter)
        root_logger.addHandler(console_handler)

        if self.log_dir and self._ensure_log_directory():
            file_handler = logging.handlers.TimedRotatingFileHandler(
                filename=os.path.join(self.log_dir, LOG_FILE_NAME),
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            file_handler.suffix = '%Y-%m-%d'
            file_handler.setLevel(log_level)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(threadName)s %(name)s:%(lineno)d - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)
            self.cleanup_old_logs()

        self.configured = True
        logging.getLogger(__name__).debug(
            f"Logging configured: level={logging.getLevelName(log_level)}, dir={self.log_dir}, "
            f"retention={self.retention_days} days"
        )

    def _ensure_log_directory(self) -> bool:
        try:
            os.makedirs(self.log_dir, exist_ok=True)
            return True
        except OSError as e:
            logging.getLogger(__name__).warning(
                f"Could not create log directory {self.log_dir}, logging to console only: {e}"
            )
            self.log_dir = None
            return False

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))

    def cleanup_old_logs(self) -> int:
        """
        Remove rotated log files older than the retention period.

        Returns:
            Number of files removed
        """
        if not self.log_dir or self.retention_days <= 0:
            return 0

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        removed = 0
        for log_file in self.get_log_files():
            if log_file.endswith(LOG_FILE_NAME):
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
                    removed += 1
            except OSError as e:
                logging.getLogger(__name__).warning(f"Could not remove old log file {log_file}: {e}")
        return removed


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]] = None, force: bool = False) -> None:
    """Convenience function to set up logging."""
    _logging_manager.setup_logging(config, force=force)
