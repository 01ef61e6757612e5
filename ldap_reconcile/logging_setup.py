"""
Logging setup for LDAP Reconcile.

Provides file logging with daily rotation and retention, optional console
output, scrubbing of credentials from log messages, and an audit logger
recording every local record the reconciler creates, updates or rejects.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional

LOG_FILE_NAME = 'reconcile.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials and directory password attributes from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'userPassword', 'unicodePwd',
        'token', 'secret', 'credential', 'pwd', 'authorization', 'api_key',
        'access_token', 'refresh_token', 'truststore_password'
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        self._patterns = []
        for keyword in self.SENSITIVE_KEYWORDS:
            # key=value
            self._patterns.append((re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'))
            # "key": "value" and 'key': 'value'
            self._patterns.append((re.compile(rf'(["\']{keyword}["\']\s*:\s*["\'])[^"\']*(["\'])', re.IGNORECASE),
                                   r'\1****\2'))
            # "key": value
            self._patterns.append((re.compile(rf'(["\']{keyword}["\']\s*:\s*)([^"\',}}\s]+)', re.IGNORECASE),
                                   r'\1****'))
        self._patterns.append((re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', re.IGNORECASE),
                               r'\1****'))

    def scrub(self, message: str) -> str:
        for pattern, replacement in self._patterns:
            message = pattern.sub(replacement, message)
        return message

    def filter(self, record):
        """Scrub sensitive values, rendering lazy %-style arguments first."""
        if record.args:
            try:
                record.msg = record.getMessage()
                record.args = None
            except (TypeError, ValueError):
                pass
        record.msg = self.scrub(str(record.msg))
        return True


class LoggingManager:
    """
    Manages logging configuration for LDAP Reconcile.

    Configures the root logger once per process; later calls are no-ops.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: The ``logging`` configuration section
        """
        if self.configured:
            return

        logging_config = config or {}
        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = int(logging_config.get('retention_days', 7))
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'WARNING')).upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )
        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def _ensure_log_directory(self) -> None:
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create the file handler for the rotation setting.

        Args:
            rotation: 'daily', 'midnight' or 'none'
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if str(rotation).lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
                    print(f"Removed old log file: {log_file}")
            except (OSError, ValueError) as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))

    def get_log_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the current logging setup.

        Returns:
            Dictionary with directory, retention, file count and total size
        """
        log_files = self.get_log_files()
        total_size = 0
        for log_file in log_files:
            try:
                total_size += os.path.getsize(log_file)
            except OSError:
                continue

        return {
            'configured': self.configured,
            'log_directory': self.log_dir,
            'retention_days': self.retention_days,
            'log_files_count': len(log_files),
            'total_size_bytes': total_size,
            'total_size_mb': round(total_size / (1024 * 1024), 2)
        }


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """Set up process-wide logging from the ``logging`` configuration section."""
    _logging_manager.setup_logging(config)


class AuditLogger:
    """Audit trail of local record changes, written to the ``audit`` logger."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_record_created(self, table: str, uid: int, dn: str):
        self.logger.info(f"Record created: table={table} uid={uid} dn={dn}")

    def log_record_updated(self, table: str, uid: int, dn: str, changed: bool):
        status = "CHANGED" if changed else "UNCHANGED"
        self.logger.info(f"Record updated {status}: table={table} uid={uid} dn={dn}")

    def log_record_rejected(self, table: str, dn: str, reason: str):
        self.logger.info(f"Record rejected: table={table} dn={dn} reason={reason}")

    def log_bulk_operation(self, operation: str, table: str, configuration_id: str, count: int):
        self.logger.warning(f"Bulk {operation}: table={table} configuration={configuration_id} records={count}")

    def log_configuration_access(self, config_file: str):
        self.logger.info(f"Configuration loaded: {config_file}")


audit_logger = AuditLogger()
