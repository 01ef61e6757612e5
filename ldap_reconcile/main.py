"""
Main orchestrator for LDAP Reconcile.

Loads configuration, connects to the directory, opens the local store and
runs the group and user reconciliations in order, reporting the outcome via
logs, notifications and the process exit code.
"""

import sys
import json
import logging
import argparse
import threading
from datetime import datetime
from typing import Dict, Any, List, Optional

from ldap_reconcile.config import load_config, build_sync_context
from ldap_reconcile.exceptions import ConfigurationError
from ldap_reconcile.ldap_client import LDAPClient, LDAPConnectionError
from ldap_reconcile.logging_setup import setup_logging
from ldap_reconcile.matcher import LocalRecordMatcher
from ldap_reconcile.page_source import DirectoryPageSource
from ldap_reconcile.reconciler import Reconciler, DEFAULT_MAX_ERRORS
from ldap_reconcile.stores import load_store
from ldap_reconcile.notifications import (
    send_failure_notification,
    send_partial_run_notification,
    send_directory_unavailable,
    send_run_summary,
    test_notification_config
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_CONFIGURATION = 2
EXIT_LDAP_CONNECTION = 3
EXIT_UNEXPECTED = 4

IMPORT_CHOICES = ('users', 'groups', 'all')


class ReconcileOrchestrator:
    """
    Runs the configured imports end to end.

    Groups are imported before users so that user memberships can resolve
    to local groups created in the same invocation.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        import_kind: str = 'all',
        restore_behavior: Optional[str] = None,
        selected_dns: Optional[List[str]] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            config_path: Path to configuration file
            import_kind: 'users', 'groups' or 'all'
            restore_behavior: Override of the configured restore behavior
            selected_dns: Import only these DNs
            cancel_event: Event that cancels the running import when set
        """
        self.config = None
        self.config_path = config_path
        self.import_kind = import_kind
        self.restore_behavior = restore_behavior
        self.selected_dns = selected_dns
        self.cancel_event = cancel_event or threading.Event()
        self.ldap_client = None
        self.store = None

        self.run_stats = {
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'runs': {}
        }

    def run(self) -> int:
        """
        Run the configured imports.

        Returns:
            Exit code (0 completed, 1 partial, 2 configuration, 3 LDAP connection, 4 unexpected)
        """
        try:
            self.run_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging'))
            logger.info("Starting LDAP Reconcile")

            self._connect_ldap()
            self.store = load_store(self.config['store'])

            partial = False
            for kind in self._kinds():
                result = self._run_kind(kind)
                self.run_stats['runs'][kind] = result.as_dict()
                if result.is_partial:
                    partial = True
                    self._send_partial_run_notification(result.as_dict())
                    break

            self.run_stats['end_time'] = datetime.now()
            self.run_stats['runtime_seconds'] = (
                self.run_stats['end_time'] - self.run_stats['start_time']
            ).total_seconds()
            self._log_run_summary()

            if partial:
                logger.warning("Import stopped before completion")
                return EXIT_PARTIAL

            self._send_success_notification()
            logger.info("Import completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._send_directory_unavailable(str(e))
            return EXIT_LDAP_CONNECTION
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Import Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def run_bulk(self, operation: str) -> int:
        """
        Disable or delete every local record owned by the configuration.

        Args:
            operation: 'disable' or 'delete'

        Returns:
            Exit code
        """
        try:
            self._load_configuration()
            setup_logging(self.config.get('logging'))
            self.store = load_store(self.config['store'])

            for kind in self._kinds():
                reconciler = self._create_reconciler(kind, page_source=None)
                if operation == 'disable':
                    reconciler.disable_records()
                else:
                    reconciler.delete_records()
            return EXIT_OK
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
            logger.debug("Configuration loaded successfully")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _kinds(self) -> List[str]:
        """Configured kinds to import, groups first."""
        wanted = ('groups', 'users') if self.import_kind == 'all' else (self.import_kind,)
        kinds = [kind for kind in wanted if self.config.get(kind)]
        if not kinds:
            raise ConfigurationError(f"Nothing to import: no '{self.import_kind}' section configured")
        return kinds

    def _connect_ldap(self):
        """Establish LDAP connection."""
        ldap_config = dict(self.config['ldap'])
        ldap_config['error_handling'] = self.config.get('error_handling', {})

        self.ldap_client = LDAPClient(ldap_config)
        try:
            self.ldap_client.connect()
        except LDAPConnectionError:
            self.ldap_client = None
            raise

    def _create_reconciler(self, kind: str, page_source) -> Reconciler:
        context = build_sync_context(self.config, kind, self.restore_behavior)
        max_errors = self.config.get('error_handling', {}).get('max_errors_per_run', DEFAULT_MAX_ERRORS)
        return Reconciler(
            context,
            page_source,
            LocalRecordMatcher(self.store),
            self.store,
            cancel_event=self.cancel_event,
            max_errors=max_errors
        )

    def _run_kind(self, kind: str):
        page_source = DirectoryPageSource(self.ldap_client, self.config['ldap'].get('size_limit', 0))
        reconciler = self._create_reconciler(kind, page_source)
        logger.info(f"Importing {kind} into {reconciler.context.table}")
        return reconciler.run(selected_dns=self.selected_dns)

    def _send_failure_notification(self, title: str, error_message: str):
        if not self.config:
            return
        send_failure_notification(title, error_message, self.config.get('notifications', {}))

    def _send_partial_run_notification(self, run_summary: Dict[str, Any]):
        send_partial_run_notification(run_summary, self.config.get('notifications', {}))

    def _send_directory_unavailable(self, error_message: str):
        retry_count = self.config.get('error_handling', {}).get('max_retries', 3)
        send_directory_unavailable(error_message, self.config.get('notifications', {}), retry_count)

    def _send_success_notification(self):
        send_run_summary(self.run_stats, self.config.get('notifications', {}))

    def _log_run_summary(self):
        """Log final import statistics."""
        runtime = self.run_stats['runtime_seconds']
        runtime_str = f"{runtime:.2f} seconds"
        if runtime > 60:
            runtime_str = f"{int(runtime // 60)}m {runtime % 60:.1f}s"

        logger.info("=== Import Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        for kind, run in self.run_stats['runs'].items():
            counters = run['counters']
            logger.info(f"--- {kind} ---")
            logger.info(f"  Status: {run['status']}")
            logger.info(f"  Pages fetched: {run['pages_fetched']}")
            logger.info(f"  Entries seen: {run['entries_seen']}")
            logger.info(f"  Added: {counters['added']} (groups: {counters['groups_added']})")
            logger.info(f"  Updated: {counters['updated']}")
            for outcome, count in run['outcomes'].items():
                if count:
                    logger.info(f"  {outcome}: {count}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of configuration, directory, store and notifications.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        def record(name: str, passed: bool, message: str):
            health_status['checks'][name] = {'status': 'pass' if passed else 'fail', 'message': message}
            if not passed:
                health_status['status'] = 'unhealthy'

        try:
            self._load_configuration()
            record('configuration', True, 'Configuration loaded successfully')
        except ConfigurationError as e:
            record('configuration', False, f'Configuration error: {e}')
            return health_status

        try:
            test_client = LDAPClient(self.config['ldap'])
            test_client.connect(max_retries=1, retry_wait=1)
            server_info = test_client.get_server_info()
            test_client.disconnect()
            record('ldap', True, 'LDAP connection successful')
            health_status['checks']['ldap']['server'] = server_info
        except LDAPConnectionError as e:
            record('ldap', False, f'LDAP connection failed: {e}')

        try:
            store = load_store(self.config['store'])
            try:
                reachable = store.test_connection()
            finally:
                store.close()
            record('store', reachable, 'Store reachable' if reachable else 'Store not reachable')
        except ConfigurationError as e:
            record('store', False, f'Store loading failed: {e}')

        processors = self.config.get('post_processors') or []
        record('post_processors', True, f'{len(processors)} post-processors loaded')

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            missing_fields = [f for f in ('smtp_server', 'email_from', 'email_to') if not notifications_config.get(f)]
            if missing_fields:
                record('notifications', False, f'Notification configuration invalid: missing {missing_fields}')
            else:
                record('notifications', True, 'Email notification configuration valid')
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
            self.ldap_client = None
        if self.store:
            self.store.close()
            self.store = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Reconcile LDAP users and groups into a local store')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--import', dest='import_kind', choices=IMPORT_CHOICES, default='all',
                        help='What to import (default: all, groups before users)')
    parser.add_argument('--restore-behavior', choices=('enable', 'undelete', 'both', 'nothing'),
                        help='Which flags to clear on existing records (overrides configuration)')
    parser.add_argument('--dn', action='append', dest='dns', metavar='DN',
                        help='Import only this DN (repeatable)')
    bulk = parser.add_mutually_exclusive_group()
    bulk.add_argument('--disable-records', action='store_true',
                      help='Disable all local records owned by the configuration')
    bulk.add_argument('--delete-records', action='store_true',
                      help='Flag all local records owned by the configuration as deleted')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of import')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    orchestrator = ReconcileOrchestrator(
        config_path=args.config,
        import_kind=args.import_kind,
        restore_behavior=args.restore_behavior,
        selected_dns=args.dns
    )

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)

        if test_notification_config(orchestrator.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    elif args.disable_records or args.delete_records:
        sys.exit(orchestrator.run_bulk('disable' if args.disable_records else 'delete'))

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
