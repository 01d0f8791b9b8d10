"""
Entry point for the Directory Sync service.

Wires configuration, logging, the directory source, the registry store and
the reconciliation engine together and drives passes either once or from
the scheduler.
"""

import sys
import json
import logging
import argparse
from datetime import timedelta
from typing import Dict, Any, Optional

from directory_sync.clock import Clock, RealClock
from directory_sync.config import load_config, ConfigurationError
from directory_sync.engine import ReconciliationEngine, pass_failed, STATUS_FAILED
from directory_sync.errors import RemoveLimitExceeded
from directory_sync.identity import IdentityMapper
from directory_sync.logging_setup import setup_logging, audit_logger
from directory_sync.notifications import (
    send_configuration_error,
    send_failure_notification,
    send_phase_failure,
    send_remove_limit_notification,
    send_success_summary,
    test_notification_config,
)
from directory_sync.registry import create_store
from directory_sync.registry.base import TargetStore
from directory_sync.scheduler import SyncScheduler
from directory_sync.sources import create_source
from directory_sync.sources.base import DirectorySource

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PASS_FAILED = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


class SyncApplication:
    """
    Directory to registry synchronization service.

    Source, store and clock can be injected; otherwise they are built from
    the configuration.
    """

    def __init__(self,
                 config_path: Optional[str] = None,
                 config: Optional[Dict[str, Any]] = None,
                 source: Optional[DirectorySource] = None,
                 store: Optional[TargetStore] = None,
                 clock: Optional[Clock] = None):
        self.config_path = config_path
        self.config = config
        self.source = source
        self.store = store
        self.clock = clock or RealClock()
        self.engine = None
        self.scheduler = None

    def load_configuration(self):
        """
        Load and validate configuration unless it was injected.

        Raises:
            ConfigurationError: If loading or validation fails
        """
        if self.config is None:
            self.config = load_config(self.config_path)
            audit_logger.log_configuration_access(self.config_path or 'default')

    def setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def build_engine(self) -> ReconciliationEngine:
        """
        Create the backends (unless injected) and the engine.

        Raises:
            ValueError: If credentials or backend settings are invalid
        """
        app_config = self.config.get('app', {})
        if self.source is None:
            self.source = create_source(self.config)
        if self.store is None:
            self.store = create_store(self.config, self.source.source_type, self.clock)

        self.engine = ReconciliationEngine(
            source=self.source,
            store=self.store,
            mapper=IdentityMapper.from_config(app_config),
            clock=self.clock,
            remove_limit=app_config.get('remove_limit', 0),
            ban_duration=app_config.get('ban_before_remove_duration') or timedelta(0),
        )
        return self.engine

    def sync_once(self) -> Dict[str, Any]:
        """Run one pass and send notifications for its outcome."""
        stats = self.engine.sync_once()
        self._notify(stats)
        return stats

    def _notify(self, stats: Dict[str, Any]):
        notifications_config = self.config.get('notifications', {})

        for phase in ('users', 'groups'):
            phase_stats = stats[phase]
            if phase_stats['status'] != STATUS_FAILED:
                continue
            if isinstance(phase_stats.get('exception'), RemoveLimitExceeded):
                send_remove_limit_notification(phase_stats['exception'], notifications_config)
            else:
                send_phase_failure(phase, phase_stats['error'], notifications_config)

        if not pass_failed(stats):
            send_success_summary(stats, notifications_config)

    def run(self, once: bool = False) -> int:
        """
        Run the service.

        Args:
            once: Run a single pass and exit instead of starting the scheduler

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.load_configuration()
            self.setup_logging()
            logger.info("Starting Directory Sync")

            self.build_engine()
            self.source.connect()

            if once:
                stats = self.sync_once()
                if pass_failed(stats):
                    logger.warning("Sync pass completed with failed phases")
                    return EXIT_PASS_FAILED
                return EXIT_OK

            self.scheduler = SyncScheduler(self.sync_once, self.config['app'].get('sync_interval'))
            self.scheduler.install_signal_handlers()
            self.scheduler.run()
            logger.info("Application stopped")
            return EXIT_OK

        except (ConfigurationError, ValueError) as e:
            logger.error(f"Configuration error: {e}")
            self._send_notification(send_configuration_error, str(e), self.config_path)
            return EXIT_CONFIGURATION_ERROR
        except (ConnectionError, OSError) as e:
            logger.error(f"Connection error: {e}")
            self._send_notification(send_failure_notification, "Connection Failed", str(e))
            return EXIT_CONNECTION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_notification(send_failure_notification, "Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _send_notification(self, sender, *args):
        """Send a startup failure e-mail when the notifications section is available."""
        if not self.config:
            return
        try:
            sender(*args, self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration and connectivity of both backends.

        Returns:
            Health status dictionary
        """
        health_status = {'status': 'healthy', 'checks': {}}

        try:
            self.load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self.build_engine()
        except ValueError as e:
            health_status['checks']['backends'] = {
                'status': 'fail',
                'message': f'Backend setup failed: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            with self.source:
                pass
            health_status['checks']['source'] = {
                'status': 'pass',
                'message': f'{self.source.source_type} source reachable'
            }
        except Exception as e:
            health_status['checks']['source'] = {
                'status': 'fail',
                'message': f'Source connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            if not self.store.check_connection():
                raise ConnectionError('registry root not found')
            health_status['checks']['registry'] = {
                'status': 'pass',
                'message': 'Registry reachable'
            }
        except Exception as e:
            health_status['checks']['registry'] = {
                'status': 'fail',
                'message': f'Registry connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            health_status['checks']['notifications'] = {
                'status': 'pass',
                'message': 'Email notification configuration valid'
            }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        if self.source:
            self.source.close()
        if self.store:
            self.store.close()


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Directory Sync: reconcile directory users and groups into YTsaurus')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--once', action='store_true',
                        help='Run a single sync pass and exit')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    app = SyncApplication(config_path=args.config)

    if args.health_check:
        health_status = app.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            app.load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)
        if test_notification_config(app.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(app.run(once=args.once))


if __name__ == "__main__":
    main()
