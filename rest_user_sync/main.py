"""
Application runner for REST User Sync.

This module wires configuration, logging, the remote directory client, the
local identity store and the sync engine together, and exposes the
``rest-user-sync`` command line entry point.
"""

import sys
import time
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from rest_user_sync.config import load_config, build_settings, ConfigurationError
from rest_user_sync.directory.base import DirectoryAPIError
from rest_user_sync.directory.http_client import HTTPDirectoryClient
from rest_user_sync.fetcher import PageFetcher, parse_records
from rest_user_sync.logging_setup import setup_logging, get_logging_stats, audit_logger
from rest_user_sync.models import SyncMode, SyncResult
from rest_user_sync.notifications import (
    PostProvisionNotifier,
    format_runtime,
    send_failure_notification,
    send_success_summary,
)
from rest_user_sync.orchestrator import SyncOrchestrator
from rest_user_sync.projector import IdentityProjector
from rest_user_sync.scheduler import SyncScheduler
from rest_user_sync.store import create_store, PersistenceError

logger = logging.getLogger(__name__)


def parse_since(value: str) -> datetime:
    """
    Parse an ISO 8601 timestamp; a trailing ``Z`` and naive values mean UTC.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SyncApplication:
    """
    Runs REST User Sync from a configuration file.

    Builds the sync engine from configuration, runs it once or on a
    schedule, and maps the outcome to a process exit code.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the application.

        Args:
            config_path: Path to configuration file
        """
        self.config_path = config_path
        self.config = None
        self.directory = None
        self.store = None

    def run(self, since: Optional[datetime] = None, schedule: bool = False) -> int:
        """
        Run a synchronization.

        Args:
            since: Only synchronize users updated since this timestamp
            schedule: Run periodically instead of once

        Returns:
            Exit code (0 clean, 1 failed records or empty fetch,
            2 configuration error, 4 unexpected error)
        """
        try:
            self._load_configuration()
            setup_logging(self.config.get('logging', {}))
            audit_logger.log_configuration_access(self.config_path or 'config.yaml')

            logger.info("Starting REST User Sync")
            orchestrator = self.build_orchestrator()

            if schedule:
                scheduler = SyncScheduler(orchestrator, self.config.get('scheduler', {}),
                                          on_result=self._report)
                scheduler.start()
                return 0

            mode = 'updated' if since else 'full'
            start_time = time.time()
            result = orchestrator.sync_since(since) if since else orchestrator.sync_full()
            self._report(mode, result, time.time() - start_time)

            if orchestrator.last_fetch_count == 0:
                logger.warning("Sync completed without fetching any user")
                return 1
            if result.failed > 0:
                logger.warning(f"Sync completed with {result.failed} failed users")
                return 1
            logger.info("Sync completed successfully")
            return 0

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 2
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return 4
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

    def build_orchestrator(self) -> SyncOrchestrator:
        """Build the sync engine from the loaded configuration."""
        settings = build_settings(self.config)

        self.directory = HTTPDirectoryClient(settings['url'], self.config.get('directory', {}),
                                             proxy_enabled=settings['proxy_enabled'])
        self.store = create_store(self.config.get('store', {}))

        notifier = None
        if settings['reset_actions']:
            notifier = PostProvisionNotifier(settings, self.config.get('notifications', {}), self.store.realm)

        return SyncOrchestrator(
            settings,
            PageFetcher(self.directory),
            self.store,
            projector=IdentityProjector(settings),
            notifier=notifier,
        )

    def _report(self, mode: str, result: SyncResult, runtime_seconds: float):
        """Log the run summary and send the configured notifications."""
        logger.info("=== Sync Summary ===")
        logger.info(f"Mode: {mode}")
        logger.info(f"Total runtime: {format_runtime(runtime_seconds)}")
        logger.info(f"Users added: {result.added}")
        logger.info(f"Users updated: {result.updated}")
        logger.info(f"Users removed: {result.removed}")
        logger.info(f"Users failed: {result.failed}")

        notifications_config = self.config.get('notifications', {})
        if result.failed > 0:
            self._send_failure_notification(
                "Users Failed Sync",
                f"{result.failed} users failed sync",
                {'Mode': mode, 'Result': str(result)}
            )
        else:
            try:
                send_success_summary(result, runtime_seconds, mode, notifications_config)
            except Exception as e:
                logger.error(f"Failed to send success notification: {e}")

    def _send_failure_notification(self, title: str, message: str,
                                   additional_info: Optional[Dict[str, Any]] = None):
        """Send email notification for failures."""
        if not self.config:
            return
        try:
            send_failure_notification(title, message, self.config.get('notifications', {}), additional_info)
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
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

        settings = build_settings(self.config)

        # One single-record page is enough to prove connectivity
        try:
            with HTTPDirectoryClient(settings['url'], self.config.get('directory', {}),
                                     proxy_enabled=settings['proxy_enabled']) as client:
                envelope = client.fetch_page(SyncMode.full(), 1, 1)
                parse_records(envelope.body)
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': 'Remote directory reachable'
            }
        except DirectoryAPIError as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Remote directory request failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            create_store(self.config.get('store', {}))
            health_status['checks']['store'] = {
                'status': 'pass',
                'message': f"Identity store '{self.config['store'].get('type')}' available"
            }
        except (PersistenceError, OSError) as e:
            health_status['checks']['store'] = {
                'status': 'fail',
                'message': f'Identity store unavailable: {e}'
            }
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Notification configuration invalid: missing {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        health_status['logging'] = get_logging_stats()
        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.directory:
            self.directory.close()
            self.directory = None


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='REST User Sync Application')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--since', help='Only sync users updated since this ISO 8601 timestamp')
    parser.add_argument('--schedule', action='store_true',
                        help='Run full and changed-users syncs periodically')
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
            app._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(2)

        from rest_user_sync.notifications import test_notification_config
        if test_notification_config(app.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        since = None
        if args.since:
            try:
                since = parse_since(args.since)
            except ValueError as e:
                parser.error(f"Invalid --since timestamp: {e}")
        sys.exit(app.run(since=since, schedule=args.schedule))


if __name__ == "__main__":
    main()
