"""
Command line entry point for Group Sync.

Loads the settings, connects to both directories, runs one reconciliation pass
and reports the outcome through the log, the exit code and optional e-mail.
"""

import sys
import logging
from typing import Mapping, Optional, Sequence

from group_sync.config import ConfigurationError, SideSettings, SyncSettings, build_parser, ConfigLoader
from group_sync.engine import ReconciliationEngine
from group_sync.gateways.base import (
    DirectoryGateway,
    GatewayAuthenticationError,
    GatewayConnectionError,
)
from group_sync.gateways.credentials import build_credential
from group_sync.gateways.graph import GraphGateway
from group_sync.gateways.ldap import LDAPGateway
from group_sync.logging_setup import setup_logging
from group_sync.notifications import send_failure_notification, send_run_summary
from group_sync.report import RunReport

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_RUN_ERRORS = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


def build_gateway(side: SideSettings) -> DirectoryGateway:
    """Create the gateway for one directory from its settings."""
    if side.directory_type == 'ldap':
        return LDAPGateway(side.name, side.ldap, user_field_name=side.user_field_name)
    return GraphGateway(side.name, build_credential(side))


class SyncOrchestrator:
    """
    Runs a complete sync: configuration, connections, reconciliation and reporting.

    Args:
        argv: Command line arguments (without the program name)
        environ: Environment mapping, defaults to os.environ
    """

    def __init__(self, argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None):
        self.argv = argv
        self.environ = environ
        self.settings: Optional[SyncSettings] = None
        self.source: Optional[DirectoryGateway] = None
        self.destination: Optional[DirectoryGateway] = None
        self.engine: Optional[ReconciliationEngine] = None
        self.report: Optional[RunReport] = None

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        setup_logging()
        try:
            self._load_configuration()
            setup_logging(self.settings.logging, force=True)

            logger.info("Starting group sync")
            self.source = build_gateway(self.settings.source)
            self.destination = build_gateway(self.settings.destination)

            self.engine = ReconciliationEngine(self.source, self.destination, self.settings)
            self.report = self.engine.reconcile(self.settings.group_prefixes)

            self._log_summary()
            send_run_summary(self.report, self.settings.notifications)

            if self.report.has_errors:
                logger.warning("Sync completed with errors")
                return EXIT_RUN_ERRORS
            logger.info("FINISHED")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except (GatewayConnectionError, GatewayAuthenticationError) as e:
            logger.error(f"Directory connection error: {e}")
            self._log_aborted_run_summary()
            self._send_failure_notification("Directory Connection Failed", str(e))
            return EXIT_CONNECTION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._log_aborted_run_summary()
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        parser = build_parser()
        args = parser.parse_args(self.argv)
        values = {name: value for name, value in vars(args).items() if name != 'config'}
        loader = ConfigLoader(values, environ=self.environ, config_path=args.config)
        self.settings = loader.load()
        logger.debug(f"Effective options: {loader.describe()}")

    def _log_summary(self):
        for line in self.report.summary().splitlines():
            logger.info(line)
        if self.report.failed_tasks:
            logger.warning(f"Tasks aborted by errors: {self.report.failed_tasks}")

    def _log_aborted_run_summary(self):
        if self.report is None and self.engine is not None and self.engine.last_report is not None:
            self.report = self.engine.last_report
            self._log_summary()

    def _send_failure_notification(self, title: str, error_message: str):
        if self.settings is None:
            return
        send_failure_notification(title, error_message, self.settings.notifications, {
            'Group prefixes': self.settings.group_prefix,
            'Preview': self.settings.preview,
        })

    def _cleanup(self):
        for gateway in (self.source, self.destination):
            if gateway is not None:
                gateway.close()


def main(argv: Optional[Sequence[str]] = None):
    """Main entry point for the application."""
    sys.exit(SyncOrchestrator(argv).run())


if __name__ == '__main__':
    main()
