#!/usr/bin/env python3
"""
CLI Tool for TiDB to warehouse replication

Replicates one TiDB table into Snowflake: a consistent snapshot followed
by continuous change capture through object storage.
"""

import argparse
import json
import signal
import sys
from typing import List, Optional

from .exceptions import ReplicationException
from .models.config import ReplicationConfig
from .models.schema import TableDefinition
from .models.state import RunMode
from .orchestrator import ReplicationOrchestrator
from .services.config_service import ConfigService
from .services.database_service import DatabaseService
from .services.ddl_translator import DDLTranslator
from .services.metrics_service import MetricsService
from .services.session import ReplicationSession
from .utils.logger import setup_logging, get_logger


class ReplicationCLI:
    """Command line entry points"""

    def __init__(self):
        self.logger = get_logger()
        self.config_service = ConfigService()
        self.orchestrator: Optional[ReplicationOrchestrator] = None

    def _setup_signal_handlers(self) -> None:
        """Stop the incremental loop on SIGINT/SIGTERM"""
        def signal_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            self.logger.info("Received signal, initiating graceful shutdown", signal=signal_name)
            if self.orchestrator is not None:
                self.orchestrator.request_shutdown()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def load_config(self, args: argparse.Namespace) -> ReplicationConfig:
        overrides = {
            'mode': getattr(args, 'mode', None),
            'sink_uri': getattr(args, 'sink_uri', None),
            'timezone': getattr(args, 'timezone', None),
        }
        return self.config_service.load_config(args.config, overrides)

    def run_replication(self, args: argparse.Namespace) -> None:
        config = self.load_config(args)

        metrics = None
        if config.monitoring.metrics_port:
            metrics = MetricsService()
            metrics.start_server(config.monitoring.metrics_port)

        self._setup_signal_handlers()
        try:
            with ReplicationSession(config) as session:
                self.orchestrator = ReplicationOrchestrator(config, session, metrics=metrics)
                self.orchestrator.run()
        except ReplicationException as e:
            if metrics is not None:
                metrics.record_error(type(e).__name__, 'orchestrator')
            raise
        self.logger.info("Replication finished", table=config.table)

    def test_connections(self, args: argparse.Namespace) -> None:
        config = self.load_config(args)
        database_service = DatabaseService()
        results = {
            'source': database_service.test_connection(config.source),
            'target': database_service.test_connection(config.target),
        }
        for name, ok in results.items():
            self.logger.info("Connection test", connection=name, ok=ok)
        if not all(results.values()):
            raise ReplicationException("Connection test failed")
        self.logger.info("All connections tested successfully")

    def render_ddl(self, args: argparse.Namespace) -> List[str]:
        """Print the DDL translating one schema file into the next"""
        previous = self._read_schema_file(args.previous)
        current = self._read_schema_file(args.current)
        translator = DDLTranslator.for_dialect(args.dialect)
        statements = translator.translate(list(previous.columns), current)
        for statement in statements:
            print(statement)
        return statements

    @staticmethod
    def _read_schema_file(path: str) -> TableDefinition:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return TableDefinition.from_dict(json.load(f))
        except (OSError, ValueError) as e:
            raise ReplicationException(f"Cannot read schema file {path}: {e}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Replicate a TiDB table into Snowflake')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    def add_logging_args(subparser):
        subparser.add_argument('--log-level', default='INFO', help='Logging level')
        subparser.add_argument('--log-format', default='json', choices=['json', 'console'], help='Logging format')
        subparser.add_argument('--log-file', default=None, help='Write logs to this file instead of stdout')

    run_parser = subparsers.add_parser('run', help='Run replication')
    run_parser.add_argument('config', help='Path to the configuration file')
    run_parser.add_argument('--mode', choices=[mode.value for mode in RunMode], help='Override the run mode')
    run_parser.add_argument('--sink-uri', help='Existing sink URI (incremental-only mode)')
    run_parser.add_argument('--timezone', help='Warehouse session timezone')
    add_logging_args(run_parser)

    test_parser = subparsers.add_parser('test', help='Test source and target connections')
    test_parser.add_argument('config', help='Path to the configuration file')
    add_logging_args(test_parser)

    ddl_parser = subparsers.add_parser('ddl', help='Render DDL between two change-capture schema files')
    ddl_parser.add_argument('previous', help='Schema file before the change')
    ddl_parser.add_argument('current', help='Schema file after the change')
    ddl_parser.add_argument('--dialect', default='snowflake', choices=['snowflake', 'redshift'],
                            help='Target warehouse dialect')
    add_logging_args(ddl_parser)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging(level=args.log_level, format_type=args.log_format, log_file=args.log_file)
    logger = get_logger()
    cli = ReplicationCLI()

    try:
        if args.command == 'run':
            cli.run_replication(args)
        elif args.command == 'test':
            cli.test_connections(args)
        elif args.command == 'ddl':
            cli.render_ddl(args)
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
        return 0
    except ReplicationException as e:
        logger.error("Replication error", error=str(e), error_type=type(e).__name__)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
