#!/usr/bin/env python3
"""
Shopware Collection Importer
Main application script for importing Rainforest collection results into Shopware 6.

Runs the webhook server, processes a stored webhook payload, or imports
result pages stored under the processing directory.
"""

import sys
import argparse
import json
import signal
from pathlib import Path
from datetime import datetime

# Add current directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from logging_config import setup_logging, get_logger
from config import get_config
from importer.collection_processor import CollectionProcessor, WebhookPayloadError
from importer.context import ImportContext
from importer.http_client import OperationCancelledError


class ImporterService:
    """Main importer service class."""

    def __init__(self):
        """Initialize the service."""
        self.logger = get_logger('main')

        # Load configuration
        try:
            self.config = get_config()
        except ValueError as e:
            self.logger.critical(f"Failed to load configuration: {e}")
            sys.exit(1)

        setup_logging(self.config)
        self.logger.info("Configuration loaded successfully")

        self.context = None

        # Setup signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully."""
        self.logger.info(f"Received signal {signum}. Initiating graceful shutdown...")
        if self.context is not None:
            self.context.cancel()

    def _new_processor(self) -> CollectionProcessor:
        self.context = ImportContext(self.config)
        return CollectionProcessor(self.context)

    def _report(self, stats: dict) -> None:
        self.logger.info("Processing completed!")
        self.logger.info(f"  Pages processed: {stats['pages_processed']}")
        self.logger.info(f"  Pages failed: {stats['pages_failed']}")
        self.logger.info(f"  Products created: {stats['products_created']}")
        self.logger.info(f"  Products skipped: {stats['products_skipped']}")
        self.logger.info(f"  Products failed: {stats['products_failed']}")

        if stats['failed_products']:
            self.logger.warning("Failed products:")
            for failed in stats['failed_products']:
                self.logger.warning(f"  - {failed['asin'] or 'Unknown'}: {failed['error']}")

    def health_check(self) -> bool:
        """
        Perform system health check.

        Returns:
            True if all systems are healthy
        """
        self.logger.info("Performing system health check...")

        config_dict = self.config.to_dict()
        self.logger.info(f"Configuration OK - Environment: {config_dict['environment']}")

        context = ImportContext(self.config)
        if not context.shopware.health_check():
            self.logger.error("Shopware API health check failed")
            return False
        self.logger.info("Shopware API OK")

        try:
            context.resolver.sales_channel_id()
            context.resolver.currency_id(self.config.currency_iso_code)
        except Exception as e:
            self.logger.error(f"Shopware data health check failed: {e}")
            return False
        self.logger.info(f"Sales channel '{self.config.sales_channel_name}' and currency "
                         f"{self.config.currency_iso_code} OK")

        self.logger.info("All systems healthy")
        return True

    def process_webhook_file(self, webhook_file: Path) -> bool:
        """
        Process a stored webhook payload.

        Returns:
            True if the payload was processed
        """
        self.logger.info("=" * 60)
        self.logger.info(f"Processing webhook file {webhook_file} at {datetime.now()}")
        self.logger.info("=" * 60)

        try:
            with open(webhook_file, 'r', encoding='utf-8') as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.logger.error(f"Could not read webhook file: {e}")
            return False

        try:
            stats = self._new_processor().process_webhook(payload)
        except WebhookPayloadError as e:
            self.logger.error(f"Invalid webhook payload: {e}")
            return False
        except OperationCancelledError:
            self.logger.warning("Processing cancelled")
            return False

        self._report(stats)
        return True

    def process_directory(self, processing_dir: Path) -> bool:
        """
        Import result pages stored under the processing directory.

        Returns:
            True if the directory was processed
        """
        self.logger.info("=" * 60)
        self.logger.info(f"Processing directory {processing_dir} at {datetime.now()}")
        self.logger.info("=" * 60)

        try:
            stats = self._new_processor().process_directory(processing_dir)
        except FileNotFoundError as e:
            self.logger.error(str(e))
            return False
        except OperationCancelledError:
            self.logger.warning("Processing cancelled")
            return False

        self._report(stats)
        return True

    def serve(self) -> None:
        """Run the webhook server until interrupted."""
        from webhook_server import serve

        # uvicorn installs its own signal handlers
        signal.signal(signal.SIGINT, signal.default_int_handler)
        signal.signal(signal.SIGTERM, signal.SIG_DFL)

        self.logger.info(f"Starting webhook server on {self.config.webhook_host}:{self.config.webhook_port}"
                         f"{self.config.webhook_path}")
        serve(self.config)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Shopware Collection Importer')
    parser.add_argument('--serve', action='store_true',
                        help='Run the webhook server')
    parser.add_argument('--webhook-file', type=Path,
                        help='Process a stored webhook payload (JSON file)')
    parser.add_argument('--process-dir', nargs='?', const='', default=None,
                        help='Import stored result pages (default: PROCESSING_DIR)')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check only')

    args = parser.parse_args()

    service = ImporterService()

    if args.health_check:
        success = service.health_check()
        sys.exit(0 if success else 1)

    if args.webhook_file:
        success = service.process_webhook_file(args.webhook_file)
        sys.exit(0 if success else 1)

    if args.process_dir is not None:
        processing_dir = Path(args.process_dir) if args.process_dir else service.config.processing_dir
        success = service.process_directory(processing_dir)
        sys.exit(0 if success else 1)

    if args.serve:
        service.serve()
        sys.exit(0)

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
