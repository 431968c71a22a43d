#!/usr/bin/env python3
"""
Collection Processing Module for the Shopware collection importer.

This module handles the main workflow:
1. Validate the collection webhook payload
2. Download each result page (or read stored page files)
3. Map every successful product to a Shopware payload
4. Create products with their media in Shopware

A failing page or product is logged and skipped; only an invalid webhook
payload aborts a run.
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

from logging_config import get_logger, log_exception, log_product_processing, log_system_event
from importer.http_client import APIRequestError, OperationCancelledError
from importer.product_mapper import ProductDataError, ProductMapper
from importer.product_writer import ProductWriter


class WebhookPayloadError(Exception):
    """Raised when a webhook payload lacks the fields needed to process it."""
    pass


def parse_webhook_payload(data: Any) -> Tuple[Dict, List[str]]:
    """
    Extract the collection and page URLs from a collection webhook.

    Returns:
        Tuple of (collection dict, list of page URLs)

    Raises:
        WebhookPayloadError: Missing collection ID or download links
    """
    if not isinstance(data, dict):
        raise WebhookPayloadError('Webhook payload must be a JSON object')

    collection = data.get('collection')
    if not isinstance(collection, dict) or not collection.get('id'):
        raise WebhookPayloadError('Collection ID is missing in webhook payload')

    pages = (((data.get('result_set') or {}).get('download_links') or {}).get('json') or {}).get('pages')
    if not isinstance(pages, list) or not pages:
        raise WebhookPayloadError('No download links found in webhook payload')

    page_urls = [page for page in pages if isinstance(page, str) and page]
    if not page_urls:
        raise WebhookPayloadError('No download links found in webhook payload')

    return {'id': str(collection['id']), 'name': collection.get('name')}, page_urls


def iter_page_products(page_data: Any) -> Iterable[Dict]:
    """Yield `result.product` of every successful page entry."""
    if not isinstance(page_data, list):
        raise ProductDataError('Result page is not a JSON array')

    for entry in page_data:
        if not isinstance(entry, dict) or not entry.get('success'):
            continue
        product = (entry.get('result') or {}).get('product')
        if product:
            yield product


class CollectionProcessor:
    """Main collection import workflow coordinator."""

    def __init__(self, context):
        """
        Args:
            context: ImportContext of this run
        """
        self.context = context
        self.config = context.config
        self.logger = get_logger('processor')

        self.mapper = ProductMapper(context)
        self.writer = ProductWriter(context)

        self._stats_lock = threading.Lock()
        self.stats = {
            'session_start': datetime.now(),
            'pages_processed': 0,
            'pages_failed': 0,
            'products_created': 0,
            'products_skipped': 0,
            'products_failed': 0,
            'failed_products': [],
        }

    def _count(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self.stats[key] += amount

    def process_product(self, product: Dict, collection: Dict) -> str:
        """
        Import a single provider product.

        Returns:
            'created', 'skipped' or 'failed'
        """
        asin = product.get('asin')

        try:
            self.logger.info(f"Processing product with ASIN: {asin or 'Unknown'}")

            if not asin:
                raise ProductDataError('Product ASIN is missing')

            if self.context.resolver.product_exists(asin):
                log_product_processing(self.logger, asin, 'Lookup', 'Skipped', 'already exists in Shopware')
                self._count('products_skipped')
                return 'skipped'

            mapped = self.mapper.map_product(product, collection)
            product_id = self.writer.create_product(mapped)

            log_product_processing(self.logger, asin, 'Create', 'Created', f"ID {product_id}")
            self._count('products_created')
            return 'created'

        except OperationCancelledError:
            raise
        except Exception as e:
            if isinstance(e, APIRequestError) and e.response_data:
                log_exception(self.logger, 'Product Processing', e,
                              {'asin': asin, 'response': e.response_data})
            else:
                log_exception(self.logger, 'Product Processing', e, {'asin': asin})
            with self._stats_lock:
                self.stats['products_failed'] += 1
                self.stats['failed_products'].append({'asin': asin, 'error': str(e)})
            return 'failed'

    def process_products(self, products: Iterable[Dict], collection: Dict) -> None:
        """Import products sequentially or on a thread pool (IMPORT_MAX_WORKERS)."""
        workers = self.config.max_workers

        if workers <= 1:
            for product in products:
                if self.context.cancelled:
                    raise OperationCancelledError('Import cancelled')
                self.process_product(product, collection)
            return

        def run(product: Dict) -> str:
            if self.context.cancelled:
                return 'cancelled'
            return self.process_product(product, collection)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='import') as executor:
            results = list(executor.map(run, products))

        if self.context.cancelled or 'cancelled' in results:
            raise OperationCancelledError('Import cancelled')

    def process_page_data(self, page_data: Any, collection: Dict) -> None:
        """Import all products of one result page."""
        # A category that cannot be resolved fails the whole page
        self.context.resolver.category_id(collection['id'], collection.get('name'))
        self.process_products(list(iter_page_products(page_data)), collection)

    def process_page_url(self, page_url: str, collection: Dict) -> bool:
        """
        Download and import one result page.

        Returns:
            True if the page was processed
        """
        try:
            self.logger.info(f"Processing JSON page: {page_url}")
            page_data = self.context.provider_http.get_json(page_url)
            self.process_page_data(page_data, collection)
            self._count('pages_processed')
            return True

        except OperationCancelledError:
            raise
        except APIRequestError as e:
            log_exception(self.logger, 'Page Download', e, {'page': page_url})
        except Exception as e:
            log_exception(self.logger, 'Page Processing', e, {'page': page_url})

        self._count('pages_failed')
        return False

    def process_webhook(self, payload: Dict) -> Dict:
        """
        Process a collection webhook payload.

        Raises:
            WebhookPayloadError: The payload cannot be processed

        Returns:
            Processing statistics
        """
        collection, page_urls = parse_webhook_payload(payload)

        log_system_event(self.logger, 'Collection Received', {
            'collection_id': collection['id'],
            'collection_name': collection.get('name'),
            'pages': len(page_urls),
        })

        for page_url in page_urls:
            self.process_page_url(page_url, collection)

        return self.get_stats()

    def process_page_file(self, file_path: Path, collection: Dict) -> bool:
        """Import one stored page file."""
        try:
            self.logger.info(f"Processing JSON file: {file_path}")
            with open(file_path, 'r', encoding='utf-8') as f:
                page_data = json.load(f)
            self.process_page_data(page_data, collection)
            self._count('pages_processed')
            return True

        except OperationCancelledError:
            raise
        except Exception as e:
            log_exception(self.logger, 'Page Processing', e, {'file': str(file_path)})

        self._count('pages_failed')
        return False

    def process_directory(self, processing_dir: Path) -> Dict:
        """
        Import stored pages laid out as <processing_dir>/<collection_id>/*.json.

        Each page file is removed after processing and emptied collection
        directories are removed.

        Returns:
            Processing statistics
        """
        processing_dir = Path(processing_dir)
        if not processing_dir.is_dir():
            raise FileNotFoundError(f"Processing directory does not exist: {processing_dir}")

        for collection_dir in sorted(p for p in processing_dir.iterdir() if p.is_dir()):
            collection = {'id': collection_dir.name, 'name': None}
            json_files = sorted(collection_dir.glob('*.json'))

            if not json_files:
                self.logger.info(f"No JSON files found in collection directory: {collection_dir}")
                continue

            for json_file in json_files:
                self.process_page_file(json_file, collection)
                json_file.unlink()

            if not any(collection_dir.iterdir()):
                collection_dir.rmdir()

        return self.get_stats()

    def get_stats(self) -> Dict:
        """Get processing statistics."""
        with self._stats_lock:
            attempted = self.stats['products_created'] + self.stats['products_failed']
            return {
                'session_start': self.stats['session_start'].isoformat(),
                'pages_processed': self.stats['pages_processed'],
                'pages_failed': self.stats['pages_failed'],
                'products_created': self.stats['products_created'],
                'products_skipped': self.stats['products_skipped'],
                'products_failed': self.stats['products_failed'],
                'failed_products': list(self.stats['failed_products']),
                'success_rate': (self.stats['products_created'] / max(1, attempted)) * 100,
            }
