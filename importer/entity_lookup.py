"""
Lookup and get-or-create of Shopware entities.

IDs are memoised per run in an EntityIdCache keyed by (entity type, natural
key). Creation is serialised per key inside one run, but nothing prevents two
concurrent runs from both creating an entity with the same natural key:
Shopware does not enforce uniqueness on names, so such duplicates are a known
limitation of the import.
"""

import threading
from typing import Callable, Dict, Hashable, List, Optional, Tuple

from config import Config
from logging_config import get_logger
from shopware_client import ShopwareClient, equals_filter, generate_id


class EntityNotFoundError(Exception):
    """Raised when a required entity does not exist and cannot be created."""


class EntityIdCache:
    """Run scoped mapping of (entity type, natural key) to platform ID."""

    def __init__(self):
        self._ids: Dict[Tuple[str, Hashable], object] = {}
        self._key_locks: Dict[Tuple[str, Hashable], threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, entity: str, key: Hashable):
        with self._guard:
            return self._ids.get((entity, key))

    def set(self, entity: str, key: Hashable, value) -> None:
        with self._guard:
            self._ids[(entity, key)] = value

    def lock_for(self, entity: str, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get((entity, key))
            if lock is None:
                lock = self._key_locks[(entity, key)] = threading.Lock()
            return lock

    def get_or_compute(self, entity: str, key: Hashable, compute: Callable[[], object]):
        """Return the cached value, computing it at most once per key."""
        value = self.get(entity, key)
        if value is not None:
            return value

        with self.lock_for(entity, key):
            value = self.get(entity, key)
            if value is None:
                value = compute()
                if value is not None:
                    self.set(entity, key, value)
            return value

    def __len__(self):
        with self._guard:
            return len(self._ids)


class EntityResolver:
    """Resolves the Shopware IDs a product payload refers to."""

    def __init__(self, client: ShopwareClient, config: Config, cache: EntityIdCache = None):
        self.client = client
        self.config = config
        self.cache = cache or EntityIdCache()
        self.logger = get_logger('lookup')

    def get_or_create(self, entity: str, key: Hashable, filters: List[Dict],
                      build_payload: Callable[[], Dict]) -> str:
        """
        Search an entity by natural key, creating it when absent.

        Args:
            entity: Entity name in URL form
            key: Natural key used for caching
            filters: Search filters identifying the entity
            build_payload: Returns the create payload (without ID)

        Returns:
            The entity ID
        """
        def resolve() -> str:
            entity_id = self.client.search_first_id(entity, filters)
            if entity_id:
                return entity_id

            payload = dict(build_payload())
            payload['id'] = generate_id()
            entity_id = self.client.create(entity, payload)
            self.logger.info(f"Created {entity} '{key}' with ID: {entity_id}")
            return entity_id

        return self.cache.get_or_compute(entity, key, resolve)

    def lookup(self, entity: str, key: Hashable, filters: List[Dict]) -> str:
        """
        Search an entity that must already exist.

        Raises:
            EntityNotFoundError: No entity matches the filters
        """
        def resolve() -> str:
            entity_id = self.client.search_first_id(entity, filters)
            if not entity_id:
                raise EntityNotFoundError(f"{entity} '{key}' not found")
            return entity_id

        return self.cache.get_or_compute(entity, key, resolve)

    def manufacturer_id(self, name: str) -> str:
        return self.get_or_create(
            'product-manufacturer', name,
            [equals_filter('name', name)],
            lambda: {'name': name}
        )

    def category_id(self, collection_id: str, collection_name: Optional[str] = None) -> str:
        """Category bound to a provider collection through its custom fields."""
        field = self.config.category_collection_field
        return self.get_or_create(
            'category', collection_id,
            [
                equals_filter(f'customFields.{field}', True),
                equals_filter(f'customFields.{field}_id', collection_id),
            ],
            lambda: {
                'name': collection_name or f'Collection {collection_id}',
                'active': True,
                'customFields': {field: True, f'{field}_id': collection_id},
            }
        )

    def currency_id(self, iso_code: str) -> str:
        return self.lookup('currency', iso_code, [equals_filter('isoCode', iso_code)])

    def sales_channel_id(self, name: str = None) -> str:
        name = name or self.config.sales_channel_name
        return self.lookup('sales-channel', name, [equals_filter('name', name)])

    def default_language_id(self) -> str:
        """Default language of the configured sales channel."""
        sales_channel_id = self.sales_channel_id()

        def resolve() -> str:
            data = self.client.get('sales-channel', sales_channel_id)
            language_id = data.get('languageId') or data.get('attributes', {}).get('languageId')
            if not language_id:
                raise EntityNotFoundError(f"Default language ID not found in sales channel {sales_channel_id}")
            return language_id

        return self.cache.get_or_compute('language', sales_channel_id, resolve)

    def tax(self, rate: float = None) -> Tuple[str, float]:
        """
        Tax entity for a rate, created when missing.

        Returns:
            Tuple of (tax ID, tax rate as stored in Shopware)
        """
        rate = float(self.config.default_tax_rate if rate is None else rate)

        def resolve():
            results = self.client.search(
                'tax', filters=[equals_filter('taxRate', rate)], includes=['id', 'taxRate'], limit=1
            )
            if results and results[0].get('id'):
                return results[0]['id'], float(results[0].get('taxRate', rate))

            tax_id = self.client.create('tax', {
                'id': generate_id(),
                'name': f'{rate:g}%',
                'taxRate': rate,
            })
            self.logger.info(f"Created tax rate {rate:g}% with ID: {tax_id}")
            return tax_id, rate

        return self.cache.get_or_compute('tax', rate, resolve)

    def media_folder_configuration_id(self) -> str:
        def resolve() -> str:
            results = self.client.search('media-folder-configuration', includes=['id'], limit=1)
            if not results:
                raise EntityNotFoundError("No media folder configuration found.")
            return results[0]['id']

        return self.cache.get_or_compute('media-folder-configuration', 'default', resolve)

    def media_folder_id(self, name: str = None) -> str:
        name = name or self.config.media_folder_name
        return self.get_or_create(
            'media-folder', name,
            [equals_filter('name', name)],
            lambda: {
                'name': name,
                'useParentConfiguration': True,
                'configurationId': self.media_folder_configuration_id(),
            }
        )

    def property_group_id(self, name: str) -> str:
        return self.get_or_create(
            'property-group', name,
            [equals_filter('name', name)],
            lambda: {'name': name}
        )

    def property_option_id(self, group_id: str, name: str) -> str:
        return self.get_or_create(
            'property-group-option', (group_id, name),
            [equals_filter('name', name), equals_filter('groupId', group_id)],
            lambda: {'groupId': group_id, 'name': name}
        )

    def media_id_by_filename(self, file_name: str) -> Optional[str]:
        """Existing media with this file name (without extension), if any."""
        cached = self.cache.get('media', file_name)
        if cached:
            return cached

        media_id = self.client.search_first_id('media', [equals_filter('fileName', file_name)])
        if media_id:
            self.cache.set('media', file_name, media_id)
        return media_id

    def remember_media(self, file_name: str, media_id: str) -> None:
        self.cache.set('media', file_name, media_id)

    def product_exists(self, product_number: str) -> bool:
        return self.client.search_total('product', [equals_filter('productNumber', product_number)]) > 0
