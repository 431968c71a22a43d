"""
Shopware Admin API Client.
Handles OAuth authentication, entity search/creation and media uploads.
"""

import uuid
from typing import Any, Dict, List, Optional

from config import Config
from logging_config import get_logger
from importer.http_client import APIRequestError, RetryingHttpClient, decode_response
from importer.token_cache import TokenCache


class ShopwareAPIError(APIRequestError):
    """Custom exception for Shopware API errors."""


def generate_id() -> str:
    """Generate a Shopware entity ID (UUID4 as 32 hex characters)."""
    return uuid.uuid4().hex


def equals_filter(field: str, value: Any) -> Dict[str, Any]:
    """Build an `equals` search filter."""
    return {'type': 'equals', 'field': field, 'value': value}


class ShopwareClient:
    """Client for the Shopware 6 Admin API."""

    TOKEN_SCOPE = 'shopware'

    def __init__(self, config: Config, http: RetryingHttpClient, token_cache: TokenCache = None):
        """
        Args:
            config: Importer configuration
            http: Rate limited client used for every Shopware request
            token_cache: Token cache; a private one is created when omitted
        """
        self.config = config
        self.http = http
        self.logger = get_logger('shopware')

        self.base_url = config.shopware_api_url
        self.token_cache = token_cache or TokenCache(
            self._fetch_token,
            safety_margin=config.token_safety_margin
        )

        self.headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    def _fetch_token(self, scope: str) -> Dict:
        """Exchange the integration credentials for an access token."""
        self.logger.info("Requesting Shopware access token")
        try:
            response = self.http.post(
                f"{self.base_url}/api/oauth/token",
                data={
                    'grant_type': 'client_credentials',
                    'client_id': self.config.shopware_client_id,
                    'client_secret': self.config.shopware_client_secret,
                },
                headers={'Accept': 'application/json'},
            )
        except APIRequestError as e:
            if e.status_code in (400, 401):
                raise ShopwareAPIError(
                    "Authentication failed. Check SHOPWARE_CLIENT_ID and SHOPWARE_CLIENT_SECRET.",
                    e.status_code,
                    e.response_data
                )
            raise

        return decode_response(response)

    def get_token(self) -> str:
        return self.token_cache.get_token(self.TOKEN_SCOPE)

    def _make_request(self, method: str, endpoint: str, params: Dict = None,
                      json_data: Any = None) -> Any:
        """
        Make an authenticated request to the Admin API.

        Args:
            method: HTTP method
            endpoint: API path (e.g. '/api/search/product')
            params: Query parameters
            json_data: JSON request body

        Returns:
            Decoded response body ({} for 204 responses)

        Raises:
            ShopwareAPIError: On API errors
        """
        url = f"{self.base_url}{endpoint}"

        token = self.get_token()
        try:
            return self._send(method, url, params, json_data, token)
        except ShopwareAPIError as e:
            if e.status_code != 401:
                raise

        # Token revoked or expired early: fetch a new one once
        self.logger.warning("Shopware rejected the access token, refreshing")
        self.token_cache.invalidate(self.TOKEN_SCOPE)
        return self._send(method, url, params, json_data, self.get_token())

    def _send(self, method: str, url: str, params: Dict, json_data: Any, token: str) -> Any:
        headers = dict(self.headers)
        headers['Authorization'] = f"Bearer {token}"

        try:
            response = self.http.request(method, url, params=params, json=json_data, headers=headers)
        except APIRequestError as e:
            raise ShopwareAPIError(e.message, e.status_code, e.response_data) from e

        return decode_response(response)

    def search(self, entity: str, filters: List[Dict] = None, includes: List[str] = None,
               limit: int = None) -> List[Dict]:
        """
        Search entities.

        Args:
            entity: Entity name in URL form (e.g. 'product-manufacturer')
            filters: Search filters
            includes: Fields returned for the entity
            limit: Maximum number of results

        Returns:
            List of matching records
        """
        body: Dict[str, Any] = {}
        if filters:
            body['filter'] = filters
        if includes:
            body['includes'] = {entity.replace('-', '_'): includes}
        if limit:
            body['limit'] = limit

        data = self._make_request('POST', f"/api/search/{entity}", json_data=body)
        return data.get('data', []) if isinstance(data, dict) else []

    def search_first_id(self, entity: str, filters: List[Dict]) -> Optional[str]:
        """Return the ID of the first entity matching the filters, or None."""
        results = self.search(entity, filters=filters, includes=['id'], limit=1)
        if results and results[0].get('id'):
            return results[0]['id']
        return None

    def search_total(self, entity: str, filters: List[Dict]) -> int:
        body = {'filter': filters, 'includes': {entity.replace('-', '_'): ['id']}, 'limit': 1}
        data = self._make_request('POST', f"/api/search/{entity}", json_data=body)
        if not isinstance(data, dict):
            return 0
        return int(data.get('total', len(data.get('data', []))) or 0)

    def create(self, entity: str, payload: Dict) -> str:
        """
        Create an entity with a caller supplied ID.

        Returns:
            The entity ID
        """
        payload = dict(payload)
        entity_id = payload.setdefault('id', generate_id())
        self._make_request('POST', f"/api/{entity}", json_data=payload)
        self.logger.debug(f"Created {entity} {entity_id}")
        return entity_id

    def get(self, entity: str, entity_id: str, params: Dict = None) -> Dict:
        """Read a single entity."""
        data = self._make_request('GET', f"/api/{entity}/{entity_id}", params=params)
        return data.get('data', {}) if isinstance(data, dict) else {}

    def upload_media_from_url(self, media_id: str, url: str, file_name: str) -> None:
        """Let Shopware download a file into an existing media entity."""
        self._make_request(
            'POST',
            f"/api/_action/media/{media_id}/upload",
            params={'fileName': file_name},
            json_data={'url': url}
        )

    def health_check(self) -> bool:
        """
        Check that the API is reachable and the credentials are accepted.

        Returns:
            True if API is accessible, False otherwise
        """
        try:
            self.search('currency', includes=['id'], limit=1)
            self.logger.info("Shopware API health check passed")
            return True
        except APIRequestError as e:
            self.logger.error(f"Shopware API health check failed: {e.message}")
            return False
        except Exception as e:
            self.logger.error(f"Unexpected error in health check: {str(e)}")
            return False
