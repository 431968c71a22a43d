"""
Per-run import context.

Owns everything one processing run shares: HTTP clients, the Shopware token
cache, entity ID caches, enrichment services and the cancellation flag.
Rate limiters are passed in so they can outlive a single run and keep the
aggregate request rate per host within quota.
"""

import threading
from typing import Dict, Optional

import requests

from config import Config
from logging_config import get_logger
from shopware_client import ShopwareClient
from importer.ai_enrichment import CompletionClient, DescriptionGenerator, UnitStandardizer
from importer.entity_lookup import EntityIdCache, EntityResolver
from importer.http_client import RetryingHttpClient, create_session
from importer.rate_limiter import RateLimiter, build_rate_limiter


def build_rate_limiters(config: Config) -> Dict[str, RateLimiter]:
    """One limiter per external API, each scoped by host."""
    policy = config.rate_limit_policy
    return {
        'shopware': build_rate_limiter(policy, config.shopware_rate_limit, config.shopware_rate_window),
        'ai': build_rate_limiter(policy, config.ai_rate_limit, config.ai_rate_window),
        'provider': build_rate_limiter(policy, config.provider_rate_limit, config.provider_rate_window),
    }


class ImportContext:
    """State shared by the components of one import run."""

    def __init__(self, config: Config, session: requests.Session = None,
                 rate_limiters: Dict[str, RateLimiter] = None, sleep=None):
        """
        Args:
            config: Importer configuration
            session: HTTP session shared by all clients (a retrying session is created when omitted)
            rate_limiters: Limiters keyed 'shopware', 'ai' and 'provider'
            sleep: Replacement for backoff waits (tests)
        """
        self.config = config
        self.logger = get_logger('processor.context')
        self.cancel_event = threading.Event()
        self.session = session or create_session(config.connect_retries)
        self.rate_limiters = rate_limiters or build_rate_limiters(config)

        self.shopware_http = self._http_client('shopware', sleep)
        self.provider_http = self._http_client('provider', sleep)
        self.ai_http = self._http_client('ai', sleep)

        self.shopware = ShopwareClient(config, self.shopware_http)
        self.entity_cache = EntityIdCache()
        self.resolver = EntityResolver(self.shopware, config, self.entity_cache)

        self.units = UnitStandardizer(self._completion_client('openai'))
        self.descriptions = DescriptionGenerator(
            self._completion_client('anthropic'),
            language=config.description_language
        )

        if not self.units.enabled:
            self.logger.warning("OPENAI_API_KEY not set - weight and dimension standardisation disabled")
        if not self.descriptions.enabled:
            self.logger.warning("ANTHROPIC_API_KEY not set - description generation disabled")

    def _http_client(self, name: str, sleep) -> RetryingHttpClient:
        return RetryingHttpClient(
            session=self.session,
            rate_limiter=self.rate_limiters.get(name),
            max_retries=self.config.retry_max_attempts,
            base_delay=self.config.retry_base_delay,
            backoff_factor=self.config.retry_backoff_factor,
            timeout=(self.config.http_connect_timeout, self.config.http_read_timeout),
            cancel_event=self.cancel_event,
            sleep=sleep,
            name=name,
        )

    def _completion_client(self, provider: str) -> Optional[CompletionClient]:
        if provider == 'anthropic':
            if not self.config.anthropic_api_key:
                return None
            return CompletionClient(
                self.ai_http,
                api_key=self.config.anthropic_api_key,
                model=self.config.anthropic_model,
                base_url=self.config.anthropic_base_url,
                provider='anthropic',
                max_tokens=1024,
            )

        if not self.config.openai_api_key:
            return None
        return CompletionClient(
            self.ai_http,
            api_key=self.config.openai_api_key,
            model=self.config.openai_model,
            base_url=self.config.openai_base_url,
            provider='openai',
            max_tokens=150,
        )

    def cancel(self) -> None:
        """Stop scheduling products and abort pending requests of this run."""
        self.logger.warning("Import run cancelled")
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()
