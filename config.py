"""
Shopware Collection Importer Configuration Module

Handles environment variables and API configuration.
"""
import os
from pathlib import Path
from typing import Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Configuration class for the Shopware collection importer."""

    REQUIRED_VARIABLES = [
        'SHOPWARE_API_URL',
        'SHOPWARE_CLIENT_ID',
        'SHOPWARE_CLIENT_SECRET',
        'SALES_CHANNEL_NAME',
    ]

    TYPED_VARIABLES = {
        'DEFAULT_TAX_RATE': 'default_tax_rate',
        'PRODUCT_VISIBILITY': 'product_visibility',
        'IN_STOCK_QUANTITY': 'in_stock_quantity',
        'SHOPWARE_RATE_LIMIT': 'shopware_rate_limit',
        'SHOPWARE_RATE_WINDOW': 'shopware_rate_window',
        'AI_RATE_LIMIT': 'ai_rate_limit',
        'AI_RATE_WINDOW': 'ai_rate_window',
        'PROVIDER_RATE_LIMIT': 'provider_rate_limit',
        'PROVIDER_RATE_WINDOW': 'provider_rate_window',
        'RETRY_MAX_ATTEMPTS': 'retry_max_attempts',
        'RETRY_BASE_DELAY': 'retry_base_delay',
        'RETRY_BACKOFF_FACTOR': 'retry_backoff_factor',
        'HTTP_CONNECT_RETRIES': 'connect_retries',
        'HTTP_CONNECT_TIMEOUT': 'http_connect_timeout',
        'HTTP_READ_TIMEOUT': 'http_read_timeout',
        'TOKEN_SAFETY_MARGIN': 'token_safety_margin',
        'IMPORT_MAX_WORKERS': 'max_workers',
        'WEBHOOK_PORT': 'webhook_port',
    }

    POSITIVE_VARIABLES = (
        'SHOPWARE_RATE_LIMIT',
        'SHOPWARE_RATE_WINDOW',
        'AI_RATE_LIMIT',
        'AI_RATE_WINDOW',
        'PROVIDER_RATE_LIMIT',
        'PROVIDER_RATE_WINDOW',
        'RETRY_MAX_ATTEMPTS',
        'HTTP_CONNECT_TIMEOUT',
        'HTTP_READ_TIMEOUT',
    )

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        """
        Args:
            overrides: Values that take precedence over the environment
                (keys are environment variable names)
        """
        self._overrides = {k: str(v) for k, v in (overrides or {}).items()}
        self.validate_config()

    def _get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        if key in self._overrides:
            return self._overrides[key]
        return os.getenv(key, default)

    def _get_int(self, key: str, default: int) -> int:
        return int(self._get(key, str(default)))

    def _get_float(self, key: str, default: float) -> float:
        return float(self._get(key, str(default)))

    def _get_bool(self, key: str, default: bool) -> bool:
        return self._get(key, 'true' if default else 'false').lower() in ('1', 'true', 'yes')

    @property
    def environment(self):
        """Environment (development/production)."""
        return self._get('ENVIRONMENT', 'development')

    @property
    def project_path(self):
        """Project root path."""
        return Path(self._get('PROJECT_PATH', os.getcwd()))

    @property
    def log_dir(self):
        """Log directory path."""
        log_path = self._get('LOG_DIR', 'logs')
        log_dir = Path(log_path) if os.path.isabs(log_path) else self.project_path / log_path
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir

    @property
    def processing_dir(self):
        """Directory holding stored collection pages (processing/<collection_id>/*.json)."""
        processing_path = self._get('PROCESSING_DIR', 'processing')
        if os.path.isabs(processing_path):
            return Path(processing_path)
        return self.project_path / processing_path

    @property
    def log_level(self):
        """Log level."""
        return self._get('LOG_LEVEL', 'INFO')

    # Shopware Configuration
    @property
    def shopware_api_url(self):
        """Shopware base URL, without trailing slash."""
        return (self._get('SHOPWARE_API_URL') or '').rstrip('/')

    @property
    def shopware_client_id(self):
        """Shopware integration access key ID."""
        return self._get('SHOPWARE_CLIENT_ID')

    @property
    def shopware_client_secret(self):
        """Shopware integration secret access key."""
        return self._get('SHOPWARE_CLIENT_SECRET')

    @property
    def sales_channel_name(self):
        """Sales channel products are made visible in."""
        return self._get('SALES_CHANNEL_NAME')

    @property
    def custom_fields_prefix(self):
        """Prefix for product and review custom field keys."""
        return self._get('CUSTOM_FIELDS_PREFIX', '')

    @property
    def short_description_field(self):
        """Optional custom field receiving the generated meta description."""
        return self._get('SHORT_DESCRIPTION_CUSTOM_FIELD', '')

    @property
    def media_folder_name(self):
        """Media folder for uploaded product images."""
        return self._get('MEDIA_FOLDER_NAME', 'Default Media Folder')

    @property
    def category_collection_field(self):
        """Category custom field that stores the provider collection ID."""
        return self._get('CATEGORY_COLLECTION_FIELD', 'junu_category_collection')

    @property
    def currency_iso_code(self):
        """Currency of imported prices."""
        return self._get('CURRENCY_ISO_CODE', 'EUR')

    @property
    def default_tax_rate(self):
        """Tax rate used to look up the product tax entity."""
        return self._get_float('DEFAULT_TAX_RATE', 19.0)

    @property
    def product_visibility(self):
        """Sales channel visibility (30 = all)."""
        return self._get_int('PRODUCT_VISIBILITY', 30)

    @property
    def in_stock_quantity(self):
        """Stock assigned to products the provider reports as in stock."""
        return self._get_int('IN_STOCK_QUANTITY', 100)

    # AI Configuration
    @property
    def openai_api_key(self):
        """OpenAI API key (unit standardisation)."""
        return self._get('OPENAI_API_KEY')

    @property
    def openai_base_url(self):
        return self._get('OPENAI_BASE_URL', 'https://api.openai.com/v1').rstrip('/')

    @property
    def openai_model(self):
        return self._get('OPENAI_MODEL', 'gpt-4o-mini')

    @property
    def anthropic_api_key(self):
        """Anthropic API key (description generation)."""
        return self._get('ANTHROPIC_API_KEY')

    @property
    def anthropic_base_url(self):
        return self._get('ANTHROPIC_BASE_URL', 'https://api.anthropic.com/v1').rstrip('/')

    @property
    def anthropic_model(self):
        return self._get('ANTHROPIC_MODEL', 'claude-3-opus-20240229')

    @property
    def description_language(self):
        """Language the generated product texts are written in."""
        return self._get('DESCRIPTION_LANGUAGE', 'German')

    # Rate limiting / retry Configuration
    @property
    def rate_limit_policy(self):
        """Rate limiting policy: sliding_window or token_bucket."""
        return self._get('RATE_LIMIT_POLICY', 'sliding_window')

    @property
    def shopware_rate_limit(self):
        return self._get_int('SHOPWARE_RATE_LIMIT', 5)

    @property
    def shopware_rate_window(self):
        return self._get_float('SHOPWARE_RATE_WINDOW', 1.0)

    @property
    def ai_rate_limit(self):
        return self._get_int('AI_RATE_LIMIT', 60)

    @property
    def ai_rate_window(self):
        return self._get_float('AI_RATE_WINDOW', 60.0)

    @property
    def provider_rate_limit(self):
        return self._get_int('PROVIDER_RATE_LIMIT', 60)

    @property
    def provider_rate_window(self):
        return self._get_float('PROVIDER_RATE_WINDOW', 60.0)

    @property
    def retry_max_attempts(self):
        """Attempts made for a request that keeps answering HTTP 429."""
        return self._get_int('RETRY_MAX_ATTEMPTS', 5)

    @property
    def retry_base_delay(self):
        """First backoff delay in seconds."""
        return self._get_float('RETRY_BASE_DELAY', 0.5)

    @property
    def retry_backoff_factor(self):
        return self._get_float('RETRY_BACKOFF_FACTOR', 2.0)

    @property
    def connect_retries(self):
        """Transport-level retries for failed connections."""
        return self._get_int('HTTP_CONNECT_RETRIES', 2)

    @property
    def http_connect_timeout(self):
        return self._get_float('HTTP_CONNECT_TIMEOUT', 30.0)

    @property
    def http_read_timeout(self):
        return self._get_float('HTTP_READ_TIMEOUT', 60.0)

    @property
    def token_safety_margin(self):
        """Seconds before expiry at which an access token is renewed."""
        return self._get_int('TOKEN_SAFETY_MARGIN', 60)

    # Processing Configuration
    @property
    def max_workers(self):
        """Products mapped in parallel per page (1 = sequential)."""
        return max(1, self._get_int('IMPORT_MAX_WORKERS', 1))

    # Webhook Configuration
    @property
    def webhook_host(self):
        return self._get('WEBHOOK_HOST', '0.0.0.0')

    @property
    def webhook_port(self):
        return self._get_int('WEBHOOK_PORT', 8000)

    @property
    def webhook_path(self):
        return self._get('WEBHOOK_PATH', '/webhook')

    @property
    def webhook_background(self):
        """Answer the webhook immediately and process after the response."""
        return self._get_bool('WEBHOOK_BACKGROUND', False)

    def validate_config(self):
        """Validate that all required configuration is present and well formed."""
        missing = [key for key in self.REQUIRED_VARIABLES if not self._get(key)]

        if missing:
            raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

        if self.rate_limit_policy not in ('sliding_window', 'token_bucket'):
            raise ValueError(f"Unknown RATE_LIMIT_POLICY: {self.rate_limit_policy}")

        # Numeric settings are read lazily, so parse them all before any run starts
        for variable, attribute in self.TYPED_VARIABLES.items():
            try:
                value = getattr(self, attribute)
            except ValueError as e:
                raise ValueError(f"Invalid value for {variable}: {e}") from e

            if variable in self.POSITIVE_VARIABLES and value <= 0:
                raise ValueError(f"Invalid value for {variable}: must be greater than zero")

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary."""
        return {
            'environment': self.environment,
            'shopware_api_url': self.shopware_api_url,
            'sales_channel': self.sales_channel_name,
            'currency': self.currency_iso_code,
            'tax_rate': self.default_tax_rate,
            'rate_limit_policy': self.rate_limit_policy,
            'max_workers': self.max_workers,
            'openai_enabled': bool(self.openai_api_key),
            'anthropic_enabled': bool(self.anthropic_api_key),
            'log_level': self.log_level,
        }


# Global configuration instance
_config_instance = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_instance

    if _config_instance is None:
        _config_instance = Config()

    return _config_instance
