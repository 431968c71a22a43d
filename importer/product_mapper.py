#!/usr/bin/env python3
"""
Product Mapper

Maps Rainforest collection products to Shopware 6 product payloads.
"""

import html
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

from logging_config import get_logger


MAX_TEXT_LENGTH = 255
ELLIPSIS = '...'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class ProductDataError(Exception):
    """Raised when a provider product cannot be mapped."""
    pass


class MappedProduct:
    """Shopware payload built for one provider product."""

    def __init__(self, product_number: str, payload: Dict[str, Any], image_urls: List[str] = None):
        self.product_number = product_number
        self.payload = payload
        self.image_urls = image_urls or []

    def __repr__(self):
        return f"MappedProduct({self.product_number!r}, images={len(self.image_urls)})"


def truncate_text(text: Optional[str], max_length: int = MAX_TEXT_LENGTH) -> Optional[str]:
    """Cut text longer than max_length to exactly max_length characters ending in '...'."""
    if text is None or len(text) <= max_length:
        return text
    return text[:max_length - len(ELLIPSIS)] + ELLIPSIS


def net_price(gross: float, tax_rate: float) -> float:
    """Net price for a gross price including tax_rate percent."""
    return gross / (1 + tax_rate / 100)


def availability_flags(availability_type: Optional[str], in_stock_quantity: int = 100) -> Tuple[int, bool]:
    """
    Returns:
        Tuple of (stock, active)
    """
    if availability_type == 'in_stock':
        return in_stock_quantity, True
    return 0, False


def format_release_date(raw: Optional[str]) -> Optional[str]:
    """Convert 'Month D, YYYY' to Shopware's date format."""
    if not raw:
        return None
    try:
        return datetime.strptime(raw.strip(), '%B %d, %Y').strftime(DATE_FORMAT)
    except ValueError:
        return None


def format_review_date(utc: Optional[str], now: datetime = None) -> str:
    """Convert an ISO timestamp to Shopware's date format, defaulting to now."""
    if utc:
        try:
            parsed = datetime.fromisoformat(utc.replace('Z', '+00:00'))
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed.strftime(DATE_FORMAT)
        except ValueError:
            pass
    return (now or datetime.now()).strftime(DATE_FORMAT)


def image_file_name(url: str) -> str:
    """File name of an image URL without its extension."""
    return PurePosixPath(unquote(urlparse(url).path)).stem


def collect_image_urls(product: Dict) -> List[str]:
    """Main image first, then the image list, de-duplicated by file name."""
    candidates = []
    main_image = (product.get('main_image') or {}).get('link')
    if main_image:
        candidates.append(main_image)

    for image in product.get('images') or []:
        if isinstance(image, dict) and image.get('link'):
            candidates.append(image['link'])

    seen = set()
    urls = []
    for url in candidates:
        name = image_file_name(url)
        if name in seen:
            continue
        seen.add(name)
        urls.append(url)
    return urls


def feature_bullets_html(bullets: List[str]) -> Optional[str]:
    if not bullets:
        return None
    items = ''.join(f"<li>{html.escape(str(bullet), quote=True)}</li>" for bullet in bullets)
    return f"<ul>{items}</ul>"


def drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    """Remove keys whose value is None."""
    return {key: value for key, value in data.items() if value is not None}


class ProductMapper:
    """Builds Shopware product payloads from provider products."""

    def __init__(self, context):
        """
        Args:
            context: ImportContext of the current run
        """
        self.config = context.config
        self.resolver = context.resolver
        self.units = context.units
        self.descriptions = context.descriptions
        self.logger = get_logger('mapper')
        self.prefix = self.config.custom_fields_prefix

    def map_product(self, product: Dict, collection: Dict) -> MappedProduct:
        """
        Map a provider product.

        Args:
            product: `result.product` object of a page entry
            collection: Webhook collection object (`id`, `name`)

        Returns:
            MappedProduct with the payload and the image URLs to upload

        Raises:
            ProductDataError: Required provider data is missing
        """
        asin = product.get('asin')
        if not asin:
            raise ProductDataError('Product ASIN is missing')

        title = product.get('title') or 'Unnamed Product'
        keywords = product.get('keywords') or ''

        mapped: Dict[str, Any] = {
            'productNumber': asin,
            'name': title,
            'ean': product.get('ean'),
        }

        generated = self.descriptions.generate(title, keywords)
        if generated:
            mapped['name'] = truncate_text(generated.get('new_title')) or title
            mapped['description'] = generated.get('product_description') or product.get('description') or ''
            mapped['metaDescription'] = truncate_text(generated.get('meta_description')) or None
        else:
            mapped['description'] = product.get('description') or ''

        mapped['releaseDate'] = format_release_date((product.get('first_available') or {}).get('raw'))
        mapped['keywords'] = keywords
        mapped['customSearchKeywords'] = product.get('keywords_list') or None

        mapped['manufacturerId'] = self.resolver.manufacturer_id(product.get('brand') or 'Unknown')

        tax_id, tax_rate = self.resolver.tax()
        mapped['taxId'] = tax_id

        mapped['customFields'] = self._custom_fields(product, mapped, generated is not None)

        if product.get('weight'):
            mapped['weight'] = self.units.weight(product['weight'])

        if product.get('dimensions'):
            dimensions = self.units.dimensions(product['dimensions']) or {}
            for key in ('length', 'width', 'height'):
                mapped[key] = dimensions.get(key)

        if collection.get('id'):
            mapped['categories'] = [{'id': self.resolver.category_id(collection['id'], collection.get('name'))}]

        gross = ((product.get('buybox_winner') or {}).get('price') or {}).get('value')
        if gross is not None:
            gross = float(gross)
            mapped['price'] = [{
                'currencyId': self.resolver.currency_id(self.config.currency_iso_code),
                'gross': gross,
                'net': net_price(gross, tax_rate),
                'linked': False,
            }]

        availability = ((product.get('buybox_winner') or {}).get('availability') or {}).get('type', 'out_of_stock')
        mapped['stock'], mapped['active'] = availability_flags(availability, self.config.in_stock_quantity)

        mapped['visibilities'] = [{
            'salesChannelId': self.resolver.sales_channel_id(),
            'visibility': self.config.product_visibility,
        }]

        if product.get('variants'):
            mapped['configuratorSettings'] = self.map_variants(product['variants']) or None

        if product.get('attributes'):
            mapped['properties'] = self.map_properties(product['attributes']) or None

        if product.get('top_reviews'):
            mapped['productReviews'] = self.map_reviews(product['top_reviews']) or None

        payload = drop_none(mapped)
        self.logger.debug(f"Mapped product data for ASIN {asin}: {payload}")

        return MappedProduct(asin, payload, collect_image_urls(product))

    def _custom_fields(self, product: Dict, mapped: Dict, generated: bool) -> Dict[str, Any]:
        prefix = self.prefix
        custom_fields = {
            f'{prefix}parentAsin': product.get('parent_asin'),
            f'{prefix}productLink': product.get('link'),
            f'{prefix}shippingWeight': product.get('shipping_weight'),
            f'{prefix}deliveryMessage': product.get('delivery_message'),
            f'{prefix}subTitle': (product.get('sub_title') or {}).get('text'),
            f'{prefix}ratingsTotal': product.get('ratings_total'),
            f'{prefix}reviewsTotal': product.get('reviews_total'),
            f'{prefix}isBundle': product.get('is_bundle'),
            f'{prefix}lastUpdate': datetime.now().astimezone().isoformat(),
            f'{prefix}features': feature_bullets_html(product.get('feature_bullets') or []),
            f'{prefix}imported': True,
            f'{prefix}aiEnriched': generated,
        }

        if generated and self.config.short_description_field:
            custom_fields[self.config.short_description_field] = mapped.get('metaDescription')

        return drop_none(custom_fields)

    def map_variants(self, variants: List[Dict]) -> List[Dict]:
        """Configurator settings, one per distinct property group/option pair."""
        settings = {}

        for variant in variants:
            for dimension in (variant or {}).get('dimensions') or []:
                group_name = (dimension or {}).get('name')
                option_name = (dimension or {}).get('value')
                if not group_name or not option_name:
                    continue

                group_id = self.resolver.property_group_id(group_name)
                option_id = self.resolver.property_option_id(group_id, option_name)

                key = f'{group_id}_{option_id}'
                if key not in settings:
                    settings[key] = {'optionId': option_id}

        return list(settings.values())

    def map_properties(self, attributes: List[Dict]) -> List[Dict]:
        """Property option references for the product's attribute list."""
        properties = {}

        for attribute in attributes:
            group_name = (attribute or {}).get('name')
            option_name = (attribute or {}).get('value')
            if not group_name or not option_name:
                continue

            group_id = self.resolver.property_group_id(group_name)
            option_id = self.resolver.property_option_id(group_id, option_name)
            properties.setdefault(f'{group_id}_{option_id}', {'id': option_id})

        return list(properties.values())

    def map_reviews(self, reviews: List[Dict]) -> List[Dict]:
        """Product reviews nested into the product payload."""
        prefix = self.prefix
        sales_channel_id = self.resolver.sales_channel_id()
        language_id = self.resolver.default_language_id()

        mapped_reviews = []
        for review in reviews:
            review = review or {}
            custom_fields = drop_none({
                f'{prefix}reviewId': review.get('id'),
                f'{prefix}verifiedPurchase': review.get('verified_purchase'),
                f'{prefix}helpfulVotes': review.get('helpful_votes'),
            })

            mapped_reviews.append({
                'title': review.get('title') or 'No Title',
                'content': review.get('body') or '',
                'points': review.get('rating') or 0,
                'customerName': (review.get('profile') or {}).get('name') or 'Anonymous',
                'createdAt': format_review_date((review.get('date') or {}).get('utc')),
                'status': True,
                'salesChannelId': sales_channel_id,
                'languageId': language_id,
                'customFields': custom_fields,
            })

        return mapped_reviews
