"""Tests for mapping provider products to Shopware payloads."""

import json

import pytest

from importer.product_mapper import (
    ProductDataError,
    ProductMapper,
    availability_flags,
    collect_image_urls,
    format_release_date,
    format_review_date,
    image_file_name,
    net_price,
    truncate_text,
)

COLLECTION = {"id": "12F7E6D6", "name": "Garden Tools"}


def test_net_price_from_gross():
    assert net_price(100.0, 19.0) == pytest.approx(84.0336, abs=1e-4)
    assert net_price(0.0, 19.0) == 0.0


def test_truncate_text_to_exactly_max_length():
    truncated = truncate_text("x" * 300)

    assert len(truncated) == 255
    assert truncated.endswith("...")
    assert truncate_text("y" * 255) == "y" * 255
    assert truncate_text(None) is None


@pytest.mark.parametrize("availability, expected", [
    ("in_stock", (100, True)),
    ("out_of_stock", (0, False)),
    ("unknown", (0, False)),
    (None, (0, False)),
])
def test_availability_flags(availability, expected):
    assert availability_flags(availability) == expected


def test_release_and_review_dates():
    assert format_release_date("March 5, 2021") == "2021-03-05 00:00:00"
    assert format_release_date("sometime soon") is None
    assert format_review_date("2023-01-02T03:04:05Z") == "2023-01-02 03:04:05"


def test_images_deduplicated_by_file_name(sample_product):
    urls = collect_image_urls(sample_product)

    assert urls == [
        "https://m.media-amazon.com/images/I/widget-main.jpg",
        "https://m.media-amazon.com/images/I/widget-side.jpg",
    ]
    assert image_file_name(urls[1]) == "widget-side"


def test_map_product_core_fields(context, backend, sample_product):
    mapped = ProductMapper(context).map_product(sample_product, COLLECTION)
    payload = mapped.payload

    assert mapped.product_number == "B000TEST"
    assert payload["productNumber"] == "B000TEST"
    assert payload["name"] == "Acme Widget Pro"
    assert payload["description"] == "A sturdy widget."
    assert payload["releaseDate"] == "2021-03-05 00:00:00"
    assert payload["taxId"] == "tax-19"
    assert payload["stock"] == 100
    assert payload["active"] is True
    assert payload["visibilities"] == [{"salesChannelId": "sc-1", "visibility": 30}]

    price = payload["price"][0]
    assert price["currencyId"] == "cur-eur"
    assert price["gross"] == 100.0
    assert price["net"] == pytest.approx(84.0336, abs=1e-4)
    assert price["linked"] is False

    assert payload["manufacturerId"] == backend.creates("product-manufacturer")[0]["id"]
    assert payload["categories"] == [{"id": backend.creates("category")[0]["id"]}]


def test_absent_values_are_omitted(context, sample_product):
    payload = ProductMapper(context).map_product(sample_product, COLLECTION).payload

    assert "ean" not in payload
    assert "metaDescription" not in payload
    assert "weight" not in payload
    assert "parentAsin" not in payload["customFields"]


def test_custom_fields(context, sample_product):
    custom_fields = ProductMapper(context).map_product(sample_product, COLLECTION).payload["customFields"]

    assert custom_fields["productLink"] == "https://www.amazon.de/dp/B000TEST"
    assert custom_fields["ratingsTotal"] == 42
    assert custom_fields["imported"] is True
    assert custom_fields["aiEnriched"] is False
    assert custom_fields["features"] == "<ul><li>Sturdy</li><li>Light &amp; small</li></ul>"


def test_variants_deduplicated(context, backend, sample_product):
    payload = ProductMapper(context).map_product(sample_product, COLLECTION).payload

    options = backend.creates("property-group-option")
    option_ids = {option["name"]: option["id"] for option in options}
    assert payload["configuratorSettings"] == [
        {"optionId": option_ids["L"]},
        {"optionId": option_ids["M"]},
    ]
    assert payload["properties"] == [{"id": option_ids["Red"]}]


def test_review_defaults(context, sample_product):
    review = ProductMapper(context).map_product(sample_product, COLLECTION).payload["productReviews"][0]

    assert review["title"] == "No Title"
    assert review["customerName"] == "Anonymous"
    assert review["content"] == "Great"
    assert review["points"] == 5
    assert review["createdAt"] == "2023-01-02 03:04:05"
    assert review["status"] is True
    assert review["salesChannelId"] == "sc-1"
    assert review["languageId"] == "lang-1"
    assert review["customFields"] == {"reviewId": "R1"}


def test_out_of_stock_product(context, sample_product):
    sample_product["buybox_winner"]["availability"] = {"type": "out_of_stock"}

    payload = ProductMapper(context).map_product(sample_product, COLLECTION).payload

    assert payload["stock"] == 0
    assert payload["active"] is False


def test_missing_asin_rejected(context, sample_product):
    del sample_product["asin"]

    with pytest.raises(ProductDataError):
        ProductMapper(context).map_product(sample_product, COLLECTION)


def test_generated_descriptions_are_truncated(make_context, backend, sample_product):
    backend.ai_completions["anthropic"] = json.dumps({
        "new_title": "T" * 300,
        "product_description": "<p>Neue Beschreibung</p>",
        "meta_description": "M" * 400,
    })
    context = make_context(ANTHROPIC_API_KEY="test-key", SHORT_DESCRIPTION_CUSTOM_FIELD="shortDescription")

    payload = ProductMapper(context).map_product(sample_product, COLLECTION).payload

    assert len(payload["name"]) == 255
    assert payload["name"].endswith("...")
    assert payload["description"] == "<p>Neue Beschreibung</p>"
    assert len(payload["metaDescription"]) == 255
    assert payload["customFields"]["aiEnriched"] is True
    assert payload["customFields"]["shortDescription"] == payload["metaDescription"]


def test_weight_standardised_through_completion(make_context, backend, sample_product):
    sample_product["weight"] = "2.2 pounds"
    context = make_context(OPENAI_API_KEY="test-key")
    backend.ai_completions["openai"] = '```json\n{"weight": 1.0}\n```'

    payload = ProductMapper(context).map_product(sample_product, COLLECTION).payload

    assert payload["weight"] == 1.0
