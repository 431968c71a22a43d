"""Pytest configuration and fixtures."""

import copy
import json
import threading
from typing import Any, Dict, List
from urllib.parse import urlparse

import pytest
import requests

from config import Config
from importer.context import ImportContext
from importer.rate_limiter import SlidingWindowRateLimiter

SHOPWARE_URL = "https://shop.test"
PAGE_HOST = "https://data.rainforest.test"


def make_response(status_code: int = 200, body: Any = None, url: str = "https://test.local/",
                  headers: Dict[str, str] = None) -> requests.Response:
    """Build a real requests.Response."""
    response = requests.Response()
    response.status_code = status_code
    response.url = url
    response.encoding = "utf-8"
    response.headers.update(headers or {})

    if body is None:
        response._content = b""
    elif isinstance(body, bytes):
        response._content = body
    elif isinstance(body, str):
        response._content = body.encode("utf-8")
    else:
        response._content = json.dumps(body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"

    return response


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


class SequenceSession:
    """Session answering with a fixed sequence of responses."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        response.url = url
        return response


def field_value(record: Dict, field: str):
    value = record
    for part in field.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class FakeBackend:
    """
    In-memory Shopware Admin API, provider page host and AI completion APIs.

    Used as the requests session of an ImportContext.
    """

    def __init__(self):
        self.store: Dict[str, List[Dict]] = {
            "currency": [{"id": "cur-eur", "isoCode": "EUR"}],
            "sales-channel": [{"id": "sc-1", "name": "Storefront", "languageId": "lang-1"}],
            "media-folder-configuration": [{"id": "mfc-1"}],
            "tax": [{"id": "tax-19", "taxRate": 19.0, "name": "19%"}],
        }
        self.pages: Dict[str, Any] = {}
        self.ai_completions: Dict[str, str] = {}
        self.requests: List[tuple] = []
        self.created: List[tuple] = []
        self.uploads: List[Dict] = []
        self.token_requests = 0
        self.access_token = "test-token"
        self.reject_credentials = False
        self._lock = threading.Lock()

    def add(self, entity: str, record: Dict) -> None:
        self.store.setdefault(entity, []).append(record)

    def creates(self, entity: str) -> List[Dict]:
        return [payload for name, payload in self.created if name == entity]

    def downloads(self) -> List[str]:
        return [url for method, url, _ in self.requests if url.startswith(PAGE_HOST)]

    def request(self, method, url, **kwargs):
        with self._lock:
            self.requests.append((method, url, copy.deepcopy(kwargs.get("json"))))
            status, body = self._route(method, url, kwargs)
        return make_response(status, body, url=url)

    def _route(self, method, url, kwargs):
        if url.startswith(PAGE_HOST):
            if url not in self.pages:
                return 404, {"error": "not found"}
            return 200, self.pages[url]

        if url.endswith("/chat/completions"):
            return 200, {"choices": [{"message": {"role": "assistant", "content": self.ai_completions["openai"]}}]}

        if url.endswith("/messages"):
            return 200, {"content": [{"type": "text", "text": self.ai_completions["anthropic"]}]}

        path = urlparse(url).path
        if not url.startswith(SHOPWARE_URL):
            return 404, {"error": f"unknown host for {url}"}

        if path == "/api/oauth/token":
            self.token_requests += 1
            if self.reject_credentials:
                return 401, {"errors": [{"code": "invalid_client"}]}
            return 200, {"token_type": "Bearer", "expires_in": 600, "access_token": self.access_token}

        if (kwargs.get("headers") or {}).get("Authorization") != f"Bearer {self.access_token}":
            return 401, {"errors": [{"status": "401"}]}

        if method == "POST" and path.startswith("/api/search/"):
            return 200, self._search(path[len("/api/search/"):], kwargs.get("json") or {})

        if method == "POST" and path.startswith("/api/_action/media/"):
            media_id = path.split("/")[4]
            file_name = (kwargs.get("params") or {}).get("fileName")
            self.uploads.append({"mediaId": media_id, "fileName": file_name, "url": kwargs["json"]["url"]})
            for media in self.store.get("media", []):
                if media["id"] == media_id:
                    media["fileName"] = file_name
            return 204, None

        parts = path.split("/")
        if method == "POST" and len(parts) == 3:
            entity = parts[2]
            payload = copy.deepcopy(kwargs.get("json") or {})
            self.created.append((entity, payload))
            self.add(entity, payload)
            return 204, None

        if method == "GET" and len(parts) == 4:
            for record in self.store.get(parts[2], []):
                if record.get("id") == parts[3]:
                    return 200, {"data": record}
            return 404, {"errors": [{"status": "404"}]}

        return 404, {"errors": [{"detail": f"No route for {method} {path}"}]}

    def _search(self, entity: str, body: Dict) -> Dict:
        matches = [
            record for record in self.store.get(entity, [])
            if all(field_value(record, f["field"]) == f["value"] for f in body.get("filter", []))
        ]
        limit = body.get("limit") or len(matches)
        return {"total": len(matches), "data": copy.deepcopy(matches[:limit])}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiters(clock: FakeClock) -> Dict[str, SlidingWindowRateLimiter]:
    """Limiters running on the fake clock."""
    return {
        "shopware": SlidingWindowRateLimiter(5, 1.0, clock=clock, sleep=clock.sleep),
        "ai": SlidingWindowRateLimiter(60, 60.0, clock=clock, sleep=clock.sleep),
        "provider": SlidingWindowRateLimiter(60, 60.0, clock=clock, sleep=clock.sleep),
    }


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def make_config(tmp_path):
    """Factory for configurations pointing at the fake backend."""
    def _make(**overrides) -> Config:
        values = {
            "SHOPWARE_API_URL": SHOPWARE_URL,
            "SHOPWARE_CLIENT_ID": "client-id",
            "SHOPWARE_CLIENT_SECRET": "client-secret",
            "SALES_CHANNEL_NAME": "Storefront",
            "PROJECT_PATH": str(tmp_path),
            "LOG_DIR": str(tmp_path / "logs"),
            "PROCESSING_DIR": str(tmp_path / "processing"),
            "OPENAI_API_KEY": "",
            "ANTHROPIC_API_KEY": "",
            "CUSTOM_FIELDS_PREFIX": "",
            "SHORT_DESCRIPTION_CUSTOM_FIELD": "",
            "IMPORT_MAX_WORKERS": "1",
            "WEBHOOK_PATH": "/webhook",
            "WEBHOOK_BACKGROUND": "false",
        }
        values.update(overrides)
        return Config(values)

    return _make


@pytest.fixture
def config(make_config) -> Config:
    return make_config()


@pytest.fixture
def make_context(make_config, backend, rate_limiters):
    """Factory for import contexts wired to the fake backend."""
    def _make(**overrides) -> ImportContext:
        return ImportContext(
            make_config(**overrides),
            session=backend,
            rate_limiters=rate_limiters,
            sleep=lambda seconds: None,
        )

    return _make


@pytest.fixture
def context(make_context) -> ImportContext:
    return make_context()


@pytest.fixture
def sample_product() -> Dict:
    """Provider product as found in `result.product` of a collection page."""
    return {
        "asin": "B000TEST",
        "title": "Acme Widget Pro",
        "brand": "Acme",
        "description": "A sturdy widget.",
        "keywords": "widget,acme,tool",
        "keywords_list": ["widget", "acme", "tool"],
        "link": "https://www.amazon.de/dp/B000TEST",
        "ratings_total": 42,
        "first_available": {"raw": "March 5, 2021"},
        "main_image": {"link": "https://m.media-amazon.com/images/I/widget-main.jpg"},
        "images": [
            {"link": "https://m.media-amazon.com/images/I/widget-main.jpg"},
            {"link": "https://m.media-amazon.com/images/I/widget-side.jpg"},
        ],
        "feature_bullets": ["Sturdy", "Light & small"],
        "buybox_winner": {
            "price": {"value": 100.0, "currency": "EUR"},
            "availability": {"type": "in_stock"},
        },
        "attributes": [{"name": "Color", "value": "Red"}],
        "variants": [
            {"asin": "B000TESTL", "dimensions": [{"name": "Size", "value": "L"}]},
            {"asin": "B000TESTL2", "dimensions": [{"name": "Size", "value": "L"}]},
            {"asin": "B000TESTM", "dimensions": [{"name": "Size", "value": "M"}]},
        ],
        "top_reviews": [
            {"id": "R1", "body": "Great", "rating": 5, "date": {"utc": "2023-01-02T03:04:05Z"}},
        ],
    }


def page_entry(product: Dict, success: bool = True) -> Dict:
    return {"success": success, "result": {"product": product}}


def webhook_payload(collection_id: str, pages: List[str], name: str = "Test Collection") -> Dict:
    return {
        "request_info": {"type": "collection_resultset_completed"},
        "collection": {"id": collection_id, "name": name},
        "result_set": {"download_links": {"json": {"pages": pages}}},
    }
