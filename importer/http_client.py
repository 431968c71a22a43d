"""
Rate limited HTTP client with exponential backoff on HTTP 429.

Every outbound call of the importer (Shopware, provider downloads, AI
completions) goes through a RetryingHttpClient so the per-host quota and the
backoff policy are applied in one place.
"""

import json
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from logging_config import get_logger, log_api_call
from importer.rate_limiter import OperationCancelledError, RateLimiter


class APIRequestError(Exception):
    """Raised when an outbound HTTP request fails."""

    def __init__(self, message: str, status_code: int = None, response_data: Any = None):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data
        super().__init__(self.message)


class RetryExhaustedError(APIRequestError):
    """Raised when a request still answers HTTP 429 after the last attempt."""

    def __init__(self, message: str, attempts: int, response_data: Any = None):
        self.attempts = attempts
        super().__init__(message, 429, response_data)


def decode_response(response: requests.Response) -> Any:
    """Decode a JSON body, falling back to the raw text."""
    if not response.content:
        return {}
    try:
        return response.json()
    except (json.JSONDecodeError, ValueError):
        return {"raw_response": response.text}


def create_session(connect_retries: int = 2) -> requests.Session:
    """
    Create a requests session that retries failed connections.

    Status based retries are left to RetryingHttpClient so that only HTTP 429
    is ever retried.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=connect_retries,
        connect=connect_retries,
        read=0,
        status=0,
        backoff_factor=0.5,
        allowed_methods=None,
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


class RetryingHttpClient:
    """HTTP client applying rate limiting and HTTP 429 backoff to every request."""

    def __init__(self, session: requests.Session = None, rate_limiter: RateLimiter = None,
                 max_retries: int = 5, base_delay: float = 0.5, backoff_factor: float = 2.0,
                 timeout: Tuple[float, float] = (30.0, 60.0),
                 cancel_event: threading.Event = None,
                 sleep: Callable[[float], None] = None,
                 name: str = 'http'):
        """
        Args:
            session: Session used to send requests
            rate_limiter: Limiter consulted before every attempt, scoped by host
            max_retries: Attempts made while the server answers HTTP 429
            base_delay: Seconds waited after the first HTTP 429
            backoff_factor: Multiplier applied to the delay after each HTTP 429
            timeout: (connect, read) timeout in seconds
            cancel_event: Event that aborts pending attempts and backoff waits
            sleep: Replacement for the backoff wait (tests)
            name: Logger suffix
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.session = session or create_session()
        self.rate_limiter = rate_limiter
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.backoff_factor = backoff_factor
        self.timeout = timeout
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self.logger = get_logger(f'http.{name}')

    def backoff_delay(self, retry_number: int) -> float:
        """Delay before retry `retry_number` (0 based)."""
        return self.base_delay * (self.backoff_factor ** retry_number)

    def _wait(self, delay: float) -> None:
        if self._sleep is not None:
            self._sleep(delay)
            return
        if self.cancel_event.wait(delay):
            raise OperationCancelledError("Request cancelled during backoff")

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelledError("Request cancelled")

    def execute(self, request_factory: Callable[[], requests.Response],
                max_retries: Optional[int] = None) -> requests.Response:
        """
        Run a request, retrying with exponential backoff while it answers HTTP 429.

        Args:
            request_factory: Callable sending the request and returning the response
            max_retries: Overrides the client's attempt ceiling

        Returns:
            The successful response

        Raises:
            RetryExhaustedError: All attempts answered HTTP 429
            APIRequestError: Any other HTTP error status, timeout or connection failure
        """
        attempts = max_retries if max_retries is not None else self.max_retries
        last_data = None

        for attempt in range(attempts):
            self._check_cancelled()

            try:
                response = request_factory()
            except requests.exceptions.Timeout as e:
                raise APIRequestError(f"Request timed out: {e}")
            except requests.exceptions.ConnectionError as e:
                raise APIRequestError(f"Connection error: {e}")
            except requests.exceptions.RequestException as e:
                raise APIRequestError(f"Request failed: {e}")

            if response.status_code == 429:
                last_data = decode_response(response)
                if attempt + 1 >= attempts:
                    break

                delay = self.backoff_delay(attempt)
                self.logger.info(
                    f"Rate limited by {response.url or 'server'}. "
                    f"Retrying after {delay * 1000:.0f}ms (attempt {attempt + 1}/{attempts})"
                )
                self._wait(delay)
                continue

            if response.status_code >= 400:
                response_data = decode_response(response)
                raise APIRequestError(
                    f"API request to {response.url} failed with status {response.status_code}: {response_data}",
                    response.status_code,
                    response_data
                )

            return response

        raise RetryExhaustedError(
            f"Max retries exceeded for API request ({attempts} attempts answered HTTP 429)",
            attempts,
            last_data
        )

    def request(self, method: str, url: str, scope: str = None,
                max_retries: Optional[int] = None, **kwargs) -> requests.Response:
        """
        Send a rate limited request with HTTP 429 backoff.

        Args:
            method: HTTP method
            url: Absolute URL
            scope: Rate limiter scope, defaults to the URL host
            max_retries: Overrides the client's attempt ceiling
            **kwargs: Passed to requests.Session.request

        Returns:
            The successful response
        """
        scope = scope or urlparse(url).netloc or 'default'
        kwargs.setdefault('timeout', self.timeout)

        def send() -> requests.Response:
            self._check_cancelled()
            if self.rate_limiter is not None:
                self.rate_limiter.acquire(scope, self.cancel_event)
            started = time.monotonic()
            try:
                response = self.session.request(method=method, url=url, **kwargs)
            finally:
                if self.rate_limiter is not None:
                    self.rate_limiter.release(scope)
            log_api_call(self.logger, method, url, response.status_code, time.monotonic() - started)
            return response

        return self.execute(send, max_retries=max_retries)

    def get(self, url: str, **kwargs) -> requests.Response:
        return self.request('GET', url, **kwargs)

    def post(self, url: str, **kwargs) -> requests.Response:
        return self.request('POST', url, **kwargs)

    def get_json(self, url: str, **kwargs) -> Any:
        """GET a URL and decode its JSON body, raising APIRequestError on invalid JSON."""
        response = self.get(url, **kwargs)
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise APIRequestError(f"Invalid JSON returned by {url}: {e}", response.status_code)

    def post_json(self, url: str, payload: Dict, headers: Dict = None, **kwargs) -> Any:
        response = self.post(url, json=payload, headers=headers, **kwargs)
        return decode_response(response)
