"""
Bearer token cache for OAuth2 client-credentials APIs.
"""

import threading
import time
from typing import Callable, Dict, Optional

from logging_config import get_logger


class TokenFetchError(Exception):
    """Raised when the token endpoint does not return a usable token."""


class CachedToken:
    """Access token with its renewal deadline."""

    def __init__(self, access_token: str, expires_at: float):
        self.access_token = access_token
        self.expires_at = expires_at

    def is_valid(self, now: float) -> bool:
        return bool(self.access_token) and now < self.expires_at


class TokenCache:
    """
    Caches one access token per credential scope.

    A token is reused until its expiry minus `safety_margin` seconds. Refreshes
    are single-flight: concurrent callers of the same scope wait for the one
    in-progress fetch instead of requesting their own token.
    """

    def __init__(self, fetch_token: Callable[[str], Dict], safety_margin: int = 60,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            fetch_token: Called with the scope, returns the token endpoint's JSON
                (`access_token`, `expires_in`)
            safety_margin: Seconds before expiry at which the token is renewed
            clock: Time source
        """
        self._fetch_token = fetch_token
        self.safety_margin = safety_margin
        self._clock = clock
        self._tokens: Dict[str, CachedToken] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.logger = get_logger('shopware.token')

    def _scope_lock(self, scope: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(scope)
            if lock is None:
                lock = self._locks[scope] = threading.Lock()
            return lock

    def get_token(self, scope: str = 'default') -> str:
        """
        Return a valid bearer token for the scope, fetching one when needed.

        Raises:
            TokenFetchError: The token endpoint answered without an access token
        """
        cached = self._tokens.get(scope)
        if cached and cached.is_valid(self._clock()):
            return cached.access_token

        with self._scope_lock(scope):
            # Another caller may have refreshed while we waited for the lock
            cached = self._tokens.get(scope)
            now = self._clock()
            if cached and cached.is_valid(now):
                return cached.access_token

            data = self._fetch_token(scope) or {}
            access_token = data.get('access_token')
            if not access_token:
                raise TokenFetchError(f"Invalid response from token endpoint for scope '{scope}'")

            expires_in = int(data.get('expires_in') or 0)
            self._tokens[scope] = CachedToken(access_token, now + expires_in - self.safety_margin)
            self.logger.debug(f"Obtained new access token for scope '{scope}' (expires in {expires_in}s)")

            return access_token

    def invalidate(self, scope: str = 'default') -> None:
        """Drop the cached token so the next call fetches a new one."""
        self._tokens.pop(scope, None)

    def peek(self, scope: str = 'default') -> Optional[CachedToken]:
        return self._tokens.get(scope)
