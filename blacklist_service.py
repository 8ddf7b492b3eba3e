"""
Blacklist lookup port used by the risk scorer.

Two implementations:
    - StaticBlacklistService: sets loaded from configuration
    - HttpBlacklistService: a remote reputation service reached with
      requests, retried on transient network and server errors

Lookups raise BlacklistLookupError when they cannot answer; the risk
scorer treats that as "not blacklisted".
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

# Constants
MAX_RETRIES = 3
RETRY_BACKOFF = 0.5


class BlacklistLookupError(Exception):
    """Raised when the blacklist cannot be consulted."""
    pass


class BlacklistService(ABC):

    @abstractmethod
    async def is_ip_blacklisted(self, ip_address: str) -> bool:
        ...

    @abstractmethod
    async def is_payment_method_blacklisted(self, payment_method_id: str) -> bool:
        ...


class StaticBlacklistService(BlacklistService):
    """Blacklist held in memory, seeded from BLACKLISTED_IPS / BLACKLISTED_PAYMENT_METHODS."""

    def __init__(
        self,
        ips: Optional[Iterable[str]] = None,
        payment_methods: Optional[Iterable[str]] = None
    ):
        self.ips = set(ips or [])
        self.payment_methods = set(payment_methods or [])

    async def is_ip_blacklisted(self, ip_address: str) -> bool:
        return ip_address in self.ips

    async def is_payment_method_blacklisted(self, payment_method_id: str) -> bool:
        return payment_method_id in self.payment_methods


def _get_session_with_retry() -> requests.Session:
    """
    Create a requests session with automatic retry logic.

    Returns:
        requests.Session: Configured session with retry adapter.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=MAX_RETRIES,
        backoff_factor=RETRY_BACKOFF,
        status_forcelist=[408, 429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


class HttpBlacklistService(BlacklistService):
    """
    Remote blacklist.

    ``GET {base_url}/ip/{ip}`` and ``GET {base_url}/payment-method/{id}``
    are expected to answer ``{"blacklisted": true|false}``.
    """

    def __init__(self, base_url: str, timeout: int = 5, api_key: Optional[str] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.api_key = api_key
        self.session = _get_session_with_retry()

    async def is_ip_blacklisted(self, ip_address: str) -> bool:
        return await asyncio.to_thread(self._lookup, 'ip', ip_address)

    async def is_payment_method_blacklisted(self, payment_method_id: str) -> bool:
        return await asyncio.to_thread(self._lookup, 'payment-method', payment_method_id)

    def _lookup(self, kind: str, value: str) -> bool:
        url = f"{self.base_url}/{kind}/{quote(value, safe='')}"
        headers = {'Authorization': f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            response = self.session.get(url, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Blacklist lookup ({kind}) failed: {e}")
            raise BlacklistLookupError(f"Blacklist lookup failed: {e}") from e
        except ValueError as e:
            logger.error(f"Blacklist lookup ({kind}) returned invalid JSON: {e}")
            raise BlacklistLookupError(f"Invalid blacklist response: {e}") from e

        return bool(payload.get('blacklisted', False))
