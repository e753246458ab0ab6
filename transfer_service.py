"""
Value-transfer collaborator.

The escrow engine never moves funds itself. Refunds and releases go through
a transfer client exposing one coroutine:

    await client.transfer(from_account, to_address, amount, idempotency_key)

which returns a ``TransferReceipt`` (status ``success`` or ``pending``) or
raises ``TransferFailed`` (definitive refusal) / ``TransferTimeout``
(outcome unknown). Retrying with the same idempotency key must never move
funds twice.

Two clients are provided:
    - HttpTransferClient: talks to a transfer provider's REST API
    - SimulatedTransferClient: in-process stand-in used when no provider is
      configured (development, demos and tests)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Any, List
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from escrow_errors import TransferFailed, TransferTimeout
from utils import mask_sensitive_data

logger = logging.getLogger(__name__)

# Constants
MAX_RETRIES = 3
RETRY_DELAY = 1


class TransferStatus(str, Enum):
    """Tri-state result reported by the transfer provider."""
    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class TransferReceipt:
    """Proof that a transfer was submitted or settled."""
    receipt: str
    status: TransferStatus
    amount: int
    to_address: str
    idempotency_key: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_settled(self) -> bool:
        return self.status == TransferStatus.SUCCESS


def _get_session_with_retry() -> requests.Session:
    """
    Create a requests session with automatic retry logic.

    Only idempotent failures are retried at the HTTP layer; every request
    carries an ``Idempotency-Key`` header so POST retries are safe.

    Returns:
        requests.Session: Configured session with retry adapter.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=MAX_RETRIES,
        backoff_factor=RETRY_DELAY,
        status_forcelist=[429, 502, 503, 504],
        allowed_methods=["GET", "POST"],
        raise_on_status=False
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


class HttpTransferClient:
    """
    Transfer client for a REST transfer provider.

    The provider is expected to accept ``POST {base_url}/transfers`` with a
    JSON body ``{from, to, amount, currency}`` and answer with
    ``{id, status}`` where status is ``success``, ``pending`` or ``failed``.

    Attributes:
        base_url: Provider API root
        api_key: Bearer token for the provider
        timeout: Per-request timeout in seconds
        currency: Currency code sent with each transfer
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30,
        currency: str = 'USD',
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.currency = currency
        self.session = session or _get_session_with_retry()

    async def transfer(
        self,
        from_account: str,
        to_address: str,
        amount: int,
        idempotency_key: str
    ) -> TransferReceipt:
        """
        Transfer ``amount`` from ``from_account`` to ``to_address``.

        Runs the blocking HTTP call in a worker thread.

        Raises:
            TransferFailed: If the provider refused the transfer
            TransferTimeout: If the outcome could not be determined
        """
        return await asyncio.to_thread(
            self._transfer_sync, from_account, to_address, amount, idempotency_key
        )

    def _transfer_sync(
        self,
        from_account: str,
        to_address: str,
        amount: int,
        idempotency_key: str
    ) -> TransferReceipt:
        if amount <= 0:
            raise TransferFailed(f"Transfer amount must be positive, got {amount}")

        headers = {
            'Content-Type': 'application/json',
            'Idempotency-Key': idempotency_key,
        }
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'

        payload = {
            'from': from_account,
            'to': to_address,
            'amount': amount,
            'currency': self.currency,
        }

        logger.info(
            f"Submitting transfer {idempotency_key}: {amount} {self.currency} "
            f"to {mask_sensitive_data(to_address)}"
        )

        try:
            response = self.session.post(
                f"{self.base_url}/transfers",
                json=payload,
                headers=headers,
                timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            # Includes ConnectTimeout: an earlier retried attempt may have reached the provider
            logger.error(f"Timeout during transfer {idempotency_key}: {e}")
            raise TransferTimeout(f"Transfer timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Connection error during transfer {idempotency_key}: {e}")
            raise TransferTimeout(f"Connection error: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Request error during transfer {idempotency_key}: {e}")
            raise TransferTimeout(f"Request failed: {e}") from e

        if response.status_code >= 500:
            logger.error(
                f"Transfer provider error {response.status_code} for {idempotency_key}: "
                f"{response.text[:200]}"
            )
            raise TransferTimeout(f"Transfer provider returned {response.status_code}")

        if response.status_code >= 400:
            logger.error(
                f"Transfer {idempotency_key} refused ({response.status_code}): "
                f"{response.text[:200]}"
            )
            raise TransferFailed(f"Transfer refused with status {response.status_code}")

        try:
            data: Dict[str, Any] = response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON from transfer provider for {idempotency_key}")
            raise TransferTimeout("Invalid response from transfer provider") from e

        try:
            status = TransferStatus(str(data.get('status', '')).lower())
        except ValueError as e:
            raise TransferTimeout(f"Unknown transfer status: {data.get('status')!r}") from e

        if status == TransferStatus.FAILED:
            reason = data.get('error') or data.get('message') or 'unknown reason'
            logger.error(f"Transfer {idempotency_key} failed: {reason}")
            raise TransferFailed(f"Transfer failed: {reason}")

        receipt = str(data.get('id') or data.get('receipt') or '')
        if not receipt:
            raise TransferTimeout("Transfer provider response missing receipt id")

        logger.info(f"Transfer {idempotency_key} {status.value}: receipt {receipt}")
        return TransferReceipt(
            receipt=receipt,
            status=status,
            amount=amount,
            to_address=to_address,
            idempotency_key=idempotency_key
        )


class SimulatedTransferClient:
    """
    In-process transfer client.

    Every transfer succeeds immediately with a ``simulated-<kind>-<ms>``
    receipt. Repeated calls with the same idempotency key return the
    original receipt without recording a second transfer.
    """

    def __init__(self):
        self.transfers: List[TransferReceipt] = []
        self._by_key: Dict[str, TransferReceipt] = {}

    async def transfer(
        self,
        from_account: str,
        to_address: str,
        amount: int,
        idempotency_key: str
    ) -> TransferReceipt:
        if idempotency_key in self._by_key:
            logger.info(f"Simulated transfer {idempotency_key} already processed")
            return self._by_key[idempotency_key]

        if amount <= 0:
            raise TransferFailed(f"Transfer amount must be positive, got {amount}")

        kind = idempotency_key.rsplit(':', 1)[-1]
        receipt = TransferReceipt(
            receipt=f"simulated-{kind}-{int(time.time() * 1000)}",
            status=TransferStatus.SUCCESS,
            amount=amount,
            to_address=to_address,
            idempotency_key=idempotency_key
        )
        self._by_key[idempotency_key] = receipt
        self.transfers.append(receipt)
        logger.info(f"Simulated transfer of {amount} to {to_address} ({idempotency_key})")
        return receipt


def create_transfer_client(config) -> Any:
    """
    Build the transfer client configured for this deployment.

    Args:
        config: Application configuration

    Returns:
        HttpTransferClient when TRANSFER_API_URL is set, otherwise a
        SimulatedTransferClient
    """
    if config.transfer_api_url:
        logger.info(f"Using transfer provider at {config.transfer_api_url}")
        return HttpTransferClient(
            config.transfer_api_url,
            api_key=config.transfer_api_key,
            timeout=config.transfer_timeout,
            currency=config.currency
        )
    logger.warning("TRANSFER_API_URL not set; using simulated transfers")
    return SimulatedTransferClient()
