"""
Tests for the value-transfer clients.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests

from escrow_errors import TransferFailed, TransferTimeout
from transfer_service import (
    HttpTransferClient,
    SimulatedTransferClient,
    TransferStatus,
    create_transfer_client,
)


def response(status_code=200, data=None):
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.text = str(data)
    if isinstance(data, Exception):
        mock_response.json.side_effect = data
    else:
        mock_response.json.return_value = data
    return mock_response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(session):
    return HttpTransferClient(
        "https://transfers.example.com/v1/", api_key="sk-test", timeout=5, session=session
    )


class TestHttpTransferClient:

    async def test_successful_transfer(self, client, session):
        session.post.return_value = response(200, {"id": "tr_123", "status": "success"})

        receipt = await client.transfer("escrow-holding", "2002", 10000, "esc-1:release")

        assert receipt.receipt == "tr_123"
        assert receipt.status == TransferStatus.SUCCESS
        assert receipt.is_settled
        args, kwargs = session.post.call_args
        assert args[0] == "https://transfers.example.com/v1/transfers"
        assert kwargs["headers"]["Idempotency-Key"] == "esc-1:release"
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
        assert kwargs["json"] == {
            "from": "escrow-holding", "to": "2002", "amount": 10000, "currency": "USD"
        }
        assert kwargs["timeout"] == 5

    async def test_pending_transfer_is_accepted(self, client, session):
        session.post.return_value = response(202, {"id": "tr_9", "status": "pending"})

        receipt = await client.transfer("escrow-holding", "1001", 2000, "esc-1:refund")

        assert receipt.status == TransferStatus.PENDING
        assert not receipt.is_settled

    async def test_provider_refusal(self, client, session):
        session.post.return_value = response(422, {"error": "insufficient funds"})

        with pytest.raises(TransferFailed):
            await client.transfer("escrow-holding", "1001", 2000, "esc-1:refund")

    async def test_failed_status(self, client, session):
        session.post.return_value = response(200, {"id": "tr_1", "status": "failed", "error": "blocked"})

        with pytest.raises(TransferFailed, match="blocked"):
            await client.transfer("escrow-holding", "1001", 2000, "esc-1:refund")

    async def test_server_error_is_unknown_outcome(self, client, session):
        session.post.return_value = response(503, {"error": "maintenance"})

        with pytest.raises(TransferTimeout):
            await client.transfer("escrow-holding", "1001", 2000, "esc-1:refund")

    async def test_read_timeout(self, client, session):
        session.post.side_effect = requests.exceptions.ReadTimeout("read timed out")

        with pytest.raises(TransferTimeout):
            await client.transfer("escrow-holding", "1001", 2000, "esc-1:refund")

    async def test_connect_timeout_after_retries_is_unknown(self, client, session):
        # a read timeout retried into a connect timeout surfaces as ConnectTimeout
        session.post.side_effect = requests.exceptions.ConnectTimeout("connect timed out")

        with pytest.raises(TransferTimeout):
            await client.transfer("escrow-holding", "1001", 2000, "esc-1:refund")

    async def test_invalid_json(self, client, session):
        session.post.return_value = response(200, ValueError("not json"))

        with pytest.raises(TransferTimeout):
            await client.transfer("escrow-holding", "1001", 2000, "esc-1:refund")

    async def test_missing_receipt_id(self, client, session):
        session.post.return_value = response(200, {"status": "success"})

        with pytest.raises(TransferTimeout):
            await client.transfer("escrow-holding", "1001", 2000, "esc-1:refund")

    async def test_non_positive_amount(self, client, session):
        with pytest.raises(TransferFailed):
            await client.transfer("escrow-holding", "1001", 0, "esc-1:refund")

        session.post.assert_not_called()


class TestSimulatedTransferClient:

    async def test_transfer(self):
        client = SimulatedTransferClient()

        receipt = await client.transfer("escrow-holding", "1001", 2000, "esc-1:refund")

        assert receipt.receipt.startswith("simulated-refund-")
        assert receipt.status == TransferStatus.SUCCESS
        assert len(client.transfers) == 1

    async def test_same_key_moves_funds_once(self):
        client = SimulatedTransferClient()

        first = await client.transfer("escrow-holding", "2002", 10000, "esc-1:release")
        second = await client.transfer("escrow-holding", "2002", 10000, "esc-1:release")

        assert first is second
        assert len(client.transfers) == 1


def test_factory_uses_simulation_without_provider():
    config = SimpleNamespace(transfer_api_url=None)

    assert isinstance(create_transfer_client(config), SimulatedTransferClient)


def test_factory_builds_http_client():
    config = SimpleNamespace(
        transfer_api_url="https://transfers.example.com",
        transfer_api_key="sk",
        transfer_timeout=10,
        currency="KES"
    )

    client = create_transfer_client(config)

    assert isinstance(client, HttpTransferClient)
    assert client.currency == "KES"
