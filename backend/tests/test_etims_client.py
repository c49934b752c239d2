"""Tests for the eTIMS transport client.

Covers result classification (success, business rejection, transport
failure), retry with exponential backoff, and the tenant headers.
"""

import httpx
import pytest

from etims.core.exceptions import FiscalConfigurationError
from etims.services.etims.client import EtimsClient, EtimsResult, RetryPolicy, TransportError, with_retry
from etims.services.etims.codes import NETWORK_ERROR


def _connect_error(message: str = "connection refused") -> httpx.ConnectError:
    return httpx.ConnectError(message, request=httpx.Request("POST", "https://etims.test"))


class TestRetryPolicy:
    """Tests for RetryPolicy backoff."""

    def test_backoff_grows_exponentially(self):
        policy = RetryPolicy(max_attempts=4)
        assert [policy.backoff(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_with_retry_returns_first_result(self, sleep):
        calls = []

        async def attempt(n):
            calls.append(n)
            return EtimsResult(success=True, result_code="000")

        result = await with_retry(attempt, RetryPolicy(max_attempts=3), sleep=sleep)
        assert result.success
        assert result.attempts == 1
        assert calls == [1]
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_with_retry_retries_transport_errors_only(self, sleep):
        calls = []

        async def attempt(n):
            calls.append(n)
            if n < 3:
                raise TransportError("timeout")
            return EtimsResult(success=False, result_code="001", error="rejected")

        result = await with_retry(attempt, RetryPolicy(max_attempts=5), sleep=sleep)
        assert result.result_code == "001"
        assert result.attempts == 3
        assert sleep.delays == [2.0, 4.0]


class TestEtimsClient:
    """Tests for EtimsClient.send."""

    @pytest.mark.asyncio
    async def test_success_returns_body(self, etims_client, authority):
        authority.on("saveItem", {"resultCd": "000", "resultMsg": "It is succeeded", "data": {"x": 1}})

        result = await etims_client.send("items", {"itemCd": "KE123456ABCDEF"})

        assert result.success
        assert result.result_code == "000"
        assert result.data["data"] == {"x": 1}
        assert result.attempts == 1
        assert authority.bodies("saveItem") == [{"itemCd": "KE123456ABCDEF"}]

    @pytest.mark.asyncio
    async def test_sends_tenant_headers(self, etims_client, authority):
        await etims_client.send("sales", {})

        request = authority.calls("saveTrnsSalesOsdc")[0]
        assert request.method == "POST"
        assert str(request.url) == "https://etims.test/etims-api/saveTrnsSalesOsdc"
        assert request.headers["tin"] == "P051234567A"
        assert request.headers["bhfId"] == "00"
        assert request.headers["cmcKey"] == "test-cmc-key"
        assert request.headers["content-type"] == "application/json"

    @pytest.mark.asyncio
    async def test_business_rejection_is_not_retried(self, etims_client, authority, sleep):
        authority.on("saveItem", {"resultCd": "001", "resultMsg": "Invalid item class"})

        result = await etims_client.send("items", {})

        assert not result.success
        assert result.is_business_rejection
        assert result.result_code == "001"
        assert result.error == "Invalid item class"
        assert len(authority.calls("saveItem")) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_missing_result_code_is_a_rejection(self, etims_client, authority):
        authority.on("saveItem", {"resultMsg": "???"})

        result = await etims_client.send("items", {})

        assert not result.success
        assert result.is_business_rejection
        assert result.result_code is None

    @pytest.mark.asyncio
    async def test_network_failure_after_max_attempts(self, etims_client, authority, sleep):
        authority.on("saveTrnsSalesOsdc", _connect_error())

        result = await etims_client.send("sales", {})

        assert not result.success
        assert result.is_transport_failure
        assert result.result_code == NETWORK_ERROR
        assert result.result_message == "Max retries exceeded"
        assert result.attempts == 3
        assert len(authority.calls("saveTrnsSalesOsdc")) == 3
        # Backoff between attempts only, strictly increasing
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_server_error_is_retried_then_succeeds(self, etims_client, authority, sleep):
        authority.on("insertStockIO", 503, 502, {"resultCd": "000", "resultMsg": "ok"})

        result = await etims_client.send("stock_io", {})

        assert result.success
        assert result.attempts == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_unreadable_body_is_transport_failure(self, etims_client, authority):
        authority.on("saveItem", lambda request: httpx.Response(200, text="<html>gateway</html>"))

        result = await etims_client.send("items", {})

        assert result.is_transport_failure
        assert len(authority.calls("saveItem")) == 3

    @pytest.mark.asyncio
    async def test_unknown_operation_raises(self, etims_client):
        with pytest.raises(FiscalConfigurationError):
            await etims_client.send("teleport", {})

    @pytest.mark.asyncio
    async def test_records_attempt_metrics(self, etims_client, authority, fiscal_metrics):
        authority.on("saveItem", _connect_error(), {"resultCd": "000"})

        await etims_client.send("items", {})

        assert fiscal_metrics.attempts[("items", "transport_error")] == 1
        assert fiscal_metrics.attempts[("items", "ok")] == 1
        exposition = fiscal_metrics.get_prometheus_metrics()
        assert 'etims_attempts_total{operation="items",result="ok"} 1' in exposition

    @pytest.mark.asyncio
    async def test_single_attempt_policy(self, fiscal_config, authority, sleep):
        client = EtimsClient(
            fiscal_config,
            transport=httpx.MockTransport(authority),
            retry_policy=RetryPolicy(max_attempts=1),
            sleep=sleep,
        )
        authority.on("saveItem", _connect_error())

        result = await client.send("items", {})

        assert result.result_code == NETWORK_ERROR
        assert result.attempts == 1
        assert sleep.delays == []
