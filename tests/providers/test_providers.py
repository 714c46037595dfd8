"""
Tests for the HTTP collaborators: sentiment index, prices, routing, chain RPC
and the bundler.
"""

import json
from decimal import Decimal

import httpx
import pytest

from conftest import ROUTER, SMART_ACCOUNT, USDC, WETH
from dca_engine.cache import TTLCache
from dca_engine.config import settings
from dca_engine.core.execution.userop import UserOperation
from dca_engine.core.recovery import NetworkError, RateLimitError
from dca_engine.core.signal.models import SignalSource
from dca_engine.providers.base import JsonRpcError
from dca_engine.providers.bundler import BundlerError, BundlerProvider
from dca_engine.providers.coingecko import CoingeckoProvider, PriceUnavailableError
from dca_engine.providers.fear_greed import FearGreedError, FearGreedProvider
from dca_engine.providers.rpc import ChainRpcProvider
from dca_engine.providers.uniswap import RouteQuote, UniswapApiError, UniswapTradingProvider

_AsyncClient = httpx.AsyncClient


def _route_httpx(monkeypatch, handler):
    """Send every AsyncClient created by a provider through ``handler``."""
    monkeypatch.setattr(
        httpx, "AsyncClient", lambda *args, **kwargs: _AsyncClient(transport=httpx.MockTransport(handler))
    )


def _mock_client(handler) -> httpx.AsyncClient:
    return _AsyncClient(transport=httpx.MockTransport(handler))


# =============================================================================
# Fear & Greed
# =============================================================================

class TestFearGreedProvider:

    @pytest.mark.asyncio
    async def test_parses_latest_reading(self, monkeypatch):
        def handler(request):
            assert request.url.params["limit"] == "1"
            return httpx.Response(
                200,
                json={"data": [{"value": "23", "value_classification": "Extreme Fear", "timestamp": "1760000000"}]},
            )

        _route_httpx(monkeypatch, handler)

        signal = await FearGreedProvider(base_url="https://api.alternative.me/fng/").get_latest()

        assert signal.value == 23
        assert signal.classification == "Extreme Fear"
        assert signal.timestamp == 1_760_000_000
        assert signal.source == SignalSource.PRIMARY

    @pytest.mark.asyncio
    async def test_malformed_payload(self, monkeypatch):
        _route_httpx(monkeypatch, lambda request: httpx.Response(200, json={"data": []}))

        with pytest.raises(FearGreedError):
            await FearGreedProvider(base_url="https://api.alternative.me/fng/").get_latest()

    @pytest.mark.asyncio
    async def test_out_of_range_value(self, monkeypatch):
        _route_httpx(
            monkeypatch,
            lambda request: httpx.Response(
                200, json={"data": [{"value": "140", "value_classification": "Greed", "timestamp": "1"}]}
            ),
        )

        with pytest.raises(FearGreedError, match="out of range"):
            await FearGreedProvider(base_url="https://api.alternative.me/fng/").get_latest()

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, monkeypatch):
        _route_httpx(monkeypatch, lambda request: httpx.Response(502))

        with pytest.raises(NetworkError):
            await FearGreedProvider(base_url="https://api.alternative.me/fng/").get_latest()


# =============================================================================
# Coingecko
# =============================================================================

class TestCoingeckoProvider:

    @pytest.mark.asyncio
    async def test_price_cached(self, monkeypatch):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"ethereum": {"usd": 2500.5}})

        _route_httpx(monkeypatch, handler)
        provider = CoingeckoProvider(cache=TTLCache(default_ttl=60))

        assert await provider.get_price_usd("ethereum") == Decimal("2500.5")
        assert await provider.get_price_usd("ethereum") == Decimal("2500.5")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_refresh_failure_falls_back_to_last_price(self, monkeypatch):
        cache = TTLCache(default_ttl=60)
        await cache.set("price:ethereum", Decimal("2400"), ttl=-1)
        _route_httpx(monkeypatch, lambda request: httpx.Response(503))

        price = await CoingeckoProvider(cache=cache).get_price_usd("ethereum")

        assert price == Decimal("2400")

    @pytest.mark.asyncio
    async def test_refresh_failure_without_cache_raises(self, monkeypatch):
        _route_httpx(monkeypatch, lambda request: httpx.Response(429))

        with pytest.raises(RateLimitError):
            await CoingeckoProvider(cache=TTLCache()).get_price_usd("ethereum")

    @pytest.mark.asyncio
    async def test_missing_coin(self, monkeypatch):
        _route_httpx(monkeypatch, lambda request: httpx.Response(200, json={}))

        with pytest.raises(PriceUnavailableError):
            await CoingeckoProvider(cache=TTLCache()).get_price_usd("ethereum")

    @pytest.mark.asyncio
    async def test_24h_change(self, monkeypatch):
        def handler(request):
            assert request.url.params["include_24hr_change"] == "true"
            return httpx.Response(200, json={"bitcoin": {"usd": 60000, "usd_24h_change": -3.25}})

        _route_httpx(monkeypatch, handler)

        assert await CoingeckoProvider(cache=TTLCache()).get_24h_change_percent() == -3.25

    @pytest.mark.asyncio
    async def test_24h_change_missing(self, monkeypatch):
        _route_httpx(monkeypatch, lambda request: httpx.Response(200, json={"bitcoin": {"usd": 60000}}))

        with pytest.raises(PriceUnavailableError):
            await CoingeckoProvider(cache=TTLCache()).get_24h_change_percent()


# =============================================================================
# Uniswap Trading API
# =============================================================================

class TestUniswapTradingProvider:

    def _provider(self, handler) -> UniswapTradingProvider:
        provider = UniswapTradingProvider(base_url="https://trade-api.example/v1/", api_key="key")
        provider._client = _mock_client(handler)
        return provider

    @pytest.mark.asyncio
    async def test_quote_request(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["key"] = request.headers["x-api-key"]
            return httpx.Response(200, json={"routing": "CLASSIC", "quote": {"output": {"amount": "25000000000000000"}}})

        quote = await self._provider(handler).get_quote(SMART_ACCOUNT, USDC, WETH, 50_000_000, 30)

        assert quote.amount_out == 25_000_000_000_000_000
        assert seen["url"] == "https://trade-api.example/v1/quote"
        assert seen["key"] == "key"
        assert seen["body"]["amount"] == "50000000"
        assert seen["body"]["type"] == "EXACT_INPUT"
        assert seen["body"]["slippageTolerance"] == 0.3

    @pytest.mark.asyncio
    async def test_quote_without_output(self):
        provider = self._provider(lambda request: httpx.Response(200, json={"quote": {}}))

        with pytest.raises(UniswapApiError, match="missing output amount"):
            await provider.get_quote(SMART_ACCOUNT, USDC, WETH, 1, 30)

    @pytest.mark.asyncio
    async def test_client_error_names_error_code(self):
        provider = self._provider(lambda request: httpx.Response(404, json={"errorCode": "NO_ROUTE"}))

        with pytest.raises(UniswapApiError, match="NO_ROUTE"):
            await provider.get_quote(SMART_ACCOUNT, USDC, WETH, 1, 30)

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self):
        provider = self._provider(lambda request: httpx.Response(429))

        with pytest.raises(RateLimitError):
            await provider.get_quote(SMART_ACCOUNT, USDC, WETH, 1, 30)

    @pytest.mark.asyncio
    async def test_swap_call_drops_permit_data(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"swap": {"to": ROUTER, "data": "0x3593564c00", "value": "0x0"}})

        quote = RouteQuote(payload={"quote": {"output": {"amount": "1"}}, "permitData": {"x": 1}}, amount_out=1)
        call = await self._provider(handler).get_swap_call(quote)

        assert "permitData" not in seen["body"]
        assert call.to == ROUTER
        assert call.data == "0x3593564c00"
        assert call.value == 0

    @pytest.mark.asyncio
    async def test_swap_without_calldata(self):
        provider = self._provider(lambda request: httpx.Response(200, json={"swap": {"to": ROUTER}}))

        with pytest.raises(UniswapApiError):
            await provider.get_swap_call(RouteQuote(payload={}, amount_out=1))

    @pytest.mark.asyncio
    async def test_health_without_key(self):
        provider = UniswapTradingProvider(base_url="https://trade-api.example/v1", api_key="")
        assert (await provider.health_check())["status"] == "disabled"


# =============================================================================
# Chain RPC
# =============================================================================

def _rpc(results: dict) -> ChainRpcProvider:
    def handler(request):
        body = json.loads(request.content)
        result = results[body["method"]]
        if isinstance(result, dict) and "code" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": result})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    provider = ChainRpcProvider(rpc_url="http://node.example")
    provider._client = _mock_client(handler)
    return provider


class TestChainRpcProvider:

    @pytest.mark.asyncio
    async def test_erc20_balance(self):
        provider = _rpc({"eth_call": "0x" + hex(1_000_000_000)[2:].rjust(64, "0")})
        assert await provider.get_erc20_balance(USDC, SMART_ACCOUNT) == 1_000_000_000

    @pytest.mark.asyncio
    async def test_empty_return_is_zero(self):
        provider = _rpc({"eth_call": "0x"})
        assert await provider.get_erc20_allowance(WETH, SMART_ACCOUNT, ROUTER) == 0

    @pytest.mark.asyncio
    async def test_receipt(self):
        provider = _rpc(
            {"eth_getTransactionReceipt": {"transactionHash": "0xabc", "status": "0x0", "blockNumber": "0x10", "gasUsed": "0x5208"}}
        )

        receipt = await provider.get_transaction_receipt("0xabc")

        assert receipt.success is False
        assert receipt.block_number == 16
        assert receipt.gas_used == 21000

    @pytest.mark.asyncio
    async def test_pending_receipt(self):
        assert await _rpc({"eth_getTransactionReceipt": None}).get_transaction_receipt("0xabc") is None

    @pytest.mark.asyncio
    async def test_error_object_carries_revert_data(self):
        provider = _rpc({"eth_estimateGas": {"code": 3, "message": "execution reverted", "data": "0xdeadbeef"}})

        with pytest.raises(JsonRpcError) as exc_info:
            await provider.estimate_gas({"to": ROUTER})

        assert exc_info.value.code == 3
        assert exc_info.value.data == "0xdeadbeef"
        assert "execution reverted" in str(exc_info.value)


# =============================================================================
# Bundler
# =============================================================================

USER_OP_HASH = "0x" + "bb" * 32


def _bundler(results: dict, seen: list = None) -> BundlerProvider:
    def handler(request):
        body = json.loads(request.content)
        if seen is not None:
            seen.append(body)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": results[body["method"]]})

    provider = BundlerProvider(rpc_url="http://bundler.example")
    provider._client = _mock_client(handler)
    return provider


def _user_op() -> UserOperation:
    return UserOperation(
        sender=SMART_ACCOUNT,
        nonce=0,
        init_code="0x",
        call_data="0x1234",
        call_gas_limit=0,
        verification_gas_limit=0,
        pre_verification_gas=0,
        max_fee_per_gas=2,
        max_priority_fee_per_gas=1,
    )


class TestBundlerProvider:

    @pytest.mark.asyncio
    async def test_send_returns_user_op_hash(self):
        seen = []
        provider = _bundler({"eth_sendUserOperation": USER_OP_HASH}, seen)

        assert await provider.send_user_operation(_user_op(), settings.erc4337_entrypoint_address) == USER_OP_HASH
        assert seen[0]["params"][0]["callData"] == "0x1234"
        assert seen[0]["params"][1] == settings.erc4337_entrypoint_address

    @pytest.mark.asyncio
    async def test_estimate(self):
        provider = _bundler(
            {"eth_estimateUserOperationGas": {"callGasLimit": "0x186a0", "verificationGasLimit": "0xea60", "preVerificationGas": "0x5208"}}
        )

        estimate = await provider.estimate_user_operation_gas(_user_op(), settings.erc4337_entrypoint_address)

        assert estimate.call_gas_limit == 100_000
        assert estimate.verification_gas_limit == 60_000
        assert estimate.pre_verification_gas == 21_000

    @pytest.mark.asyncio
    async def test_pending_receipt(self):
        assert await _bundler({"eth_getUserOperationReceipt": None}).get_user_operation_receipt(USER_OP_HASH) is None

    @pytest.mark.asyncio
    async def test_receipt(self):
        provider = _bundler(
            {"eth_getUserOperationReceipt": {"success": True, "receipt": {"transactionHash": "0xabc", "blockNumber": "0x10"}}}
        )

        receipt = await provider.get_user_operation_receipt(USER_OP_HASH)

        assert receipt.success is True
        assert receipt.transaction_hash == "0xabc"
        assert receipt.user_op_hash == USER_OP_HASH

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        provider = BundlerProvider(rpc_url="")

        assert (await provider.health_check())["status"] == "disabled"
        with pytest.raises(BundlerError):
            await provider.send_user_operation(_user_op(), settings.erc4337_entrypoint_address)

    @pytest.mark.asyncio
    async def test_health_requires_configured_entry_point(self):
        healthy = _bundler({"eth_supportedEntryPoints": [settings.erc4337_entrypoint_address.lower()]})
        other = _bundler({"eth_supportedEntryPoints": ["0x" + "9" * 40]})

        assert (await healthy.health_check())["status"] == "healthy"
        assert (await other.health_check())["status"] == "error"
