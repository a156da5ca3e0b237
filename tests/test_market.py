import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from starkagent.errors import CollaboratorError
from starkagent.models import Quote
from starkagent.services.market import (
    ETH_ADDRESS,
    STRK_ADDRESS,
    MarketService,
    format_units,
    normalize_token,
    to_smallest_unit,
    token_label,
)


def test_one_wei_converts_exactly() -> None:
    assert to_smallest_unit("0.000000000000000001") == 1


def test_extra_digits_are_truncated_not_rounded() -> None:
    assert to_smallest_unit("1.1234567891234567891") == 1123456789123456789
    assert to_smallest_unit("0.0000000000000000019") == 1


def test_whole_and_large_amounts() -> None:
    assert to_smallest_unit("1") == 10**18
    assert to_smallest_unit("123456789.5") == 123456789_500000000_000000000


@pytest.mark.parametrize("bad", ["abc", "", "-1", "NaN", "Infinity"])
def test_invalid_amounts_raise_value_error(bad: str) -> None:
    with pytest.raises(ValueError):
        to_smallest_unit(bad)


def test_format_units() -> None:
    assert format_units(1) == "0.000000000000000001"
    assert format_units(10**18) == "1"
    assert format_units(1_500_000_000_000_000_000) == "1.5"
    assert format_units(0) == "0"


def test_normalize_token_aliases_case_insensitive() -> None:
    assert normalize_token("eth") == ETH_ADDRESS
    assert normalize_token("ETH") == ETH_ADDRESS
    assert normalize_token("Strk") == STRK_ADDRESS
    assert normalize_token("0x0123") == "0x0123"


def test_token_label() -> None:
    assert token_label("strk") == "STRK"
    assert token_label(ETH_ADDRESS) == "ETH"
    assert token_label("0xabc") == "0XABC"


def _service(settings, handler) -> MarketService:
    client = httpx.AsyncClient(
        base_url=settings.avnu_base_url, transport=httpx.MockTransport(handler)
    )
    wallet = MagicMock()
    wallet.execute_call_dicts = AsyncMock(return_value="0xfeed")
    wallet.get_balance = AsyncMock(return_value=5)
    return MarketService(settings, wallet, http_client=client)


@pytest.mark.asyncio
async def test_get_quote_sends_hex_amount_and_parses(settings) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json=[
                {
                    "quoteId": "q-1",
                    "sellTokenAddress": ETH_ADDRESS,
                    "buyTokenAddress": STRK_ADDRESS,
                    "sellAmount": "0xde0b6b3a7640000",
                    "buyAmount": "0x1bc16d674ec80000",
                }
            ],
        )

    market = _service(settings, handler)
    quote = await market.get_quote(ETH_ADDRESS, STRK_ADDRESS, "1", taker_address="0x1")
    assert seen["path"] == "/swap/v2/quotes"
    assert seen["params"]["sellAmount"] == hex(10**18)
    assert seen["params"]["takerAddress"] == "0x1"
    assert quote.quote_id == "q-1"
    assert quote.buy_amount == 2 * 10**18


@pytest.mark.asyncio
async def test_get_quote_empty_list_is_collaborator_error(settings) -> None:
    market = _service(settings, lambda request: httpx.Response(200, json=[]))
    with pytest.raises(CollaboratorError, match="no quote"):
        await market.get_quote(ETH_ADDRESS, STRK_ADDRESS, "1")


@pytest.mark.asyncio
async def test_get_quote_http_error_is_collaborator_error(settings) -> None:
    market = _service(settings, lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(CollaboratorError, match="500"):
        await market.get_quote(ETH_ADDRESS, STRK_ADDRESS, "1")


@pytest.mark.asyncio
async def test_execute_swap_builds_with_slippage_and_approve(settings) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "chainId": "0x534e5f5345504f4c4941",
                "calls": [
                    {"contractAddress": ETH_ADDRESS, "entrypoint": "approve", "calldata": ["0x1", "0x2", "0x0"]},
                    {"contractAddress": "0x99", "entrypoint": "multi_route_swap", "calldata": []},
                ],
            },
        )

    market = _service(settings, handler)
    account = MagicMock(address=0x42)
    quote = Quote("q-1", ETH_ADDRESS, STRK_ADDRESS, 10**18, 2 * 10**18)

    tx = await market.execute_swap(account, quote, auto_approve=True, slippage=0.01)

    assert tx == "0xfeed"
    assert seen["path"] == "/swap/v2/build"
    assert seen["body"] == {
        "quoteId": "q-1",
        "takerAddress": "0x42",
        "slippage": 0.01,
        "includeApprove": True,
    }
    calls = market._wallet.execute_call_dicts.call_args.args[1]
    assert [c["entrypoint"] for c in calls] == ["approve", "multi_route_swap"]


@pytest.mark.asyncio
async def test_execute_swap_without_calls_fails(settings) -> None:
    market = _service(settings, lambda request: httpx.Response(200, json={"calls": []}))
    with pytest.raises(CollaboratorError):
        await market.execute_swap(MagicMock(address=1), Quote("q", "a", "b", 1, 1))


@pytest.mark.asyncio
async def test_check_balance_normalizes_alias(settings) -> None:
    market = _service(settings, lambda request: httpx.Response(404))
    account = MagicMock()
    assert await market.check_balance(account, "STRK") == 5
    market._wallet.get_balance.assert_awaited_once_with(account, STRK_ADDRESS)
