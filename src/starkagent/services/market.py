"""Token helpers and the AVNU DEX aggregator client (quotes and swaps)."""

from __future__ import annotations

import logging
from decimal import ROUND_FLOOR, Decimal, InvalidOperation, localcontext
from typing import Any, Dict, List, Optional

import httpx
from starknet_py.net.account.account import Account

from ..errors import CollaboratorError
from ..models import Quote
from ..settings import Settings
from .wallet import WalletService

logger = logging.getLogger(__name__)

ETH_ADDRESS = "0x049d36570d4e46f48e99674bd3fcc84644ddd6b96f7c741b1562b82f9e004dc7"
STRK_ADDRESS = "0x04718f5a0fc34cc1af16a1cdee98ffb20c31f5cd61d6ab07201858f4287c938d"

TOKEN_ALIASES: Dict[str, str] = {
    "eth": ETH_ADDRESS,
    "strk": STRK_ADDRESS,
}

DEFAULT_DECIMALS = 18
SWAP_SLIPPAGE = 0.01


def normalize_token(token: str) -> str:
    """Map a case-insensitive symbol alias to its contract address."""
    return TOKEN_ALIASES.get(token.strip().lower(), token.strip())


def token_label(token: str) -> str:
    """Human label for a token argument as the user typed it."""
    for symbol, address in TOKEN_ALIASES.items():
        if token.strip().lower() in (symbol, address):
            return symbol.upper()
    return token.strip().upper()


def to_smallest_unit(amount: str, decimals: int = DEFAULT_DECIMALS) -> int:
    """Scale a decimal string to integer base units, truncating extra digits.

    ``"0.000000000000000001"`` -> 1, ``"1.1234567891234567891"`` ->
    1123456789123456789.
    """
    with localcontext() as ctx:
        ctx.prec = 100
        try:
            value = Decimal(str(amount).strip())
        except InvalidOperation as e:
            raise ValueError(f"Not a decimal amount: {amount!r}") from e
        if not value.is_finite():
            raise ValueError(f"Not a decimal amount: {amount!r}")
        if value < 0:
            raise ValueError(f"Amount must not be negative: {amount!r}")
        scaled = value.scaleb(decimals).to_integral_value(rounding=ROUND_FLOOR)
        return int(scaled)


def format_units(value: int, decimals: int = DEFAULT_DECIMALS) -> str:
    """Inverse of to_smallest_unit, without trailing zeros."""
    with localcontext() as ctx:
        ctx.prec = 100
        text = format(Decimal(value).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


class MarketService:
    """AVNU quotes/swaps plus balance look-ups through the wallet's RPC client."""

    name = "market"

    def __init__(
        self,
        settings: Settings,
        wallet: WalletService,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._wallet = wallet
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.avnu_base_url,
                timeout=self._settings.market_request_timeout_seconds,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: str,
        taker_address: Optional[str] = None,
    ) -> Quote:
        """Best quote for selling ``amount_in`` (decimal string) of ``token_in``."""
        sell_amount = to_smallest_unit(amount_in)
        params: Dict[str, Any] = {
            "sellTokenAddress": token_in,
            "buyTokenAddress": token_out,
            "sellAmount": hex(sell_amount),
            "size": 1,
        }
        if taker_address:
            params["takerAddress"] = taker_address

        client = await self._get_client()
        try:
            resp = await client.get("/swap/v2/quotes", params=params)
            resp.raise_for_status()
            quotes: List[Dict[str, Any]] = resp.json()
        except httpx.HTTPStatusError as e:
            logger.error("AVNU quote request failed: %s %s", e.response.status_code, e.response.text[:200])
            raise CollaboratorError(self.name, f"quote request failed ({e.response.status_code})", cause=e) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("AVNU quote request failed: %s", e)
            raise CollaboratorError(self.name, f"quote request failed: {e}", cause=e) from e

        if not quotes:
            raise CollaboratorError(self.name, "no quote available for this pair and amount")
        quote = Quote.from_api(quotes[0])
        logger.info(
            "Quote %s: %s %s -> %s %s",
            quote.quote_id, quote.sell_amount, token_in, quote.buy_amount, token_out,
        )
        return quote

    async def execute_swap(
        self,
        account: Account,
        quote: Quote,
        auto_approve: bool = True,
        slippage: float = SWAP_SLIPPAGE,
    ) -> str:
        """Build the swap calls for ``quote`` and submit them from ``account``."""
        payload = {
            "quoteId": quote.quote_id,
            "takerAddress": hex(account.address),
            "slippage": slippage,
            "includeApprove": auto_approve,
        }
        client = await self._get_client()
        try:
            resp = await client.post("/swap/v2/build", json=payload)
            resp.raise_for_status()
            calls = resp.json().get("calls") or []
        except httpx.HTTPStatusError as e:
            logger.error("AVNU build request failed: %s %s", e.response.status_code, e.response.text[:200])
            raise CollaboratorError(self.name, f"swap build failed ({e.response.status_code})", cause=e) from e
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.error("AVNU build request failed: %s", e)
            raise CollaboratorError(self.name, f"swap build failed: {e}", cause=e) from e

        if not calls:
            raise CollaboratorError(self.name, "aggregator returned no calls for this quote")
        return await self._wallet.execute_call_dicts(account, calls)

    async def check_balance(self, account: Account, token: str) -> int:
        return await self._wallet.get_balance(account, normalize_token(token))
