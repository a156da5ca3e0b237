import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Type

from pydantic import BaseModel, ConfigDict, Field
from starknet_py.net.account.account import Account

from ..errors import AccountNotFoundError, CollaboratorError, ToolNotFoundError
from ..models import AccountCredential
from ..services.credential_store import CredentialStore
from ..services.market import (
    ETH_ADDRESS,
    MarketService,
    format_units,
    normalize_token,
    to_smallest_unit,
    token_label,
)
from ..services.news import NewsService
from ..services.wallet import WalletService
from ..settings import Settings

logger = logging.getLogger(__name__)

NO_ACCOUNT_TEXT = "Account does not exist, you need to create one first."
FIXED_ACCOUNT_TEXT = "The account is set in the env and cannot be changed."
NO_GENERATED_ACCOUNT_TEXT = (
    "There is no generated account to deploy. "
    "Generate an account first, fund it, then ask me to deploy it."
)
GENERATED_NOT_SAVED_TEXT = (
    "Error generating account: the new key could not be saved. "
    "Do not send funds to any address yet, please try again."
)
DEPLOYED_NOT_SAVED_TEXT = (
    "The account was deployed at {address} but could not be saved for this chat. "
    "Please contact support before sending funds to it."
)


@dataclass(frozen=True)
class ToolContext:
    """Per-invocation context handed to every tool handler."""

    session_id: str


ToolHandler = Callable[[Any, ToolContext], Awaitable[str]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: ToolHandler

    def schema(self) -> Dict[str, Any]:
        """OpenAI function-tool schema for this tool."""
        parameters = self.args_model.model_json_schema()
        parameters.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


class ToolRegistry:
    """Named, schema-validated tools. Immutable specs, unique names."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        if name not in self._tools:
            raise ToolNotFoundError(f"Tool not found: {name}")
        return self._tools[name]

    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        return [spec.schema() for spec in self._tools.values()]

    async def execute(self, name: str, arguments: Dict[str, Any], context: ToolContext) -> str:
        """Validate ``arguments`` and run the tool.

        Raises ToolNotFoundError or pydantic.ValidationError before anything
        runs. Failures inside the handler come back as text.
        """
        spec = self.get(name)
        args = spec.args_model.model_validate(arguments)
        logger.info("Executing tool %s for session %s", name, context.session_id)
        try:
            return await spec.handler(args, context)
        except Exception as e:
            logger.exception("Tool %s failed unexpectedly: %s", name, e)
            return f"Error: {name} failed: {e}"


class _Args(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NoArgs(_Args):
    pass


class SendEthArgs(_Args):
    recipient_address: str = Field(alias="recipientAddress", description="The recipient's Starknet address")
    amount_in_eth: str = Field(alias="amountInEth", description="The amount of ETH to send")


class CheckBalanceArgs(_Args):
    token_address: str = Field(
        default="eth",
        alias="tokenAddress",
        description="Token contract address, or 'eth' / 'strk'",
    )


class SwapArgs(_Args):
    token_in_address: str = Field(alias="tokenInAddress", description="The address of the token to swap from")
    token_out_address: str = Field(alias="tokenOutAddress", description="The address of the token to swap to")
    amount_in: str = Field(alias="amountIn", description="The amount of tokens to swap")


class StartBackgroundActionArgs(_Args):
    what_to_do: str = Field(alias="whatToDo", min_length=1, description="The action that you want to execute every X second.")
    interval_in_seconds: float = Field(
        alias="intervalInSeconds",
        gt=0,
        description="The number of seconds that needs to pass before the action is executed again.",
    )


class BackgroundScheduler(Protocol):
    async def start(self, session_id: str, description: str, interval_seconds: float) -> str: ...

    async def stop(self, session_id: str) -> str: ...


class WalletTools:
    """Handlers behind the registered tools. Each returns text and never raises."""

    def __init__(
        self,
        settings: Settings,
        wallet: WalletService,
        credentials: CredentialStore,
        market: MarketService,
        news: NewsService,
        scheduler: BackgroundScheduler,
    ) -> None:
        self._settings = settings
        self._wallet = wallet
        self._credentials = credentials
        self._market = market
        self._news = news
        self._scheduler = scheduler

    def _tx_link(self, tx_hash: str) -> str:
        return f"{self._settings.explorer_tx_url}{tx_hash}"

    async def _require_account(self, session_id: str) -> Account:
        account = await self._wallet.get_account(session_id)
        if account is None:
            raise AccountNotFoundError(NO_ACCOUNT_TEXT)
        return account

    async def _require_generated_key(self, session_id: str) -> str:
        private_key = await self._credentials.read_generated(session_id)
        if not private_key:
            raise AccountNotFoundError(NO_GENERATED_ACCOUNT_TEXT)
        return private_key

    async def send_eth(self, args: SendEthArgs, ctx: ToolContext) -> str:
        try:
            account = await self._require_account(ctx.session_id)
            amount_in_wei = to_smallest_unit(args.amount_in_eth)
            tx_hash = await self._wallet.transfer(
                account, ETH_ADDRESS, args.recipient_address, amount_in_wei
            )
            return (
                f"Transaction submitted to {self._settings.chain.capitalize()}. Hash: {tx_hash}\n"
                f"View on Starkscan: {self._tx_link(tx_hash)}"
            )
        except AccountNotFoundError as e:
            return str(e)
        except (CollaboratorError, ValueError) as e:
            logger.error("send_eth failed for session %s: %s", ctx.session_id, e)
            return f"Error sending ETH: {e}"

    async def check_balance(self, args: CheckBalanceArgs, ctx: ToolContext) -> str:
        try:
            account = await self._require_account(ctx.session_id)
            balance = await self._market.check_balance(account, args.token_address)
            return f"Balance: {format_units(balance)} {token_label(args.token_address)}"
        except AccountNotFoundError as e:
            return str(e)
        except (CollaboratorError, ValueError) as e:
            logger.error("check_balance failed for session %s: %s", ctx.session_id, e)
            return f"Error checking balance: {e}"

    async def swap(self, args: SwapArgs, ctx: ToolContext) -> str:
        try:
            account = await self._require_account(ctx.session_id)
            token_in = normalize_token(args.token_in_address)
            token_out = normalize_token(args.token_out_address)

            quote = await self._market.get_quote(
                token_in, token_out, args.amount_in, taker_address=hex(account.address)
            )
            expected_output = format_units(quote.buy_amount)
            tx_hash = await self._market.execute_swap(
                account, quote, auto_approve=True, slippage=0.01
            )
            return (
                f"Swap executed successfully! You will receive {expected_output} "
                f"{token_label(args.token_out_address)}. Transaction hash: {tx_hash}"
            )
        except AccountNotFoundError as e:
            return str(e)
        except (CollaboratorError, ValueError) as e:
            logger.error("swap failed for session %s: %s", ctx.session_id, e)
            return (
                f"Failed to execute swap: {e}. "
                "Please try again with a different amount or check your balance."
            )

    async def get_current_account(self, args: NoArgs, ctx: ToolContext) -> str:
        resolved = await self._wallet.resolve_account(ctx.session_id)
        if not resolved.exists:
            return NO_ACCOUNT_TEXT
        return resolved.address or NO_ACCOUNT_TEXT

    async def generate_account(self, args: NoArgs, ctx: ToolContext) -> str:
        if self._wallet.fixed_account_configured:
            return FIXED_ACCOUNT_TEXT
        try:
            credential = self._wallet.generate_account()
        except (CollaboratorError, ValueError) as e:
            logger.error("generate_account failed for session %s: %s", ctx.session_id, e)
            return f"Error generating account: {e}"

        # never show an address whose key was not stored
        if not await self._credentials.save_generated(ctx.session_id, credential.private_key):
            return GENERATED_NOT_SAVED_TEXT
        return (
            f"Here is the new account address: {credential.address} . "
            f"Please send some funds to it using the faucet: {self._settings.faucet_url} . "
            "Let me know when you're done and I will deploy the account."
        )

    async def deploy_account(self, args: NoArgs, ctx: ToolContext) -> str:
        if self._wallet.fixed_account_configured:
            return FIXED_ACCOUNT_TEXT
        try:
            private_key = await self._require_generated_key(ctx.session_id)
            address = await self._wallet.deploy_account(private_key)
        except AccountNotFoundError as e:
            return str(e)
        except CollaboratorError as e:
            logger.error("deploy_account failed for session %s: %s", ctx.session_id, e)
            return f"Error deploying account: {e}. Make sure the address is funded."

        saved = await self._credentials.save_deployed(
            ctx.session_id, AccountCredential(private_key=private_key, address=address)
        )
        if not saved:
            logger.error("Deployed account %s for session %s was not saved", address, ctx.session_id)
            return DEPLOYED_NOT_SAVED_TEXT.format(address=address)
        return f"Account deployed. Address: {address}"

    async def get_news(self, args: NoArgs, ctx: ToolContext) -> str:
        try:
            items = await self._news.get_news()
        except CollaboratorError as e:
            logger.error("get_news failed: %s", e)
            return f"Error fetching news: {e}"
        return json.dumps([item.to_dict() for item in items])

    async def start_background_action(self, args: StartBackgroundActionArgs, ctx: ToolContext) -> str:
        return await self._scheduler.start(
            ctx.session_id, args.what_to_do, args.interval_in_seconds
        )

    async def stop_background_action(self, args: NoArgs, ctx: ToolContext) -> str:
        return await self._scheduler.stop(ctx.session_id)


def build_tool_registry(tools: WalletTools, registry: Optional[ToolRegistry] = None) -> ToolRegistry:
    """Register every wallet tool, in the order the model sees them."""
    registry = registry or ToolRegistry()
    specs = [
        ToolSpec(
            name="send_eth",
            description="Send ETH to an address on Starknet",
            args_model=SendEthArgs,
            handler=tools.send_eth,
        ),
        ToolSpec(
            name="check_balance",
            description="Check the balance of a token (ETH by default) for the current Starknet account",
            args_model=CheckBalanceArgs,
            handler=tools.check_balance,
        ),
        ToolSpec(
            name="start_background_action",
            description=(
                "Call to start a loop that executes an action every X seconds. "
                "Or stop the current loop and start a new one."
            ),
            args_model=StartBackgroundActionArgs,
            handler=tools.start_background_action,
        ),
        ToolSpec(
            name="stop_background_action",
            description="Stop the currently running background action loop",
            args_model=NoArgs,
            handler=tools.stop_background_action,
        ),
        ToolSpec(
            name="get_news",
            description="Get the latest crypto news",
            args_model=NoArgs,
            handler=tools.get_news,
        ),
        ToolSpec(
            name="get_starknet_account",
            description="Get the address of the current Starknet account",
            args_model=NoArgs,
            handler=tools.get_current_account,
        ),
        ToolSpec(
            name="generate_starknet_account",
            description=(
                "Generates a new Starknet account address. "
                "If one already exists, it will overwrite it. "
                "This is the first step in account creation. "
                "After this the user needs to fund the address and when it is "
                "funded we need to deploy the account."
            ),
            args_model=NoArgs,
            handler=tools.generate_account,
        ),
        ToolSpec(
            name="deploy_starknet_account",
            description=(
                "Deploys the Starknet account / wallet. "
                "If wallet already exists, it will overwrite it. "
                "This is the last step in account creation."
            ),
            args_model=NoArgs,
            handler=tools.deploy_account,
        ),
        ToolSpec(
            name="swap",
            description="Swap tokens on Starknet. Accepts token addresses or the symbols 'eth' / 'strk'.",
            args_model=SwapArgs,
            handler=tools.swap,
        ),
    ]
    for spec in specs:
        registry.register(spec)
    return registry
