from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    cors_origins: str = "*"

    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"

    max_rounds: int = 10
    history_window: int = 100

    rpc_url: str | None = None
    chain: Literal["sepolia", "mainnet"] = "sepolia"
    explorer_tx_url: str = "https://sepolia.starkscan.co/tx/"
    faucet_url: str = "https://starknet-faucet.vercel.app"
    # OpenZeppelin account contract
    account_class_hash: str = (
        "0x061dac032f228abef9c6626f995015233097ae253a7f72d68552db02f2971b8f"
    )

    starknet_account_address: str | None = None
    starknet_private_key: str | None = None

    avnu_base_url: str = "https://sepolia.api.avnu.fi"
    market_request_timeout_seconds: float = 30.0

    news_feed_urls: str = (
        "https://www.coindesk.com/arc/outboundfeeds/rss/,"
        "https://cointelegraph.com/rss"
    )
    news_limit: int = 10
    news_request_timeout_seconds: float = 15.0

    redis_url: str | None = None

    bot_token: str | None = None
    telegram_api_base: str = "https://api.telegram.org"
    telegram_poll_timeout_seconds: int = 30

    agent_system_prompt: str = (
        "You are a helpful assistant that manages a Starknet wallet for the user.\n\n"
        "You can create and deploy an account, check balances, send ETH, swap "
        "tokens, fetch the latest crypto news and run actions periodically in "
        "the background.\n"
        " - Account creation has two steps: generate the address, wait for the "
        "user to fund it, then deploy it.\n"
        " - Token symbols 'eth' and 'strk' may be passed instead of addresses.\n"
        " - When a tool returns an error, explain it plainly and suggest what "
        "to do next.\n\n"
        "Keep your answers short."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )

    @property
    def fixed_account_configured(self) -> bool:
        """True when both process-level account overrides are set."""
        return bool(self.starknet_account_address and self.starknet_private_key)

    def news_feeds(self) -> list[str]:
        return [u.strip() for u in self.news_feed_urls.split(",") if u.strip()]


def validate_startup(settings: Settings) -> None:
    """Raise ConfigurationError naming every missing required value."""
    missing = []
    if not settings.openai_api_key:
        missing.append("OPENAI_API_KEY")
    if not settings.rpc_url:
        missing.append("RPC_URL")
    if missing:
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}"
        )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
