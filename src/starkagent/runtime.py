import asyncio
import logging
from typing import Optional

from .agent.engine import DialogueEngine
from .agent.scheduler import BackgroundActionScheduler
from .agent.tools import ToolRegistry, WalletTools, build_tool_registry
from .services.credential_store import CredentialStore
from .services.market import MarketService
from .services.news import NewsService
from .services.redis import KeyValueStore, get_key_value_store
from .services.session_store import SessionStore
from .services.wallet import WalletService
from .settings import Settings
from .transports.hub import ChatTransport, ChatTransportHub
from .transports.telegram import TelegramTransport

logger = logging.getLogger(__name__)


class AgentRuntime:
    """Owns every long-lived component; created at startup, closed at shutdown."""

    def __init__(self, settings: Settings, store: Optional[KeyValueStore] = None) -> None:
        self.settings = settings
        self.store: KeyValueStore = store or get_key_value_store()
        self.hub = ChatTransportHub()

        self.credentials = CredentialStore(self.store)
        self.wallet = WalletService(settings, self.credentials)
        self.market = MarketService(settings, self.wallet)
        self.news = NewsService(settings)
        self.sessions = SessionStore(history_window=settings.history_window)

        self.scheduler = BackgroundActionScheduler(
            run_turn=self._run_turn,
            deliver=self.hub.send_message,
            store=self.store,
        )
        self.registry: ToolRegistry = build_tool_registry(
            WalletTools(
                settings=settings,
                wallet=self.wallet,
                credentials=self.credentials,
                market=self.market,
                news=self.news,
                scheduler=self.scheduler,
            )
        )
        self.engine = DialogueEngine(settings, self.registry, self.sessions)

        self.telegram: Optional[TelegramTransport] = None
        if settings.bot_token:
            self.telegram = TelegramTransport(
                bot_token=settings.bot_token,
                api_base=settings.telegram_api_base,
                poll_timeout=settings.telegram_poll_timeout_seconds,
            )
            # restored background actions of Telegram chats deliver without a new message
            self.hub.set_default(self.telegram)
        self._polling_task: Optional[asyncio.Task] = None

    async def _run_turn(self, session_id: str, text: str) -> str:
        return await self.engine.run_turn(session_id, text)

    async def handle_message(self, session_id: str, text: str, transport: ChatTransport) -> str:
        """Run a user turn and remember where to push background results."""
        self.hub.bind(session_id, transport)
        return await self.engine.run_turn(session_id, text)

    async def _on_telegram_message(self, chat_id: str, text: str) -> None:
        assert self.telegram is not None
        async with self.telegram.typing(chat_id):
            reply = await self.handle_message(chat_id, text, self.telegram)
        await self.telegram.send_message(chat_id, reply)

    async def start(self) -> None:
        await self.store.connect()
        await self.scheduler.restore()
        if self.telegram is not None:
            self._polling_task = asyncio.create_task(
                self.telegram.poll_forever(self._on_telegram_message), name="telegram-poll"
            )
        logger.info("Agent runtime started (telegram=%s)", self.telegram is not None)

    async def close(self) -> None:
        if self._polling_task is not None:
            self._polling_task.cancel()
            await asyncio.gather(self._polling_task, return_exceptions=True)
            self._polling_task = None
        await self.scheduler.shutdown()
        if self.telegram is not None:
            await self.telegram.close()
        await self.market.close()
        await self.news.close()
        await self.engine.close()
        await self.store.close()
        logger.info("Agent runtime closed")
