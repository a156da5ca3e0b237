"""Telegram Bot API transport (long polling)."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

import httpx

from ..errors import CollaboratorError

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4096
TYPING_REFRESH_SECONDS = 4.0
POLL_RETRY_SECONDS = 5.0

MessageHandler = Callable[[str, str], Awaitable[None]]


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """Split text into Telegram-sized chunks, preferring line breaks."""
    chunks: List[str] = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


class TelegramTransport:
    """Receives chat messages via ``getUpdates`` and replies via ``sendMessage``.

    The Telegram chat id is used as the session id.
    """

    name = "telegram"

    def __init__(
        self,
        bot_token: str,
        api_base: str = "https://api.telegram.org",
        poll_timeout: int = 30,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._token = bot_token
        self._api_base = api_base.rstrip("/")
        self._poll_timeout = poll_timeout
        self._client = http_client
        self._offset: Optional[int] = None
        self._handler_tasks: Set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._poll_timeout + 10)
        return self._client

    async def close(self) -> None:
        for task in list(self._handler_tasks):
            task.cancel()
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        client = await self._get_client()
        url = f"{self._api_base}/bot{self._token}/{method}"
        try:
            resp = await client.post(url, json=payload)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CollaboratorError(self.name, f"{method} failed: {e}", cause=e) from e
        if not data.get("ok"):
            raise CollaboratorError(
                self.name, f"{method} failed: {data.get('description', resp.status_code)}"
            )
        return data.get("result")

    async def send_message(self, conversation_id: str, text: str) -> None:
        chunks = split_message(text)
        if not chunks:
            logger.warning("Not sending empty message to chat %s", conversation_id)
            return
        for chunk in chunks:
            await self._call("sendMessage", {"chat_id": conversation_id, "text": chunk})
        logger.info("Sent %d message part(s) to chat %s", len(chunks), conversation_id)

    async def send_typing(self, conversation_id: str) -> None:
        await self._call("sendChatAction", {"chat_id": conversation_id, "action": "typing"})

    @contextlib.asynccontextmanager
    async def typing(self, conversation_id: str) -> AsyncIterator[None]:
        """Keep the 'typing…' indicator visible while the body runs."""

        async def refresh() -> None:
            while True:
                try:
                    await self.send_typing(conversation_id)
                except CollaboratorError as e:
                    logger.debug("Typing indicator failed for %s: %s", conversation_id, e)
                await asyncio.sleep(TYPING_REFRESH_SECONDS)

        task = asyncio.create_task(refresh())
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def get_updates(self) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "timeout": self._poll_timeout,
            "allowed_updates": ["message"],
        }
        if self._offset is not None:
            payload["offset"] = self._offset
        updates = await self._call("getUpdates", payload) or []
        if updates:
            self._offset = max(u["update_id"] for u in updates) + 1
        return updates

    async def dispatch(self, update: Dict[str, Any], handler: MessageHandler) -> Optional[asyncio.Task]:
        """Route one update. Text messages run ``handler`` in their own task."""
        message = update.get("message") or {}
        text = message.get("text")
        chat_id = (message.get("chat") or {}).get("id")
        if not text or chat_id is None:
            return None
        chat_id = str(chat_id)

        if text.strip().startswith("/start"):
            first_name = (message.get("from") or {}).get("first_name", "")
            await self.send_message(chat_id, f"Hello {first_name}!")
            return None

        task = asyncio.create_task(self._handle(handler, chat_id, text), name=f"telegram:{chat_id}")
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)
        return task

    async def _handle(self, handler: MessageHandler, chat_id: str, text: str) -> None:
        try:
            await handler(chat_id, text)
        except CollaboratorError as e:
            logger.error("Could not answer chat %s: %s", chat_id, e)
        except Exception as e:
            logger.exception("Handling message from chat %s failed: %s", chat_id, e)

    async def poll_forever(self, handler: MessageHandler) -> None:
        """Long-poll for updates until cancelled."""
        logger.info("Telegram polling started")
        while True:
            try:
                updates = await self.get_updates()
            except CollaboratorError as e:
                logger.warning("Telegram polling failed: %s", e)
                await asyncio.sleep(POLL_RETRY_SECONDS)
                continue
            for update in updates:
                try:
                    await self.dispatch(update, handler)
                except CollaboratorError as e:
                    logger.error("Telegram update %s failed: %s", update.get("update_id"), e)
