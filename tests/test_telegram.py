import asyncio
import json

import httpx
import pytest

from starkagent.errors import CollaboratorError
from starkagent.transports.hub import ChatTransportHub
from starkagent.transports.telegram import TelegramTransport, split_message


class Recorder:
    """httpx handler that records Bot API calls and answers from a script."""

    def __init__(self, results: dict | None = None) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.results = results or {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        payload = json.loads(request.content or b"{}")
        self.calls.append((method, payload))
        result = self.results.get(method, True)
        if isinstance(result, list) and result and isinstance(result[0], list):
            result = result.pop(0)
        if result is False:
            return httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})
        return httpx.Response(200, json={"ok": True, "result": result})


def _transport(recorder: Recorder) -> TelegramTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return TelegramTransport("TOKEN", http_client=client, poll_timeout=1)


def test_split_message() -> None:
    assert split_message("") == []
    assert split_message("short") == ["short"]
    parts = split_message("a" * 5000)
    assert [len(p) for p in parts] == [4096, 904]
    assert split_message("line1\nline2", limit=8) == ["line1", "line2"]


@pytest.mark.asyncio
async def test_send_message_posts_to_bot_api() -> None:
    recorder = Recorder()
    await _transport(recorder).send_message("42", "hello")
    assert recorder.calls == [("sendMessage", {"chat_id": "42", "text": "hello"})]


@pytest.mark.asyncio
async def test_api_error_is_collaborator_error() -> None:
    recorder = Recorder({"sendMessage": False})
    with pytest.raises(CollaboratorError, match="chat not found"):
        await _transport(recorder).send_message("42", "hello")


@pytest.mark.asyncio
async def test_get_updates_advances_offset() -> None:
    updates = [{"update_id": 7, "message": {"text": "hi", "chat": {"id": 1}}}]
    recorder = Recorder({"getUpdates": [updates, []]})
    transport = _transport(recorder)
    assert await transport.get_updates() == updates
    await transport.get_updates()
    assert "offset" not in recorder.calls[0][1]
    assert recorder.calls[1][1]["offset"] == 8


@pytest.mark.asyncio
async def test_start_command_greets_user() -> None:
    recorder = Recorder()
    handled = []

    async def handler(chat_id: str, text: str) -> None:
        handled.append((chat_id, text))

    update = {"update_id": 1, "message": {"text": "/start", "chat": {"id": 5}, "from": {"first_name": "Ada"}}}
    assert await _transport(recorder).dispatch(update, handler) is None
    assert recorder.calls == [("sendMessage", {"chat_id": "5", "text": "Hello Ada!"})]
    assert handled == []


@pytest.mark.asyncio
async def test_text_message_runs_handler_with_chat_id() -> None:
    handled = []

    async def handler(chat_id: str, text: str) -> None:
        handled.append((chat_id, text))

    update = {"update_id": 2, "message": {"text": "balance?", "chat": {"id": 5}}}
    task = await _transport(Recorder()).dispatch(update, handler)
    await task
    assert handled == [("5", "balance?")]


@pytest.mark.asyncio
async def test_typing_indicator_stops_after_body() -> None:
    recorder = Recorder()
    async with _transport(recorder).typing("5"):
        await asyncio.sleep(0.01)
    assert recorder.calls[0] == ("sendChatAction", {"chat_id": "5", "action": "typing"})


@pytest.mark.asyncio
async def test_handler_crash_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    async def handler(chat_id: str, text: str) -> None:
        raise RuntimeError("engine exploded")

    update = {"update_id": 3, "message": {"text": "hi", "chat": {"id": 9}}}
    task = await _transport(Recorder()).dispatch(update, handler)
    with caplog.at_level("ERROR", logger="starkagent.transports.telegram"):
        await task
    assert task.exception() is None
    assert "chat 9" in caplog.text
    assert "engine exploded" in caplog.text


class FakeTransport:
    name = "fake"

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send_message(self, conversation_id: str, text: str) -> None:
        self.sent.append((conversation_id, text))


@pytest.mark.asyncio
async def test_hub_routes_to_bound_transport() -> None:
    hub = ChatTransportHub()
    web, tg = FakeTransport(), FakeTransport()
    hub.bind("s1", web)
    await hub.send_message("s1", "hi")
    await hub.send_message("unbound", "lost")
    assert web.sent == [("s1", "hi")]

    hub.set_default(tg)
    await hub.send_message("unbound", "found")
    assert tg.sent == [("unbound", "found")]

    hub.unbind("s1", tg)
    assert hub.transport_for("s1") is web
    hub.unbind("s1", web)
    assert hub.transport_for("s1") is tg
