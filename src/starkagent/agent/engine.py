import json
import logging
from typing import Any, Dict, List

from openai import AsyncOpenAI, OpenAIError
from pydantic import ValidationError

from ..errors import ToolNotFoundError
from ..models import Message, SessionState, ToolCall
from ..services.session_store import SessionStore
from ..settings import Settings
from .tools import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

MODEL_ERROR_TEXT = "Sorry, I could not reach the language model. Please try again in a moment."
ABORTED_TEXT = "Aborted: too many tool calls in one turn. Please rephrase or split the request."
NOT_EXECUTED_TEXT = "Aborted: tool call not executed."


def parse_model_message(message: Any) -> Message:
    """Convert a chat-completions response message into a history Message."""
    tool_calls: List[ToolCall] = []
    for tc in getattr(message, "tool_calls", None) or []:
        tool_calls.append(
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                raw_arguments=tc.function.arguments or "",
            )
        )
    return Message(role="assistant", content=message.content or "", tool_calls=tool_calls)


class DialogueEngine:
    """Runs one conversation turn: agent -> tools -> agent ... until a plain reply."""

    def __init__(
        self,
        settings: Settings,
        registry: ToolRegistry,
        sessions: SessionStore,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._sessions = sessions
        self._client = client

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self._settings.openai_api_key,
                base_url=self._settings.openai_base_url,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    def _build_messages(self, session: SessionState) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": self._settings.agent_system_prompt}
        ]
        messages.extend(m.to_openai() for m in session.messages)
        return messages

    async def _call_model(self, session: SessionState) -> Message:
        """The ``agent`` node: one completion over the full history."""
        request: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": self._build_messages(session),
            "temperature": self._settings.temperature,
        }
        tools = self._registry.schemas()
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"
        response = await self._get_client().chat.completions.create(**request)
        return parse_model_message(response.choices[0].message)

    async def _execute_tool_call(self, session: SessionState, call: ToolCall) -> str:
        try:
            call.arguments = json.loads(call.raw_arguments) if call.raw_arguments else {}
        except json.JSONDecodeError as e:
            logger.error("Invalid tool arguments for %s: %s", call.name, e)
            return f"Error: invalid arguments - {e}"
        if not isinstance(call.arguments, dict):
            return "Error: invalid arguments - expected a JSON object"

        try:
            return await self._registry.execute(
                call.name, call.arguments, ToolContext(session_id=session.session_id)
            )
        except ToolNotFoundError:
            logger.error("Tool %s not found", call.name)
            return f"Error: Tool {call.name} not found"
        except ValidationError as e:
            logger.warning("Rejected arguments for %s: %s", call.name, e)
            return f"Invalid arguments for {call.name}: {e}"

    async def _run_tools(self, session: SessionState, reply: Message) -> None:
        """The ``tools`` node: one result message per call, in call order."""
        results: List[Message] = []
        for call in reply.tool_calls:
            session.tool_calls_count += 1
            logger.info("Processing tool call #%d: %s", session.tool_calls_count, call.name)
            content = await self._execute_tool_call(session, call)
            results.append(
                Message(role="tool", content=content, tool_call_id=call.id, name=call.name)
            )
        self._sessions.append(session, *results)

    def _abort(self, session: SessionState, reply: Message) -> str:
        skipped = [
            Message(role="tool", content=NOT_EXECUTED_TEXT, tool_call_id=c.id, name=c.name)
            for c in reply.tool_calls
        ]
        self._sessions.append(session, *skipped, Message(role="assistant", content=ABORTED_TEXT))
        logger.warning(
            "Session %s: aborted turn after %d tool rounds",
            session.session_id,
            self._settings.max_rounds,
        )
        return ABORTED_TEXT

    async def run_turn(self, session_id: str, user_message: str) -> str:
        """Append ``user_message`` and return the final assistant text."""
        session = self._sessions.get_session(session_id)
        async with session.lock:
            logger.info("Starting turn for session %s", session_id)
            self._sessions.append(session, Message(role="user", content=user_message))

            rounds = 0
            while True:
                try:
                    reply = await self._call_model(session)
                except (OpenAIError, TimeoutError, ConnectionError) as e:
                    logger.exception("Model call failed for session %s: %s", session_id, e)
                    return MODEL_ERROR_TEXT

                self._sessions.append(session, reply)
                if not reply.has_pending_tool_calls:
                    logger.info("Session %s: turn finished after %d tool rounds", session_id, rounds)
                    return reply.content

                if rounds >= self._settings.max_rounds:
                    return self._abort(session, reply)

                logger.info(
                    "Session %s: tools called: %s",
                    session_id,
                    ", ".join(c.name for c in reply.tool_calls),
                )
                await self._run_tools(session, reply)
                rounds += 1
