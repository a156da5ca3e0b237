import logging
from typing import Dict, Protocol

logger = logging.getLogger(__name__)


class ChatTransport(Protocol):
    name: str

    async def send_message(self, conversation_id: str, text: str) -> None: ...


class ChatTransportHub:
    """Routes outbound messages to the transport a session last spoke through."""

    def __init__(self, default: ChatTransport | None = None) -> None:
        self._bindings: Dict[str, ChatTransport] = {}
        self._default = default

    def set_default(self, transport: ChatTransport | None) -> None:
        """Transport for sessions that have not spoken since startup."""
        self._default = transport

    def bind(self, session_id: str, transport: ChatTransport) -> None:
        self._bindings[session_id] = transport

    def unbind(self, session_id: str, transport: ChatTransport | None = None) -> None:
        """Remove a binding; with ``transport`` set, only if it is still the bound one."""
        current = self._bindings.get(session_id)
        if current is None:
            return
        if transport is None or current is transport:
            del self._bindings[session_id]

    def transport_for(self, session_id: str) -> ChatTransport | None:
        return self._bindings.get(session_id, self._default)

    async def send_message(self, session_id: str, text: str) -> None:
        transport = self.transport_for(session_id)
        if transport is None:
            logger.warning("No chat bound to session %s; dropping message", session_id)
            return
        try:
            await transport.send_message(session_id, text)
        except (ConnectionError, RuntimeError) as e:
            logger.error("Delivery via %s to %s failed: %s", transport.name, session_id, e)
