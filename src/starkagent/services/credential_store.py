import logging

from ..models import AccountCredential
from .redis import KeyValueStore

logger = logging.getLogger(__name__)

GENERATED_PRIVATE_KEY_FIELD = "generatedAccountPrivateKey"
PRIVATE_KEY_FIELD = "privateKey"
ACCOUNT_ADDRESS_FIELD = "accountAddress"


def session_key(session_id: str, field_name: str) -> str:
    """Storage key for one field of a session: ``<sessionId>:<field>``."""
    return f"{session_id}:{field_name}"


class CredentialStore:
    """Generated and deployed account credentials, per session, in the key-value store."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def save_generated(self, session_id: str, private_key: str) -> bool:
        """Store a generated, not yet deployed key. Replaces any previous one."""
        ok = await self._store.set(
            session_key(session_id, GENERATED_PRIVATE_KEY_FIELD), private_key
        )
        if not ok:
            logger.warning("Could not persist generated key for session %s", session_id)
        return ok

    async def read_generated(self, session_id: str) -> str | None:
        return await self._store.get(session_key(session_id, GENERATED_PRIVATE_KEY_FIELD))

    async def save_deployed(self, session_id: str, credential: AccountCredential) -> bool:
        """Store the deployed account's private key and address."""
        ok_key = await self._store.set(
            session_key(session_id, PRIVATE_KEY_FIELD), credential.private_key
        )
        ok_addr = await self._store.set(
            session_key(session_id, ACCOUNT_ADDRESS_FIELD), credential.address
        )
        if not (ok_key and ok_addr):
            logger.warning("Could not persist deployed account for session %s", session_id)
        return ok_key and ok_addr

    async def read_deployed(self, session_id: str) -> AccountCredential | None:
        """Return the deployed credential, or None unless both fields are stored."""
        private_key = await self._store.get(session_key(session_id, PRIVATE_KEY_FIELD))
        address = await self._store.get(session_key(session_id, ACCOUNT_ADDRESS_FIELD))
        if not private_key or not address:
            return None
        return AccountCredential(private_key=private_key, address=address)
