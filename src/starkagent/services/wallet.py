"""Starknet account generation, deployment and transaction submission.

Accounts are OpenZeppelin account contracts. A generated account has a
counterfactual address (salt = public key, constructor calldata = [public key])
that must be funded before ``deploy_account`` can succeed.
"""

import logging
import secrets
from typing import Any, Dict, List, Sequence

from starknet_py.hash.address import compute_address
from starknet_py.hash.selector import get_selector_from_name
from starknet_py.net.account.account import Account
from starknet_py.net.client_models import Call
from starknet_py.net.full_node_client import FullNodeClient
from starknet_py.net.models import StarknetChainId
from starknet_py.net.signer.stark_curve_signer import KeyPair

from ..errors import CollaboratorError
from ..models import AccountCredential, AccountSource, ResolvedAccount
from ..settings import Settings
from .credential_store import CredentialStore

logger = logging.getLogger(__name__)

# Order of the STARK curve; private keys live in [1, order).
STARK_CURVE_ORDER = 0x0800000000000010FFFFFFFFFFFFFFFFB781126DCAE7B2321E66A241ADC64D2F

_CHAIN_IDS = {
    "sepolia": StarknetChainId.SEPOLIA,
    "mainnet": StarknetChainId.MAINNET,
}


def _to_int(value: str | int) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 0)


def _to_hex(value: int) -> str:
    return hex(value)


def call_from_dict(data: Dict[str, Any]) -> Call:
    """Build an SDK Call from a ``{contractAddress, entrypoint, calldata}`` dict."""
    return Call(
        to_addr=_to_int(data["contractAddress"]),
        selector=get_selector_from_name(data["entrypoint"]),
        calldata=[_to_int(v) for v in data.get("calldata", [])],
    )


class WalletService:
    """Generates, deploys and resolves accounts; submits transactions."""

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        client: FullNodeClient | None = None,
    ) -> None:
        self._settings = settings
        self._credentials = credentials
        self._client = client

    @property
    def client(self) -> FullNodeClient:
        if self._client is None:
            self._client = FullNodeClient(node_url=self._settings.rpc_url or "")
        return self._client

    @property
    def chain(self) -> StarknetChainId:
        return _CHAIN_IDS[self._settings.chain]

    @property
    def fixed_account_configured(self) -> bool:
        return self._settings.fixed_account_configured

    def _class_hash(self) -> int:
        return _to_int(self._settings.account_class_hash)

    def generate_account(self) -> AccountCredential:
        """Create a fresh key pair and its undeployed account address."""
        private_key = secrets.randbelow(STARK_CURVE_ORDER - 1) + 1
        key_pair = KeyPair.from_private_key(private_key)
        address = compute_address(
            salt=key_pair.public_key,
            class_hash=self._class_hash(),
            constructor_calldata=[key_pair.public_key],
            deployer_address=0,
        )
        logger.info("Generated account %s", _to_hex(address))
        return AccountCredential(private_key=_to_hex(private_key), address=_to_hex(address))

    async def deploy_account(self, private_key: str) -> str:
        """Deploy the account for ``private_key`` and return its address."""
        key_pair = KeyPair.from_private_key(_to_int(private_key))
        address = compute_address(
            salt=key_pair.public_key,
            class_hash=self._class_hash(),
            constructor_calldata=[key_pair.public_key],
            deployer_address=0,
        )
        try:
            result = await Account.deploy_account_v3(
                address=address,
                class_hash=self._class_hash(),
                salt=key_pair.public_key,
                key_pair=key_pair,
                client=self.client,
                constructor_calldata=[key_pair.public_key],
                auto_estimate=True,
            )
            await result.wait_for_acceptance()
        except Exception as e:
            logger.error("Account deployment failed for %s: %s", _to_hex(address), e)
            raise CollaboratorError("wallet", f"deployment failed: {e}", cause=e) from e
        logger.info("Deployed account %s", _to_hex(address))
        return _to_hex(address)

    async def resolve_account(self, session_id: str) -> ResolvedAccount:
        """Decide which account the session acts with."""
        if self.fixed_account_configured:
            return ResolvedAccount(
                source=AccountSource.FIXED,
                address=self._settings.starknet_account_address,
                private_key=self._settings.starknet_private_key,
            )
        deployed = await self._credentials.read_deployed(session_id)
        if deployed is None:
            return ResolvedAccount(source=AccountSource.NONE)
        return ResolvedAccount(
            source=AccountSource.PER_SESSION,
            address=deployed.address,
            private_key=deployed.private_key,
        )

    async def get_account(self, session_id: str) -> Account | None:
        """Return an SDK account handle for the session, or None."""
        resolved = await self.resolve_account(session_id)
        if not resolved.exists:
            return None
        return Account(
            address=_to_int(resolved.address or "0"),
            client=self.client,
            key_pair=KeyPair.from_private_key(_to_int(resolved.private_key or "0")),
            chain=self.chain,
        )

    async def execute_calls(self, account: Account, calls: Sequence[Call]) -> str:
        """Submit ``calls`` as one transaction and return its hash."""
        try:
            response = await account.execute_v3(calls=list(calls), auto_estimate=True)
        except Exception as e:
            logger.error("Transaction from %s failed: %s", _to_hex(account.address), e)
            raise CollaboratorError("wallet", str(e), cause=e) from e
        tx_hash = _to_hex(response.transaction_hash)
        logger.info("Submitted transaction %s from %s", tx_hash, _to_hex(account.address))
        return tx_hash

    async def transfer(
        self, account: Account, token_address: str, recipient: str, amount: int
    ) -> str:
        """ERC-20 transfer of ``amount`` (smallest units) to ``recipient``."""
        # u256 calldata: low 128 bits, high 128 bits
        low = amount & ((1 << 128) - 1)
        high = amount >> 128
        call = Call(
            to_addr=_to_int(token_address),
            selector=get_selector_from_name("transfer"),
            calldata=[_to_int(recipient), low, high],
        )
        return await self.execute_calls(account, [call])

    async def get_balance(self, account: Account, token_address: str) -> int:
        try:
            return await account.get_balance(token_address=_to_int(token_address))
        except Exception as e:
            logger.error("Balance lookup for %s failed: %s", _to_hex(account.address), e)
            raise CollaboratorError("wallet", str(e), cause=e) from e

    async def execute_call_dicts(self, account: Account, calls: List[Dict[str, Any]]) -> str:
        return await self.execute_calls(account, [call_from_dict(c) for c in calls])
