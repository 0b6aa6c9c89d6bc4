"""
Escrow client for the on-chain poker escrow contract.

Thin typed wrapper over a wallet-signing transport. The transport does the
ABI encoding, signing and broadcasting; this module picks contract/function,
converts arguments, and turns transport failures into the error taxonomy.

Writes are never retried here: a retried write can move money twice.
Reads are retried a few times before giving up.
"""
import asyncio
import logging
from typing import Any, List, Optional, Protocol, Sequence

from errors import ContractReverted, NetworkError, UserRejected, WalletNotConnected
from config import POKER_ESCROW_ADDRESS, USDC_ADDRESS
from .contracts import POKER_ESCROW_ABI, USDC_ABI, format_usdc, to_onchain_game_id

logger = logging.getLogger(__name__)

# EIP-1193 "user rejected request"
USER_REJECTED_CODE = 4001


class WalletTransport(Protocol):
    """Wallet-signing transport (browser wallet, RPC signer, test double)."""

    account: Optional[str]

    async def write_contract(self, address: str, abi: list, function_name: str, args: list) -> str:
        """Sign and broadcast a contract call. Returns the tx hash."""
        ...

    async def read_contract(self, address: str, abi: list, function_name: str, args: list) -> Any:
        """Call a view function."""
        ...

    async def wait_for_transaction_receipt(self, tx_hash: str) -> dict:
        """Block until the transaction is mined. Receipt has a ``status`` key."""
        ...


def classify_transport_error(error: Exception, tx_hash: Optional[str] = None) -> Exception:
    """Map a raw transport exception onto the error taxonomy."""
    if isinstance(error, (UserRejected, NetworkError, ContractReverted, WalletNotConnected)):
        return error

    message = str(error) or error.__class__.__name__
    lowered = message.lower()

    if getattr(error, "code", None) == USER_REJECTED_CODE or "rejected" in lowered or "denied" in lowered:
        return UserRejected(f"Transaction was rejected in the wallet: {message}")
    if "revert" in lowered:
        return ContractReverted(message, tx_hash=tx_hash)
    return NetworkError(f"Transaction failed: {message}")


class EscrowClient:
    """Typed interface to the poker escrow and its USDC token."""

    def __init__(
        self,
        transport: WalletTransport,
        escrow_address: str = POKER_ESCROW_ADDRESS,
        usdc_address: str = USDC_ADDRESS,
        read_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.transport = transport
        self.escrow_address = escrow_address
        self.usdc_address = usdc_address
        self.read_retries = read_retries
        self.retry_delay = retry_delay

    @property
    def account(self) -> Optional[str]:
        return getattr(self.transport, "account", None)

    def _require_account(self) -> str:
        if not self.account:
            raise WalletNotConnected()
        return self.account

    # === Writes ===

    async def _write(self, address: str, abi: list, function_name: str, args: list) -> str:
        self._require_account()
        try:
            tx_hash = await self.transport.write_contract(address, abi, function_name, args)
        except Exception as e:
            classified = classify_transport_error(e)
            logger.warning(f"[ESCROW] {function_name} failed: {classified}")
            raise classified from e
        logger.info(f"[ESCROW] {function_name} submitted by {self.account} (tx: {tx_hash})")
        return tx_hash

    async def create_game(self, game_id: str) -> str:
        return await self._write(
            self.escrow_address, POKER_ESCROW_ABI, "createGame", [to_onchain_game_id(game_id)]
        )

    async def approve(self, amount: int) -> str:
        """Let the escrow contract pull ``amount`` USDC base units."""
        return await self._write(self.usdc_address, USDC_ABI, "approve", [self.escrow_address, amount])

    async def deposit(self, game_id: str, amount: int) -> str:
        logger.info(f"[ESCROW] Depositing {format_usdc(amount)} USDC into game {game_id}")
        return await self._write(
            self.escrow_address, POKER_ESCROW_ABI, "depositUSDC", [to_onchain_game_id(game_id), amount]
        )

    async def distribute_payout(
        self,
        game_id: str,
        addresses: Sequence[str],
        usdc_amounts: Sequence[int],
        other_amounts: Sequence[int],
    ) -> str:
        """Pay every player in one batch transaction."""
        if not (len(addresses) == len(usdc_amounts) == len(other_amounts)):
            raise ValueError("Payout lists must have the same length")
        return await self._write(
            self.escrow_address,
            POKER_ESCROW_ABI,
            "distributePayout",
            [to_onchain_game_id(game_id), list(addresses), list(usdc_amounts), list(other_amounts)],
        )

    async def wait_for_confirmation(self, tx_hash: str) -> dict:
        """Wait for a transaction receipt.

        Raises:
            ContractReverted: mined but failed
            NetworkError: transport could not produce a receipt
        """
        try:
            receipt = await self.transport.wait_for_transaction_receipt(tx_hash)
        except Exception as e:
            classified = classify_transport_error(e, tx_hash=tx_hash)
            logger.warning(f"[ESCROW] Waiting for {tx_hash} failed: {classified}")
            raise classified from e

        if receipt.get("status") not in ("success", 1, True):
            reason = receipt.get("revert_reason") or "execution reverted"
            logger.error(f"[ESCROW] Transaction {tx_hash} reverted: {reason}")
            raise ContractReverted(reason, tx_hash=tx_hash)

        logger.info(f"[ESCROW] Transaction {tx_hash} confirmed")
        return receipt

    # === Reads ===

    async def _read(self, address: str, abi: list, function_name: str, args: List[Any]) -> int:
        last_error = None

        for attempt in range(self.read_retries):
            try:
                value = await self.transport.read_contract(address, abi, function_name, args)
                return int(value)
            except Exception as e:
                last_error = e
                logger.warning(f"[ESCROW] {function_name} attempt {attempt + 1}/{self.read_retries} failed: {e}")
                if attempt < self.read_retries - 1:
                    await asyncio.sleep(self.retry_delay)

        # Don't return 0 on failure: callers decide what a failed read means
        raise NetworkError(f"Failed to read {function_name}: {last_error}")

    async def allowance(self, owner: str) -> int:
        """USDC the escrow contract may currently pull from ``owner``."""
        return await self._read(self.usdc_address, USDC_ABI, "allowance", [owner, self.escrow_address])

    async def balance_of(self, owner: str) -> int:
        return await self._read(self.usdc_address, USDC_ABI, "balanceOf", [owner])
