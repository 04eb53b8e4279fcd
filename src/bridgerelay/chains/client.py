"""
Chain clients for bridgerelay.

``ChainClient`` is the contract the relay needs from a chain: a lazy,
gap-free stream of logs, block hashes for reorg detection, transaction
signing/broadcast and confirmation tracking. ``Web3ChainClient`` implements
it over JSON-RPC with web3.py.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import (
    BlockNotFound,
    ContractLogicError,
    TransactionNotFound,
    Web3RPCError,
)
from web3.middleware import ExtraDataToPOAMiddleware

from ..config import ChainConfig
from ..core.types import (
    ConfirmationResult,
    ConfirmationStatus,
    EventFilter,
    FunctionCall,
    RawLog,
    SignedTransaction,
    TxHandle,
    normalize_hash,
)
from ..errors import (
    ConfigurationError,
    ConnectionLost,
    RetryPolicy,
    SubmissionError,
    TransportError,
    retry_async,
)
from ..logging import LogContext, get_logger
from .abi import TOKEN_ABI
from .keys import KeyManager

logger = get_logger(__name__)

# Node messages meaning the exact same signed transaction is already pooled.
_ALREADY_KNOWN = ("already known", "known transaction", "already imported")

_TRANSPORT_EXCEPTIONS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)


class ChainClient(ABC):
    """Abstract chain client."""

    chain_id: int
    name: str

    async def subscribe(
        self,
        event_filter: EventFilter,
        from_block: Optional[int] = None,
        poll_interval: float = 2.0,
        max_range: int = 1000,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> AsyncIterator[RawLog]:
        """Infinite stream of logs matching ``event_filter``.

        Starts at ``from_block`` (default: current head) and resumes after
        the last fully delivered block, so a transport failure never leaves
        a gap. Duplicates are not suppressed here. Raises ``ConnectionLost``
        once transport retries are exhausted.

        ``on_progress`` is called with the next block to poll each time a
        block range has been fully delivered.
        """
        next_block = from_block if from_block is not None else await self.block_number()

        while True:
            head = await self.block_number()
            if head < next_block:
                await asyncio.sleep(poll_interval)
                continue

            to_block = min(head, next_block + max_range - 1)
            logs = await self.get_logs(event_filter, next_block, to_block)
            for log in sorted(logs, key=lambda l: (l.block_number, l.log_index)):
                yield log
            next_block = to_block + 1
            if on_progress is not None:
                on_progress(next_block)

    async def submit_transaction(
        self, call: FunctionCall, nonce: Optional[int] = None
    ) -> TxHandle:
        """Sign and broadcast ``call``."""
        signed = await self.prepare_transaction(call, nonce=nonce)
        return await self.broadcast(signed)

    @abstractmethod
    async def block_number(self) -> int:
        """Current head block number."""

    @abstractmethod
    async def get_block_hash(self, block_number: int) -> Optional[str]:
        """Hash of the canonical block at ``block_number``, None if beyond head."""

    @abstractmethod
    async def get_logs(
        self, event_filter: EventFilter, from_block: int, to_block: int
    ) -> List[RawLog]:
        """Logs in the inclusive block range."""

    @abstractmethod
    async def prepare_transaction(
        self, call: FunctionCall, nonce: Optional[int] = None
    ) -> SignedTransaction:
        """Build and sign ``call`` without broadcasting it."""

    @abstractmethod
    async def broadcast(self, signed: SignedTransaction) -> TxHandle:
        """Broadcast a signed transaction."""

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Receipt of a mined transaction, None if not mined."""

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Transaction known to the node (pooled or mined), None otherwise."""

    async def await_confirmation(
        self,
        handle: TxHandle,
        min_confirmations: int,
        timeout: float = 600.0,
        poll_interval: float = 3.0,
    ) -> ConfirmationResult:
        """Wait until ``handle`` is ``min_confirmations`` deep, reverts, or times out."""
        deadline = time.monotonic() + timeout

        while True:
            result = await self.check_confirmation(handle.tx_hash, min_confirmations)
            if result is not None:
                return result
            if time.monotonic() >= deadline:
                return ConfirmationResult(status=ConfirmationStatus.TIMEOUT)
            await asyncio.sleep(poll_interval)

    async def check_confirmation(
        self, tx_hash: str, min_confirmations: int
    ) -> Optional[ConfirmationResult]:
        """One confirmation probe; None while the outcome is still open."""
        receipt = await self.get_receipt(tx_hash)
        if receipt is None:
            return None
        if receipt.get("status") == 0:
            return ConfirmationResult(status=ConfirmationStatus.REVERTED, receipt=receipt)

        confirmations = await self.block_number() - receipt["blockNumber"] + 1
        if confirmations >= min_confirmations:
            return ConfirmationResult(
                status=ConfirmationStatus.CONFIRMED,
                receipt=receipt,
                confirmations=confirmations,
            )
        return None


def _receipt_to_dict(receipt: Any) -> Dict[str, Any]:
    return {
        "transactionHash": normalize_hash(receipt["transactionHash"]),
        "blockNumber": receipt["blockNumber"],
        "blockHash": normalize_hash(receipt["blockHash"]),
        "status": receipt.get("status"),
        "gasUsed": receipt.get("gasUsed"),
    }


def _log_to_raw(log: Any) -> RawLog:
    return RawLog(
        address=log["address"],
        topics=[normalize_hash(topic) for topic in log["topics"]],
        data=normalize_hash(log["data"]) if log["data"] else "0x",
        block_number=log["blockNumber"],
        block_hash=normalize_hash(log["blockHash"]),
        transaction_hash=normalize_hash(log["transactionHash"]),
        log_index=log["logIndex"],
        removed=bool(log.get("removed", False)),
    )


class Web3ChainClient(ChainClient):
    """JSON-RPC chain client built on ``AsyncWeb3``."""

    def __init__(self, config: ChainConfig, keys: Optional[KeyManager] = None):
        self.config = config
        self.chain_id = config.chain_id
        self.name = config.name
        self.keys = keys
        self.retry_policy = RetryPolicy(
            max_retries=config.retry_attempts,
            base_delay=config.retry_delay,
            max_delay=config.max_retry_delay,
            retryable_exceptions=(TransportError,),
        )
        self._context = LogContext(component="chain_client", chain_id=config.chain_id)
        self.w3 = self._connect()

    def _connect(self) -> AsyncWeb3:
        """Build a fresh Web3 connection."""
        w3 = AsyncWeb3(
            AsyncHTTPProvider(
                self.config.rpc_url,
                request_kwargs={
                    "timeout": aiohttp.ClientTimeout(total=self.config.timeout_seconds)
                },
            )
        )
        if self.config.enable_poa_middleware:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return w3

    def _reconnect(self, error: BaseException, attempt: int) -> None:
        logger.warning(
            f"Reconnecting to {self.name} after transport failure "
            f"(attempt {attempt}): {error}",
            context=self._context,
        )
        self.w3 = self._connect()

    async def _rpc(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """Run one RPC interaction with transport retries.

        Transport failures are retried with exponential backoff, rebuilding
        the connection between attempts, then surfaced as ``ConnectionLost``.
        """

        async def attempt() -> Any:
            try:
                return await func()
            except _TRANSPORT_EXCEPTIONS as e:
                raise TransportError(
                    f"{operation} failed on {self.name}: {e}",
                    endpoint=self.config.rpc_url,
                    cause=e,
                ) from e

        def exhausted(error: BaseException, attempts: int) -> ConnectionLost:
            return ConnectionLost(
                f"{operation} on {self.name} failed after {attempts} attempts: {error}",
                endpoint=self.config.rpc_url,
                attempts=attempts,
                cause=error,
            )

        return await retry_async(
            attempt,
            policy=self.retry_policy,
            operation=f"{self.name}:{operation}",
            on_retry=self._reconnect,
            on_exhausted=exhausted,
        )

    async def _read(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """Read-only RPC: node-side errors count as transport failures."""

        async def guarded() -> Any:
            try:
                return await func()
            except Web3RPCError as e:
                raise TransportError(
                    f"{operation} rejected by {self.name}: {e}",
                    endpoint=self.config.rpc_url,
                    cause=e,
                ) from e

        return await self._rpc(operation, guarded)

    async def verify_chain_id(self) -> None:
        """Check the endpoint serves the configured chain."""
        remote = await self._read("eth_chainId", lambda: self.w3.eth.chain_id)
        if remote != self.chain_id:
            raise ConfigurationError(
                f"{self.name} endpoint reports chain id {remote}, "
                f"configured {self.chain_id}",
                config_key="chain_id",
                config_value=self.chain_id,
            )

    async def block_number(self) -> int:
        return await self._read("eth_blockNumber", lambda: self.w3.eth.block_number)

    async def get_block_hash(self, block_number: int) -> Optional[str]:
        async def fetch() -> Optional[str]:
            try:
                block = await self.w3.eth.get_block(block_number)
            except BlockNotFound:
                return None
            return normalize_hash(block["hash"])

        return await self._read("eth_getBlockByNumber", fetch)

    async def get_logs(
        self, event_filter: EventFilter, from_block: int, to_block: int
    ) -> List[RawLog]:
        params = event_filter.to_params(from_block, to_block)
        logs = await self._read("eth_getLogs", lambda: self.w3.eth.get_logs(params))
        return [_log_to_raw(log) for log in logs]

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        async def fetch() -> Optional[Dict[str, Any]]:
            try:
                receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None
            return _receipt_to_dict(receipt)

        return await self._read("eth_getTransactionReceipt", fetch)

    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        async def fetch() -> Optional[Dict[str, Any]]:
            try:
                tx = await self.w3.eth.get_transaction(tx_hash)
            except TransactionNotFound:
                return None
            return {
                "hash": normalize_hash(tx["hash"]),
                "nonce": tx["nonce"],
                "blockNumber": tx.get("blockNumber"),
            }

        return await self._read("eth_getTransactionByHash", fetch)

    async def _fee_fields(self) -> Dict[str, int]:
        """EIP-1559 fee fields when the chain has a base fee, legacy otherwise."""
        latest = await self._read("eth_getBlockByNumber", lambda: self.w3.eth.get_block("latest"))
        gas_price = await self._read("eth_gasPrice", lambda: self.w3.eth.gas_price)
        if latest.get("baseFeePerGas") is not None:
            priority = max(int(gas_price * 0.1), 1_000_000_000)
            return {
                "type": 2,
                "maxFeePerGas": gas_price * 2 + priority,
                "maxPriorityFeePerGas": priority,
            }
        return {"type": 0, "gasPrice": gas_price}

    async def prepare_transaction(
        self, call: FunctionCall, nonce: Optional[int] = None
    ) -> SignedTransaction:
        if self.keys is None:
            raise SubmissionError(
                f"No relayer key configured for {self.name}", retryable=False
            )

        sender = self.keys.address
        if nonce is None:
            nonce = await self._read(
                "eth_getTransactionCount",
                lambda: self.w3.eth.get_transaction_count(sender, "pending"),
            )

        contract = self.w3.eth.contract(address=call.contract_address, abi=TOKEN_ABI)
        function = getattr(contract.functions, call.function_name)(*call.args)

        tx: Dict[str, Any] = {"from": sender, "nonce": nonce, "chainId": self.chain_id}
        tx.update(await self._fee_fields())

        async def estimate() -> int:
            try:
                return await function.estimate_gas({"from": sender})
            except ContractLogicError as e:
                raise SubmissionError(
                    f"{call.function_name} would revert on {self.name}: {e}",
                    reverted=True,
                    cause=e,
                ) from e
            except Web3RPCError as e:
                raise SubmissionError(
                    f"Gas estimation rejected by {self.name}: {e}", cause=e
                ) from e

        tx["gas"] = int(await self._rpc("eth_estimateGas", estimate) * 1.2)

        built = await function.build_transaction(tx)
        signed = self.keys.sign_transaction(built)
        return SignedTransaction(
            tx_hash=normalize_hash(signed.hash),
            raw_transaction=bytes(signed.raw_transaction),
            nonce=nonce,
            chain_id=self.chain_id,
        )

    async def broadcast(self, signed: SignedTransaction) -> TxHandle:
        async def send() -> None:
            try:
                await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except Web3RPCError as e:
                message = str(e).lower()
                if any(marker in message for marker in _ALREADY_KNOWN):
                    logger.debug(
                        f"Transaction {signed.tx_hash} already known to {self.name}",
                        context=self._context,
                    )
                    return
                raise SubmissionError(
                    f"Broadcast rejected by {self.name}: {e}",
                    tx_hash=signed.tx_hash,
                    cause=e,
                ) from e

        await self._rpc("eth_sendRawTransaction", send)
        logger.info(
            f"Broadcast transaction {signed.tx_hash} (nonce {signed.nonce})",
            context=LogContext(
                component="chain_client", chain_id=self.chain_id, tx_hash=signed.tx_hash
            ),
        )
        return TxHandle(tx_hash=signed.tx_hash, nonce=signed.nonce, chain_id=self.chain_id)


__all__ = ["ChainClient", "Web3ChainClient"]
