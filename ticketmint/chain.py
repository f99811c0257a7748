"""
On-chain side of ticket issuance.

`ChainClient` is the async interface the orchestrators depend on;
`Web3ChainClient` implements it with web3.py against the EventTicket NFT
(and, for sale constraints, the TicketSale contract). Every failure leaves
as `ChainCallFailed` tagged with the stage it happened in:

    simulate  -> the call reverted in eth_call, nothing was submitted
    send      -> signing or submission failed, nothing was mined
    receipt   -> submitted, outcome unknown or reverted; reconcile by hand
    read      -> a view call failed
"""
from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractCustomError, ContractLogicError
from web3.logs import DISCARD

from . import config
from .errors import ChainCallFailed, ServerMisconfigured
from .helpers import checksum_address, hex32
from .infra.timings import timeit
from .logs import log_event

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_BYTES32 = "0x" + "00" * 32

PAYMENT_ALREADY_USED = "PaymentAlreadyUsed"
_ALREADY_USED_SELECTOR = Web3.keccak(text=f"{PAYMENT_ALREADY_USED}(bytes32)")[:4].hex()


TICKET_NFT_ABI = [
    {"type": "function", "name": "safeMint", "stateMutability": "nonpayable",
     "inputs": [{"name": "to", "type": "address"},
                {"name": "uri", "type": "string"},
                {"name": "eventId", "type": "uint256"},
                {"name": "paymentId", "type": "bytes32"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"type": "function", "name": "ownerOf", "stateMutability": "view",
     "inputs": [{"name": "tokenId", "type": "uint256"}],
     "outputs": [{"name": "", "type": "address"}]},
    {"type": "function", "name": "paymentIdOf", "stateMutability": "view",
     "inputs": [{"name": "tokenId", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bytes32"}]},
    {"type": "function", "name": "tickets", "stateMutability": "view",
     "inputs": [{"name": "tokenId", "type": "uint256"}],
     "outputs": [{"name": "eventId", "type": "uint256"},
                 {"name": "claimed", "type": "bool"}]},
    {"type": "function", "name": "safeTransferFrom", "stateMutability": "nonpayable",
     "inputs": [{"name": "from", "type": "address"},
                {"name": "to", "type": "address"},
                {"name": "tokenId", "type": "uint256"}],
     "outputs": []},
    {"type": "function", "name": "claim", "stateMutability": "nonpayable",
     "inputs": [{"name": "tokenId", "type": "uint256"}],
     "outputs": []},
    {"type": "event", "name": "Transfer", "anonymous": False,
     "inputs": [{"name": "from", "type": "address", "indexed": True},
                {"name": "to", "type": "address", "indexed": True},
                {"name": "tokenId", "type": "uint256", "indexed": True}]},
]

TICKET_SALE_ABI = [
    {"type": "function", "name": "eventConfigs", "stateMutability": "view",
     "inputs": [{"name": "", "type": "uint256"}],
     "outputs": [{"name": "priceWei", "type": "uint256"},
                 {"name": "maxSupply", "type": "uint256"},
                 {"name": "paused", "type": "bool"},
                 {"name": "minted", "type": "uint256"},
                 {"name": "exists", "type": "bool"}]},
]


@dataclass(frozen=True)
class EventConfig:
    price_wei: int
    max_supply: int
    paused: bool
    minted: int
    exists: bool


@dataclass(frozen=True)
class MintResult:
    already_used: bool = False
    tx_hash: Optional[str] = None
    token_id: Optional[str] = None
    nft_address: Optional[str] = None


@dataclass(frozen=True)
class TicketInfo:
    owner: str
    event_id: str
    claimed: bool
    payment_id: str


class ChainClient(ABC):
    nft_address: str
    custody_address: Optional[str]

    @abstractmethod
    async def read_event_config(self, event_id: int) -> EventConfig: ...

    # already_used=True when the contract rejects a reused payment id
    @abstractmethod
    async def mint(self, *, to: str, uri: str, event_id: int,
                   payment_id: str) -> MintResult: ...

    @abstractmethod
    async def owner_of(self, token_id: int) -> str: ...

    @abstractmethod
    async def payment_id_of(self, token_id: int) -> str: ...

    @abstractmethod
    async def ticket_info(self, token_id: int) -> TicketInfo: ...

    # custody wallet -> to; returns the tx hash
    @abstractmethod
    async def transfer_from_custody(self, *, token_id: int, to: str) -> str: ...

    # on-chain claim marker; returns the tx hash
    @abstractmethod
    async def mark_claimed(self, token_id: int) -> str: ...

    # latest block; used as an RPC reachability check
    @abstractmethod
    async def block_number(self) -> int: ...


def _is_already_used(exc: Exception) -> bool:
    if isinstance(exc, ContractCustomError):
        data = str(exc.data or "")
        if data.lower().removeprefix("0x").startswith(_ALREADY_USED_SELECTOR):
            return True
    return PAYMENT_ALREADY_USED in str(exc)


class Web3ChainClient(ChainClient):
    def __init__(self, *, rpc_url: str, nft_address: str, minter_key: str,
                 custody_key: Optional[str] = None,
                 custody_address: Optional[str] = None,
                 sale_address: Optional[str] = None,
                 chain_id: Optional[int] = None,
                 tx_timeout: int = 120):
        nft = checksum_address(nft_address)
        if nft is None:
            raise ServerMisconfigured("TICKET_NFT_ADDRESS is not a valid address")
        if not minter_key:
            raise ServerMisconfigured("BACKEND_WALLET_PRIVATE_KEY is not set")

        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.chain_id = chain_id
        self.tx_timeout = tx_timeout
        self.nft_address = nft
        self.nft = self.w3.eth.contract(address=nft, abi=TICKET_NFT_ABI)
        sale = checksum_address(sale_address) if sale_address else None
        self.sale = (
            self.w3.eth.contract(address=sale, abi=TICKET_SALE_ABI) if sale else None
        )

        self.minter = Account.from_key(minter_key)
        self.custody = Account.from_key(custody_key) if custody_key else None
        # mint target for fiat orders without a buyer wallet
        self.custody_address = (
            checksum_address(custody_address)
            or (self.custody.address if self.custody else self.minter.address)
        )

    @classmethod
    def from_config(cls) -> "Web3ChainClient":
        return cls(
            rpc_url=config.RPC_URL,
            nft_address=config.TICKET_NFT_ADDRESS,
            minter_key=config.BACKEND_WALLET_PRIVATE_KEY,
            custody_key=config.CUSTODY_WALLET_PRIVATE_KEY or None,
            custody_address=config.CUSTODY_WALLET_ADDRESS or None,
            sale_address=config.TICKET_SALE_ADDRESS or None,
            chain_id=config.CHAIN_ID,
            tx_timeout=config.CHAIN_TX_TIMEOUT_SECONDS,
        )

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    async def _transact(self, fn, account, kind: str):
        """simulate -> sign/send -> wait for receipt; returns the receipt."""
        try:
            async with timeit(f"chain.{kind}.simulate"):
                await fn.call({"from": account.address})
        except ContractLogicError:
            raise
        except Exception as exc:
            raise ChainCallFailed("simulate", str(exc)) from exc

        try:
            async with timeit(f"chain.{kind}.send"):
                tx = await fn.build_transaction({
                    "from": account.address,
                    "nonce": await self.w3.eth.get_transaction_count(
                        account.address, "pending"
                    ),
                    "chainId": self.chain_id or await self.w3.eth.chain_id,
                })
                signed = account.sign_transaction(tx)
                tx_hash = await self.w3.eth.send_raw_transaction(
                    signed.raw_transaction
                )
        except Exception as exc:
            raise ChainCallFailed("send", str(exc)) from exc

        try:
            async with timeit(f"chain.{kind}.receipt"):
                receipt = await self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self.tx_timeout
                )
        except Exception as exc:
            raise ChainCallFailed("receipt", f"{hex32(tx_hash)}: {exc}") from exc
        if receipt["status"] != 1:
            raise ChainCallFailed("receipt", f"{hex32(tx_hash)} reverted")
        return receipt

    async def mint(self, *, to, uri, event_id, payment_id) -> MintResult:
        fn = self.nft.functions.safeMint(
            Web3.to_checksum_address(to), uri, int(event_id),
            bytes.fromhex(payment_id.removeprefix("0x")),
        )
        try:
            receipt = await self._transact(fn, self.minter, "mint")
        except ContractLogicError as exc:
            if _is_already_used(exc):
                log_event(logger, "chain.mint.already_used", payment_id=payment_id)
                return MintResult(already_used=True)
            raise ChainCallFailed("simulate", str(exc)) from exc

        transfers = self.nft.events.Transfer().process_receipt(receipt, errors=DISCARD)
        minted = next(
            (ev for ev in transfers
             if ev["address"] == self.nft_address and ev["args"]["from"] == ZERO_ADDRESS),
            None,
        )
        tx_hash = hex32(receipt["transactionHash"])
        if minted is None:
            raise ChainCallFailed("receipt", f"{tx_hash}: mint Transfer event not found")
        return MintResult(
            tx_hash=tx_hash,
            token_id=str(minted["args"]["tokenId"]),
            nft_address=self.nft_address,
        )

    async def transfer_from_custody(self, *, token_id, to) -> str:
        if self.custody is None:
            raise ServerMisconfigured("CUSTODY_WALLET_PRIVATE_KEY is not set")
        fn = self.nft.functions.safeTransferFrom(
            self.custody.address, Web3.to_checksum_address(to), int(token_id)
        )
        try:
            receipt = await self._transact(fn, self.custody, "transfer")
        except ContractLogicError as exc:
            raise ChainCallFailed("simulate", str(exc)) from exc
        return hex32(receipt["transactionHash"])

    async def mark_claimed(self, token_id) -> str:
        account = self.custody or self.minter
        fn = self.nft.functions.claim(int(token_id))
        try:
            receipt = await self._transact(fn, account, "claim")
        except ContractLogicError as exc:
            raise ChainCallFailed("simulate", str(exc)) from exc
        return hex32(receipt["transactionHash"])

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def _read(self, kind: str, call):
        try:
            async with timeit(f"chain.read.{kind}"):
                return await call
        except Exception as exc:
            raise ChainCallFailed("read", f"{kind}: {exc}") from exc

    async def read_event_config(self, event_id) -> EventConfig:
        if self.sale is None:
            raise ServerMisconfigured("TICKET_SALE_ADDRESS is not set")
        price, supply, paused, minted, exists = await self._read(
            "eventConfigs", self.sale.functions.eventConfigs(int(event_id)).call()
        )
        return EventConfig(int(price), int(supply), bool(paused), int(minted), bool(exists))

    async def block_number(self) -> int:
        return int(await self._read("blockNumber", self.w3.eth.block_number))

    async def owner_of(self, token_id) -> str:
        owner = await self._read("ownerOf", self.nft.functions.ownerOf(int(token_id)).call())
        return Web3.to_checksum_address(owner)

    async def payment_id_of(self, token_id) -> str:
        raw = await self._read(
            "paymentIdOf", self.nft.functions.paymentIdOf(int(token_id)).call()
        )
        return hex32(raw).lower()

    async def ticket_info(self, token_id) -> TicketInfo:
        owner, meta, payment_id = await asyncio.gather(
            self.owner_of(token_id),
            self._read("tickets", self.nft.functions.tickets(int(token_id)).call()),
            self.payment_id_of(token_id),
        )
        return TicketInfo(
            owner=owner, event_id=str(meta[0]), claimed=bool(meta[1]),
            payment_id=payment_id,
        )
