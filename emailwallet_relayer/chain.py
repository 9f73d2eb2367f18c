"""
Chain collaborator: relayer registry, unclaimed entries and PSI points.
"""

from dataclasses import dataclass
from typing import Protocol, Union

import structlog
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from .models import Point

logger = structlog.get_logger()


# Contract ABIs (minimal)
RELAYER_HANDLER_ABI = [
    {
        "inputs": [],
        "name": "getRelayers",
        "outputs": [{"name": "", "type": "address[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "", "type": "address"}],
        "name": "relayers",
        "outputs": [
            {"name": "randHash", "type": "bytes32"},
            {"name": "emailAddr", "type": "string"},
            {"name": "hostname", "type": "string"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

UNCLAIMS_HANDLER_ABI = [
    {
        "inputs": [{"name": "id", "type": "uint256"}],
        "name": "getUnclaimedFund",
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "id", "type": "uint256"},
                    {"name": "emailAddrCommit", "type": "bytes32"},
                    {"name": "sender", "type": "address"},
                    {"name": "tokenAddr", "type": "address"},
                    {"name": "amount", "type": "uint256"},
                    {"name": "expiryTime", "type": "uint256"},
                ],
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "id", "type": "uint256"}],
        "name": "getUnclaimedState",
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "id", "type": "uint256"},
                    {"name": "emailAddrCommit", "type": "bytes32"},
                    {"name": "extensionAddr", "type": "address"},
                    {"name": "sender", "type": "address"},
                    {"name": "state", "type": "bytes"},
                    {"name": "expiryTime", "type": "uint256"},
                ],
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

ACCOUNT_HANDLER_ABI = [
    {
        "inputs": [{"name": "", "type": "bytes32"}],
        "name": "pointerOfPSIPoint",
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ZERO_BYTES32 = bytes(32)


@dataclass(frozen=True)
class UnclaimedFund:
    """Tokens escrowed for an email address that has no wallet yet."""

    id: int
    email_addr_commit: bytes
    expiry_time: int
    sender: str = ""
    token_addr: str = ""
    amount: int = 0

    @property
    def kind(self) -> str:
        return "fund"

    @property
    def is_fund(self) -> bool:
        return True


@dataclass(frozen=True)
class UnclaimedState:
    """Extension state escrowed for an email address."""

    id: int
    email_addr_commit: bytes
    expiry_time: int
    extension_addr: str = ""
    sender: str = ""
    state: bytes = b""

    @property
    def kind(self) -> str:
        return "state"

    @property
    def is_fund(self) -> bool:
        return False


UnclaimedEntry = Union[UnclaimedFund, UnclaimedState]


class ChainClient(Protocol):
    """Read-only chain queries used by PSI and claim admission."""

    async def get_relayers(self) -> list[str]: ...

    async def query_unclaimed_fund(self, id: int) -> UnclaimedFund: ...

    async def query_unclaimed_state(self, id: int) -> UnclaimedState: ...

    async def check_if_point_registered(self, point: Point) -> bool: ...


def psi_point_key(point: Point) -> bytes:
    """Storage key of a PSI point: keccak256(abi.encodePacked(x, y))."""
    return bytes(Web3.solidity_keccak(["uint256", "uint256"], [int(point.x, 16), int(point.y, 16)]))


def relayer_url(hostname: str) -> str:
    """Turn a registered hostname into a base URL."""
    hostname = hostname.strip().rstrip("/")
    if hostname.startswith(("http://", "https://")):
        return hostname
    return f"https://{hostname}"


class EvmChainClient:
    """
    Async web3 implementation of ChainClient.

    Safe to share between tasks: every query is an independent RPC call.
    """

    def __init__(
        self,
        rpc_url: str,
        relayer_handler: str,
        unclaims_handler: str,
        account_handler: str,
    ):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.relayer_handler = self.w3.eth.contract(
            address=Web3.to_checksum_address(relayer_handler),
            abi=RELAYER_HANDLER_ABI,
        )
        self.unclaims_handler = self.w3.eth.contract(
            address=Web3.to_checksum_address(unclaims_handler),
            abi=UNCLAIMS_HANDLER_ABI,
        )
        self.account_handler = self.w3.eth.contract(
            address=Web3.to_checksum_address(account_handler),
            abi=ACCOUNT_HANDLER_ABI,
        )

        logger.info(
            "chain_client_initialized",
            rpc_url=rpc_url,
            relayer_handler=relayer_handler,
            unclaims_handler=unclaims_handler,
            account_handler=account_handler,
        )

    async def check_connectivity(self) -> bool:
        """Check if the RPC endpoint is reachable."""
        try:
            await self.w3.eth.block_number
            return True
        except Exception:
            return False

    async def get_relayers(self) -> list[str]:
        """Base URLs of all registered relayers, in registry order."""
        addresses = await self.relayer_handler.functions.getRelayers().call()
        urls = []
        for address in addresses:
            _, _, hostname = await self.relayer_handler.functions.relayers(address).call()
            if not hostname:
                logger.warning("relayer_without_hostname", relayer=address)
                continue
            urls.append(relayer_url(hostname))
        return urls

    async def query_unclaimed_fund(self, id: int) -> UnclaimedFund:
        fund = await self.unclaims_handler.functions.getUnclaimedFund(id).call()
        return UnclaimedFund(
            id=fund[0],
            email_addr_commit=bytes(fund[1]),
            sender=fund[2],
            token_addr=fund[3],
            amount=fund[4],
            expiry_time=fund[5],
        )

    async def query_unclaimed_state(self, id: int) -> UnclaimedState:
        state = await self.unclaims_handler.functions.getUnclaimedState(id).call()
        return UnclaimedState(
            id=state[0],
            email_addr_commit=bytes(state[1]),
            extension_addr=state[2],
            sender=state[3],
            state=bytes(state[4]),
            expiry_time=state[5],
        )

    async def check_if_point_registered(self, point: Point) -> bool:
        pointer = await self.account_handler.functions.pointerOfPSIPoint(psi_point_key(point)).call()
        return bytes(pointer) != ZERO_BYTES32
