"""
Claim admission: expiry validation and the queue feeding the settlement worker.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog

from .chain import ChainClient, UnclaimedEntry

logger = structlog.get_logger()

# Seconds of headroom an entry must have left so it cannot expire before
# the settlement worker gets to it.
DELAY = 300


class ClaimValidationError(Exception):
    """The referenced unclaimed entry cannot be claimed."""


class UnclaimExpiredError(ClaimValidationError):
    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unclaimed {kind} is expired")


class UnclaimNotFoundError(ClaimValidationError):
    def __init__(self, kind: str, id: int):
        self.kind = kind
        self.id = id
        super().__init__(f"Unclaimed {kind} {id} does not exist")


class ClaimQueueClosedError(Exception):
    """The claim consumer is gone."""


@dataclass(frozen=True)
class Claim:
    """An admitted claim awaiting settlement."""

    id: int
    email_address: str
    random: str
    commit: str
    expiry_time: int
    is_fund: bool
    is_announced: bool = False

    @classmethod
    def from_entry(cls, id: int, entry: UnclaimedEntry, email_address: str, random: str) -> "Claim":
        return cls(
            id=id,
            email_address=email_address,
            random=random,
            commit="0x" + entry.email_addr_commit.hex(),
            expiry_time=int(entry.expiry_time),
            is_fund=entry.is_fund,
            is_announced=False,
        )


async def check_unclaim_valid(
    chain: ChainClient,
    id: int,
    is_fund: bool,
    now: Optional[int] = None,
) -> UnclaimedEntry:
    """
    Resolve an unclaimed fund/state and require it to outlive now + DELAY.

    Raises:
        UnclaimNotFoundError: no entry with that id
        UnclaimExpiredError: entry expires before now + DELAY
    """
    now_ts = int(time.time()) if now is None else int(now)
    deadline = now_ts + DELAY

    entry: UnclaimedEntry
    if is_fund:
        entry = await chain.query_unclaimed_fund(id)
    else:
        entry = await chain.query_unclaimed_state(id)

    if not any(entry.email_addr_commit):
        raise UnclaimNotFoundError(entry.kind, id)

    if entry.expiry_time < deadline:
        logger.info(
            "unclaim_expired",
            id=id,
            kind=entry.kind,
            expiry_time=entry.expiry_time,
            deadline=deadline,
        )
        raise UnclaimExpiredError(entry.kind)

    return entry


class ClaimQueue:
    """
    Unbounded FIFO from reveal handlers to a single consumer.

    Producers never block. Once closed, put() raises instead of dropping
    the claim; get() keeps draining what was already queued.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[Claim]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def backlog(self) -> int:
        """Claims enqueued but not yet taken by the consumer."""
        return self._queue.qsize() - (1 if self._closed else 0)

    def put(self, claim: Claim) -> None:
        if self._closed:
            raise ClaimQueueClosedError("claim queue is closed")
        self._queue.put_nowait(claim)

    async def get(self) -> Claim:
        claim = await self._queue.get()
        if claim is None:
            # Sentinel stays so later get() calls also see the close.
            self._queue.put_nowait(None)
            raise ClaimQueueClosedError("claim queue is closed")
        return claim

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[Claim]:
        while True:
            try:
                yield await self.get()
            except ClaimQueueClosedError:
                return
