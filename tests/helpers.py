"""
Test helpers: an in-memory chain and an arithmetic blind-point service.
"""

from __future__ import annotations

import hashlib
from typing import Optional

from emailwallet_relayer.blind_point import FIELD_ORDER, field_to_hex
from emailwallet_relayer.chain import UnclaimedFund, UnclaimedState
from emailwallet_relayer.models import Point

RELAYER_RAND = field_to_hex(0x1234567890ABCDEF)


def _to_point(x: int) -> Point:
    return Point(x=field_to_hex(x), y=field_to_hex(x * x % FIELD_ORDER))


def hash_email(email_addr: str) -> int:
    digest = hashlib.sha256(email_addr.encode()).digest()
    return int.from_bytes(digest, "big") % FIELD_ORDER or 1


def blind_email(email_addr: str, rand: str) -> Point:
    return _to_point(hash_email(email_addr) * int(rand, 16) % FIELD_ORDER)


def blind_point(point: Point, rand: str) -> Point:
    return _to_point(int(point.x, 16) * int(rand, 16) % FIELD_ORDER)


def unblind_point(point: Point, rand: str) -> Point:
    inverse = pow(int(rand, 16), -1, FIELD_ORDER)
    return _to_point(int(point.x, 16) * inverse % FIELD_ORDER)


class ScalarBlindPointService:
    """
    Blinding as multiplication in the scalar field.

    Not a curve, but it commutes the same way, which is all the protocol
    sequencing needs.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def initiate(self, email_addr: str, client_rand: str) -> Point:
        self.calls.append(("initiate", client_rand))
        return blind_email(email_addr, client_rand)

    async def apply(self, point: Point, relayer_rand: str) -> Point:
        self.calls.append(("apply", relayer_rand))
        return blind_point(point, relayer_rand)

    async def finalize(self, point: Point, client_rand: str) -> Point:
        self.calls.append(("finalize", client_rand))
        return unblind_point(point, client_rand)


class FakeChain:
    """ChainClient backed by dictionaries."""

    def __init__(self, relayers: Optional[list[str]] = None) -> None:
        self.relayers = relayers or []
        self.funds: dict[int, UnclaimedFund] = {}
        self.states: dict[int, UnclaimedState] = {}
        self.registered: set[Point] = set()
        self.registration_checks: list[Point] = []

    def add_fund(self, id: int, expiry_time: int, commit: bytes = b"\x11" * 32) -> UnclaimedFund:
        fund = UnclaimedFund(id=id, email_addr_commit=commit, expiry_time=expiry_time, amount=100)
        self.funds[id] = fund
        return fund

    def add_state(self, id: int, expiry_time: int, commit: bytes = b"\x22" * 32) -> UnclaimedState:
        state = UnclaimedState(id=id, email_addr_commit=commit, expiry_time=expiry_time)
        self.states[id] = state
        return state

    async def get_relayers(self) -> list[str]:
        return list(self.relayers)

    async def query_unclaimed_fund(self, id: int) -> UnclaimedFund:
        # The contract returns a zeroed struct for unknown ids.
        return self.funds.get(id, UnclaimedFund(id=0, email_addr_commit=bytes(32), expiry_time=0))

    async def query_unclaimed_state(self, id: int) -> UnclaimedState:
        return self.states.get(id, UnclaimedState(id=0, email_addr_commit=bytes(32), expiry_time=0))

    async def check_if_point_registered(self, point: Point) -> bool:
        self.registration_checks.append(point)
        return point in self.registered


