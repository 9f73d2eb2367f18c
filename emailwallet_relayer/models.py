"""
Pydantic models for relayer requests and responses.
"""

import re
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

UINT256_MAX = 2**256 - 1

# BN254 scalar field order
FIELD_ORDER = 21888242871839275222246405745257275088548364400416034343698204186575808495617

HEX_FIELD_ELEMENT = re.compile(r"0x[0-9a-fA-F]{1,64}")


def field_to_hex(value: int) -> str:
    """Encode a field element as 0x + 64 lowercase hex digits."""
    return f"0x{value:064x}"


def _parse_uint256(value: Any) -> int:
    # Accepts ints, decimal strings and 0x-prefixed hex strings.
    if isinstance(value, bool):
        raise ValueError("expected an unsigned 256-bit integer")
    if isinstance(value, str):
        text = value.strip()
        value = int(text, 16) if text.lower().startswith("0x") else int(text)
    if not isinstance(value, int) or not 0 <= value <= UINT256_MAX:
        raise ValueError("expected an unsigned 256-bit integer")
    return value


Uint256 = Annotated[int, BeforeValidator(_parse_uint256)]


class Point(BaseModel):
    """A curve point; produced only by the blind-point service."""

    model_config = ConfigDict(frozen=True)

    x: str = Field(..., description="x coordinate (hex field element)")
    y: str = Field(..., description="y coordinate (hex field element)")

    @field_validator("x", "y")
    @classmethod
    def _field_element(cls, value: str) -> str:
        # Stored as 0x + 64 lowercase digits whatever the input padding.
        if not HEX_FIELD_ELEMENT.fullmatch(value):
            raise ValueError(f"not a hex field element: {value!r}")
        element = int(value, 16)
        if element >= FIELD_ORDER:
            raise ValueError(f"coordinate is not below the field order: {value!r}")
        return field_to_hex(element)


# ============================================================================
# PSI check / reveal
# ============================================================================

class CheckRequest(BaseModel):
    """Ask a relayer to apply its secret to a client-blinded point."""

    point: Point = Field(..., description="Client-blinded point")
    id: Uint256 = Field(..., description="Unclaimed fund/state id")
    is_fund: bool = Field(..., description="True for an unclaimed fund, False for state")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "point": {"x": "0x1b2c...", "y": "0x0f3a..."},
                    "id": 1,
                    "is_fund": True,
                }
            ]
        }
    }


class RevealRequest(BaseModel):
    """Reveal the email address to the matched relayer so it can claim."""

    id: Uint256 = Field(..., description="Unclaimed fund/state id")
    is_fund: bool = Field(..., description="True for an unclaimed fund, False for state")
    randomness: str = Field(..., description="Randomness of the email address commitment")
    email_address: str = Field(..., min_length=3, description="Recipient email address")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "id": 1,
                    "is_fund": True,
                    "randomness": "0x0a1b...",
                    "email_address": "alice@example.com",
                }
            ]
        }
    }


# ============================================================================
# Health Check
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Relayer version")
    chain_rpc: bool = Field(..., description="Chain RPC connectivity")
    claim_backlog: int = Field(..., description="Claims waiting to be recorded")
    contracts: dict[str, Optional[str]] = Field(
        ...,
        description="Configured contract addresses",
    )
