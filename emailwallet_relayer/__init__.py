"""
Email Wallet Relayer

Finds, without revealing an email address, which registered relayer holds
the on-chain commitment for it (PSI), admits claims of unclaimed funds and
states for settlement, and watches the relayer's mailbox over IMAP IDLE.

Usage:
    # Serve /serveCheck/ and /serveReveal/
    emailwallet-relayer serve

    # Find the relayer holding an unclaimed fund for an address
    emailwallet-relayer find alice@example.com 1 --fund

    # Watch the relayer's inbox
    emailwallet-relayer watch
"""

__version__ = "0.1.0"

from .blind_point import BlindPointService, CircuitBlindPointService, generate_blinding_secret
from .chain import ChainClient, EvmChainClient, UnclaimedFund, UnclaimedState
from .claim import Claim, ClaimQueue, check_unclaim_valid
from .config import ImapConfig, OAuthAuth, PasswordAuth, Settings
from .imap_client import FetchedEmail, ImapClient
from .models import CheckRequest, Point, RevealRequest
from .psi import PSIClient, serve_check_request, serve_reveal_request

__all__ = [
    "__version__",
    "BlindPointService",
    "CircuitBlindPointService",
    "generate_blinding_secret",
    "ChainClient",
    "EvmChainClient",
    "UnclaimedFund",
    "UnclaimedState",
    "Claim",
    "ClaimQueue",
    "check_unclaim_valid",
    "ImapConfig",
    "OAuthAuth",
    "PasswordAuth",
    "Settings",
    "FetchedEmail",
    "ImapClient",
    "CheckRequest",
    "Point",
    "RevealRequest",
    "PSIClient",
    "serve_check_request",
    "serve_reveal_request",
]
