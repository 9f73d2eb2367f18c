"""
Private set intersection between a client and the registered relayers.

Client side (PSIClient):
1. initiate: A = Blind(email, r_c), once per discovery attempt
2. check: POST A to a relayer, which answers B = Blind(A, r_relayer)
3. finalize: C = Blind(B, r_c), equal to Blind(email, r_relayer)
4. membership: C registered on-chain => that relayer owns the address

Relayer side: serve_check_request (step 2) and serve_reveal_request.
"""

from typing import Optional

import httpx
import structlog
from web3.exceptions import Web3Exception

from .blind_point import BlindPointError, BlindPointService, generate_blinding_secret
from .chain import ChainClient
from .claim import Claim, ClaimQueue, check_unclaim_valid
from .models import CheckRequest, Point, RevealRequest

logger = structlog.get_logger()


class RelayerResponseError(Exception):
    """A relayer answered 2xx with a body that is not a Point."""


class PSIClient:
    """
    One discovery attempt for one email address.

    The client secret is drawn in create() and lives only as long as this
    session; a finalize with any other run's secret yields a wrong point
    rather than an error.
    """

    def __init__(
        self,
        chain: ChainClient,
        blind_point: BlindPointService,
        point: Point,
        random: str,
        email_addr: str,
        id: int,
        is_fund: bool,
        skip_failed_relayers: bool = False,
    ):
        self.chain = chain
        self.blind_point = blind_point
        self.point = point
        self.random = random
        self.email_addr = email_addr
        self.id = id
        self.is_fund = is_fund
        self.skip_failed_relayers = skip_failed_relayers

    @classmethod
    async def create(
        cls,
        chain: ChainClient,
        blind_point: BlindPointService,
        email_addr: str,
        id: int,
        is_fund: bool,
        skip_failed_relayers: bool = False,
    ) -> "PSIClient":
        """Draw a fresh client secret and blind the email address with it."""
        random = generate_blinding_secret()
        point = await blind_point.initiate(email_addr, random)
        return cls(
            chain=chain,
            blind_point=blind_point,
            point=point,
            random=random,
            email_addr=email_addr,
            id=id,
            is_fund=is_fund,
            skip_failed_relayers=skip_failed_relayers,
        )

    async def check(self, client: httpx.AsyncClient, relayer: str) -> bool:
        """
        Run steps 2-4 against one relayer.

        A non-2xx answer raises httpx.HTTPStatusError; it means the request
        was rejected, not that the relayer is a non-match. A body that is
        not a Point raises RelayerResponseError.
        """
        request = CheckRequest(point=self.point, id=self.id, is_fund=self.is_fund)
        response = await client.post(
            f"{relayer.rstrip('/')}/serveCheck/",
            json=request.model_dump(mode="json"),
        )
        response.raise_for_status()
        try:
            response_point = Point.model_validate(response.json())
        except ValueError as e:
            # pydantic.ValidationError and JSONDecodeError are both ValueErrors
            raise RelayerResponseError(f"{relayer} answered with a malformed point: {e}") from e

        result_point = await self.blind_point.finalize(response_point, self.random)

        return await self.chain.check_if_point_registered(result_point)

    async def find(self, client: Optional[httpx.AsyncClient] = None) -> Optional[str]:
        """
        Return the first relayer (registry order) whose answer is registered.

        Stops at the first match. With skip_failed_relayers, a relayer whose
        check fails (transport, status, malformed answer, blind-point or
        registration lookup) is logged and skipped; otherwise the error
        propagates.
        """
        relayers = await self.chain.get_relayers()

        owns_client = client is None
        http = client or httpx.AsyncClient(timeout=30.0)
        try:
            for relayer in relayers:
                try:
                    matched = await self.check(http, relayer)
                except (httpx.HTTPError, RelayerResponseError, BlindPointError, Web3Exception) as e:
                    if not self.skip_failed_relayers:
                        raise
                    logger.warning("psi_check_failed", relayer=relayer, error=str(e))
                    continue

                if matched:
                    logger.info("psi_relayer_found", relayer=relayer, id=self.id)
                    return relayer
        finally:
            if owns_client:
                await http.aclose()

        logger.info("psi_relayer_not_found", relayers=len(relayers), id=self.id)
        return None

    @staticmethod
    async def reveal(client: httpx.AsyncClient, relayer: str, request: RevealRequest) -> str:
        """Send the reveal to the matched relayer; returns its acceptance text."""
        response = await client.post(
            f"{relayer.rstrip('/')}/serveReveal/",
            json=request.model_dump(mode="json"),
        )
        response.raise_for_status()
        return response.text


async def serve_check_request(
    chain: ChainClient,
    blind_point: BlindPointService,
    relayer_rand: str,
    request: CheckRequest,
) -> Point:
    """Validate the referenced entry, then apply the relayer's standing secret."""
    await check_unclaim_valid(chain, request.id, request.is_fund)

    return await blind_point.apply(request.point, relayer_rand)


async def serve_reveal_request(
    chain: ChainClient,
    queue: ClaimQueue,
    request: RevealRequest,
) -> str:
    """Validate again and hand the claim to the settlement queue."""
    entry = await check_unclaim_valid(chain, request.id, request.is_fund)

    claim = Claim.from_entry(request.id, entry, request.email_address, request.randomness)
    queue.put(claim)

    logger.info("claim_enqueued", id=claim.id, kind=entry.kind, commit=claim.commit)
    return f"Unclaimed {entry.kind} for {request.email_address} is accepted"
