"""
Email Wallet relayer API.

Provides REST endpoints for:
- PSI check (POST /serveCheck/)
- Claim reveal (POST /serveReveal/)
- Health checks (GET /health)
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from . import __version__
from .blind_point import BlindPointError, BlindPointService, CircuitBlindPointService
from .chain import ChainClient, EvmChainClient
from .claim import ClaimQueue, ClaimQueueClosedError, ClaimValidationError
from .config import Settings, get_settings
from .db import ClaimDatabase, record_claims
from .models import CheckRequest, HealthResponse, Point, RevealRequest
from .psi import serve_check_request, serve_reveal_request

# Configure logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = structlog.get_logger()


def build_chain_client(settings: Settings) -> EvmChainClient:
    """Create the web3 chain client; all handler addresses are required."""
    missing = [
        name
        for name in ("relayer_handler", "unclaims_handler", "account_handler")
        if not getattr(settings, name)
    ]
    if missing:
        raise ValueError(f"missing contract addresses: {', '.join(m.upper() for m in missing)}")

    return EvmChainClient(
        rpc_url=settings.chain_rpc_url,
        relayer_handler=settings.relayer_handler or "",
        unclaims_handler=settings.unclaims_handler or "",
        account_handler=settings.account_handler or "",
    )


def create_app(
    settings: Optional[Settings] = None,
    chain: Optional[ChainClient] = None,
    blind_point: Optional[BlindPointService] = None,
    database: Optional[ClaimDatabase] = None,
) -> FastAPI:
    """
    Build the relayer app.

    Collaborators not passed in are constructed from settings at startup.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if not settings.relayer_rand:
            raise RuntimeError("RELAYER_RAND must be configured to serve PSI checks")

        app.state.chain = chain or build_chain_client(settings)
        app.state.blind_point = blind_point or CircuitBlindPointService(
            circuits_dir=settings.circuits_dir_path,
            input_files_dir=settings.input_files_dir,
            timeout=settings.blind_point_timeout_seconds,
        )
        app.state.database = database or ClaimDatabase(settings.database_url)
        app.state.claim_queue = ClaimQueue()
        recorder = asyncio.create_task(
            record_claims(
                app.state.claim_queue,
                app.state.database,
                retry_delay=settings.claim_record_retry_seconds,
            )
        )

        def on_recorder_done(task: asyncio.Task) -> None:
            # Producers must fail loudly once nothing drains the queue.
            app.state.claim_queue.close()
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "Claim recorder stopped",
                    error=str(task.exception()),
                    error_type=type(task.exception()).__name__,
                )

        recorder.add_done_callback(on_recorder_done)

        logger.info(
            "API started",
            version=__version__,
            host=settings.host,
            port=settings.port,
            chain_rpc=settings.chain_rpc_url,
        )

        yield

        # Stop taking claims, let the recorder drain what is queued.
        app.state.claim_queue.close()
        recorded = await recorder
        if database is None:
            app.state.database.close()

        logger.info("API stopped", claims_recorded=recorded)

    app = FastAPI(
        title="Email Wallet Relayer",
        description="PSI relayer discovery and unclaimed fund/state claims",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.post("/serveCheck/", response_model=Point)(serve_check)
    app.post("/serveReveal/", response_class=PlainTextResponse)(serve_reveal)
    app.get("/health", response_model=HealthResponse)(health_check)

    return app


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_chain(request: Request) -> ChainClient:
    return request.app.state.chain


def get_blind_point(request: Request) -> BlindPointService:
    return request.app.state.blind_point


def get_claim_queue(request: Request) -> ClaimQueue:
    return request.app.state.claim_queue


# ============================================================================
# PSI
# ============================================================================


async def serve_check(
    request: CheckRequest,
    settings: Settings = Depends(get_app_settings),
    chain: ChainClient = Depends(get_chain),
    blind_point: BlindPointService = Depends(get_blind_point),
) -> Point:
    """
    Apply this relayer's secret to a client-blinded point.

    An invalid or expired entry is a 400, never a negative match.
    """
    try:
        return await serve_check_request(chain, blind_point, settings.relayer_rand or "", request)
    except ClaimValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BlindPointError as e:
        logger.error("Check failed", id=request.id, error=str(e))
        raise HTTPException(status_code=502, detail="blind-point computation failed")
    except Exception as e:
        logger.error("Chain query failed", id=request.id, error=str(e))
        raise HTTPException(status_code=502, detail="chain query failed")


async def serve_reveal(
    request: RevealRequest,
    chain: ChainClient = Depends(get_chain),
    queue: ClaimQueue = Depends(get_claim_queue),
) -> str:
    """Admit the claim and queue it for settlement."""
    try:
        return await serve_reveal_request(chain, queue, request)
    except ClaimValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ClaimQueueClosedError as e:
        logger.error("Claim queue closed", id=request.id)
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error("Chain query failed", id=request.id, error=str(e))
        raise HTTPException(status_code=502, detail="chain query failed")


# ============================================================================
# Health Check
# ============================================================================


async def health_check(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> HealthResponse:
    """Report chain connectivity and the claim backlog."""
    chain = request.app.state.chain
    check = getattr(chain, "check_connectivity", None)
    chain_ok = await check() if check is not None else True

    return HealthResponse(
        status="ok" if chain_ok else "degraded",
        version=__version__,
        chain_rpc=chain_ok,
        claim_backlog=request.app.state.claim_queue.backlog,
        contracts={
            "relayer_handler": settings.relayer_handler,
            "unclaims_handler": settings.unclaims_handler,
            "account_handler": settings.account_handler,
        },
    )
