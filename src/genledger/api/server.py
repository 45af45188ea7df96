"""
GENLEDGER - FastAPI Server

Credit accounting and generation settlement API.

Endpoints:
- GET  /credits/balance - Current balance (account created lazily)
- GET  /credits/transactions - Paged transaction history
- POST /generations - Create a pending generation
- POST /generations/{id}/complete - Complete and charge the realized cost
- POST /generations/image - Generate an image with quota fallback
- POST /generations/video - Run a long-running video job end to end
- POST /payments/checkout - Open a checkout session for a credit package
- POST /payments/webhook - Provider webhook (public, always 200)
"""

import asyncio
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any, Dict, Optional
import structlog

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from ..billing.ledger import Ledger
from ..billing.pricing import calculate_price, list_packages
from ..billing.settlement import PaymentSettlement
from ..config import Settings, configure_logging
from ..errors import GenLedgerError
from ..generation.images import ImageGenerator
from ..generation.ingestion import OutputIngestion
from ..generation.poller import JobPoller
from ..generation.records import CompletionResult, GenerationService
from ..generation.workflow import GenerationWorkflow
from ..persistence.database import Database
from ..persistence.models import TransactionKind

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class CreateGenerationRequest(BaseModel):
    """Request to open a pending generation."""
    generation_type: str = Field(..., description="image, video, style or text")
    prompt: str = Field(..., min_length=1)
    title: Optional[str] = Field(None, max_length=200)
    estimated_cost: Optional[Decimal] = Field(None, description="Quoted price in MXN; defaults to the price table")
    duration_seconds: Optional[int] = Field(None, ge=1, le=60)
    api_model: Optional[str] = None
    generation_params: Dict[str, Any] = Field(default_factory=dict)


class CompleteGenerationRequest(BaseModel):
    """Result of the external operation for a pending generation."""
    output: Optional[str] = Field(None, description="Data URI, remote URL or raw base64 payload")
    output_url: Optional[str] = None
    output_key: Optional[str] = None
    mime_type: Optional[str] = None
    api_model: Optional[str] = None
    cost_mxn: Decimal = Field(default=Decimal("0"), ge=0, description="Realized price charged to the user")
    cost_usd: Optional[Decimal] = Field(None, ge=0)


class FailGenerationRequest(BaseModel):
    error_message: str = Field(default="Generation failed")


class VideoRequest(BaseModel):
    """Request to generate a video through the long-running provider."""
    prompt: str = Field(..., min_length=1)
    title: Optional[str] = Field(None, max_length=200)
    duration_seconds: Optional[int] = Field(None, ge=1, le=8)
    aspect_ratio: Optional[str] = Field(None, description="e.g. 9:16 or 16:9")


class ImageRequest(BaseModel):
    """Request to generate an image synchronously."""
    prompt: str = Field(..., min_length=1)
    title: Optional[str] = Field(None, max_length=200)
    aspect_ratio: str = Field(default="1:1", description="e.g. 1:1, 9:16 or 16:9")
    reference_image: Optional[str] = Field(None, description="Base64 image to condition on")
    reference_mime_type: Optional[str] = None


class CheckoutRequest(BaseModel):
    package_id: str
    customer_email: Optional[str] = None


class ProcessPaymentRequest(BaseModel):
    session_id: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    payments_live: bool
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.db = Database(settings.database_url)
        self.db.initialize()

        self.ledger = Ledger(self.db, currency=settings.currency)
        self.ingestion = OutputIngestion.from_settings(settings)
        self.generations = GenerationService(self.db, self.ledger, self.ingestion)
        self.settlement = PaymentSettlement.from_settings(settings, self.ledger)
        self.poller = JobPoller.from_settings(settings)
        self.images = ImageGenerator.from_settings(settings)
        self.workflow = GenerationWorkflow(self.generations, self.ledger, self.poller, self.images)
        self.start_time = datetime.now(timezone.utc)


# ============================================================================
# Dependencies
# ============================================================================

def get_state(request: Request) -> AppState:
    """Get application state."""
    state = getattr(request.app.state, "genledger", None)
    if state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def current_user(
    x_user_id: str = Header(..., alias="X-User-Id"),
    api_key: str = Depends(verify_api_key),
) -> str:
    """Authenticated user id, forwarded by the trusted gateway."""
    if not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user id")
    return x_user_id.strip()


async def handle_genledger_error(request: Request, exc: GenLedgerError) -> JSONResponse:
    """Render engine errors with their own status and machine code."""
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ============================================================================
# Endpoints
# ============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["System"])
def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        database="postgres" if state.db.is_postgres else "sqlite",
        payments_live=state.settlement.is_live,
        uptime_seconds=uptime,
    )


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------

@router.get("/credits/balance", tags=["Credits"])
def get_balance(
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Current balance. The account is created with 0 on first access."""
    return state.ledger.get_account(user_id).to_dict()


@router.get("/credits/transactions", tags=["Credits"])
def get_transactions(
    kind: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Transaction history, newest first."""
    try:
        kind_filter = TransactionKind(kind) if kind else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid transaction kind: {kind}")
    return state.ledger.list_transactions(user_id, kind=kind_filter, page=page, limit=limit)


@router.get("/credits/packages", tags=["Credits"])
def get_packages(api_key: str = Depends(verify_api_key)):
    """Purchasable credit packages."""
    return {"packages": [p.to_dict() for p in list_packages()]}


@router.get("/credits/usage-summary", tags=["Credits"])
def get_usage_summary(
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Completed generations and realized cost per type."""
    summary = state.generations.usage_summary(user_id)
    account = state.ledger.get_account(user_id)
    summary["balance"] = str(account.balance)
    summary["total_purchased"] = str(account.total_purchased)
    summary["total_spent"] = str(account.total_spent)
    return summary


@router.get("/credits/reconcile", tags=["Credits"])
def reconcile(
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Compare the cached balance with the transaction log."""
    return state.ledger.reconcile(user_id).to_dict()


# ---------------------------------------------------------------------------
# Generations
# ---------------------------------------------------------------------------

@router.post("/generations", status_code=201, tags=["Generations"])
def create_generation(
    request: CreateGenerationRequest,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """
    Open a pending generation.

    Nothing is charged here. The balance check is advisory; the charge is
    taken when the generation completes.
    """
    estimate = request.estimated_cost
    if estimate is None:
        estimate = calculate_price(request.generation_type, request.duration_seconds).price_mxn

    balance = state.ledger.get_balance(user_id)
    if balance < estimate:
        logger.info(
            "insufficient_funds_preflight",
            user_id=user_id,
            required=str(estimate),
            available=str(balance),
        )

    generation = state.generations.create(
        user_id,
        request.generation_type,
        request.prompt,
        title=request.title,
        estimated_cost=estimate,
        generation_params=request.generation_params,
        api_model=request.api_model,
    )
    return {
        "generation": generation.to_dict(),
        "balance": str(balance),
        "sufficient_balance": balance >= estimate,
    }


@router.get("/generations", tags=["Generations"])
def list_generations(
    type: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    return state.generations.list_for_user(user_id, type, status, page=page, limit=limit)


@router.post("/generations/video", tags=["Generations"])
async def generate_video(
    request: VideoRequest,
    http_request: Request,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """
    Generate a video and charge it on success.

    The poll loop runs in a worker thread; a client disconnect cancels it
    and the generation is failed without a charge.
    """
    cancel_event = threading.Event()
    params = {"aspect_ratio": request.aspect_ratio} if request.aspect_ratio else {}

    job = asyncio.ensure_future(run_in_threadpool(
        state.workflow.generate_video,
        user_id,
        request.prompt,
        duration_seconds=request.duration_seconds,
        title=request.title,
        params=params,
        cancel_event=cancel_event,
    ))

    while not job.done():
        if await http_request.is_disconnected():
            logger.info("client_disconnected", user_id=user_id)
            cancel_event.set()
            break
        await asyncio.wait({job}, timeout=1.0)

    generation = await job
    return {"generation": generation.to_dict()}


@router.post("/generations/image", tags=["Generations"])
def generate_image(
    request: ImageRequest,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Generate an image and charge it on success."""
    generation = state.workflow.generate_image(
        user_id,
        request.prompt,
        aspect_ratio=request.aspect_ratio,
        title=request.title,
        reference_image=request.reference_image,
        reference_mime_type=request.reference_mime_type,
    )
    return {"generation": generation.to_dict()}


@router.get("/generations/{generation_id}", tags=["Generations"])
def get_generation(
    generation_id: str,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    return {"generation": state.generations.get(generation_id, user_id).to_dict()}


@router.post("/generations/{generation_id}/complete", tags=["Generations"])
def complete_generation(
    generation_id: str,
    request: CompleteGenerationRequest,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Complete a pending generation and charge its realized cost."""
    generation = state.generations.complete(
        generation_id,
        CompletionResult(
            output=request.output,
            cost_mxn=request.cost_mxn,
            cost_usd=request.cost_usd,
            output_url=request.output_url,
            output_key=request.output_key,
            mime_type=request.mime_type,
            api_model=request.api_model,
        ),
        user_id=user_id,
    )
    return {
        "generation": generation.to_dict(),
        "balance": str(state.ledger.get_balance(user_id)),
    }


@router.post("/generations/{generation_id}/fail", tags=["Generations"])
def fail_generation(
    generation_id: str,
    request: FailGenerationRequest,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Mark a pending generation failed. Never charges."""
    generation = state.generations.fail(generation_id, request.error_message, user_id=user_id)
    return {"generation": generation.to_dict()}


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@router.post("/payments/checkout", tags=["Payments"])
def create_checkout(
    request: CheckoutRequest,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Open a checkout session. Credits arrive on settlement only."""
    session = state.settlement.create_checkout(user_id, request.package_id, request.customer_email)
    return session.to_dict()


@router.post("/payments/process", tags=["Payments"])
def process_payment(
    request: ProcessPaymentRequest,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Checkout-return path: settle the session if the provider reports it paid."""
    return state.settlement.process_payment(request.session_id, user_id=user_id).to_dict()


@router.post("/payments/webhook", tags=["Payments"])
async def payment_webhook(request: Request, state: AppState = Depends(get_state)):
    """
    Provider webhook.

    Always answers 200 so the provider does not retry into a failure loop;
    problems are logged and reported in the body.
    """
    payload = await request.body()
    signature = request.headers.get("Stripe-Signature")
    result = await run_in_threadpool(state.settlement.handle_webhook, payload, signature)
    return JSONResponse(status_code=200, content=result.to_dict())


@router.get("/payments/{session_id}", tags=["Payments"])
def get_payment(
    session_id: str,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Provider-side status of a checkout session."""
    status = state.settlement.get_session_status(session_id)
    if status["user_id"] != user_id:
        raise HTTPException(status_code=404, detail="Payment not found")
    return status


# ============================================================================
# Application Factory
# ============================================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        config = settings or Settings.from_env()
        configure_logging(
            json_logs=config.log_json,
            level=logging.DEBUG if config.debug else logging.INFO,
        )
        logger.info("genledger_starting", version=VERSION)
        application.state.genledger = AppState(config)
        yield
        application.state.genledger.db.close()
        logger.info("genledger_stopping")

    application = FastAPI(
        title="genledger",
        description="""
# Credit Accounting & Generation Settlement

- **Ledger**: append-only transactions; balance always equals their sum
- **Generations**: pending -> completed | failed, charged once on completion
- **Settlement**: idempotent crediting of confirmed payments
- **Video jobs**: bounded polling with quota fallback and cancellation
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=(settings.cors_origins if settings else Settings.from_env().cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(GenLedgerError, handle_genledger_error)
    application.include_router(router)

    return application


app = create_app()

