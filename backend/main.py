from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import uvicorn
import os
import sys
import logging
import time
import uuid
from pathlib import Path
from dotenv import load_dotenv

# Add current directory to path to find services module
sys.path.insert(0, str(Path(__file__).parent))

from schemas import PurchaseBody, RegisterBody
from services import credits
from services.config import Settings
from services.errors import (
    InternalError,
    RateLimitedError,
    TryOnError,
    UnauthorizedError,
    ValidationError,
    error_response,
)
from services.generation import GenerationOrchestrator
from services.ledger import LedgerBackend, get_ledger_backend
from services.tiers import display_name, next_tier

load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = Settings.from_env()
ledger = get_ledger_backend(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await ledger.init()
    logger.info(f"Ledger ready ({settings.ledger_type}); model={settings.model}")
    if not settings.api_key:
        logger.warning("APICORE_AI_KEY is not set; generation requests will fail and be refunded")
    yield
    await ledger.close()


app = FastAPI(title="Virtual Try-On API", lifespan=lifespan)

# Configure CORS
# Format: comma-separated list, e.g., "https://app.example.com,https://www.example.com"
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-User-Id", "X-Admin-Secret", "X-Request-Id"],
)

GENERATE_RATE_LIMIT = int(os.getenv("GENERATE_RATE_LIMIT", 10))
GENERATE_RATE_WINDOW_S = 60
# Expired buckets are swept once the table grows past this many keys.
RATE_BUCKET_SWEEP_AT = 1024

_rate_buckets: dict[str, tuple[int, float]] = {}

def check_rate_limit(key: str, limit: int, window_seconds: int) -> bool:
    """
    Simple best-effort in-memory rate limiter (per-instance).
    Returns True if allowed, False if rate-limited.
    """
    now = time.time()
    if len(_rate_buckets) >= RATE_BUCKET_SWEEP_AT:
        for stale in [k for k, (_, exp) in _rate_buckets.items() if exp <= now]:
            del _rate_buckets[stale]
    count, expires_at = _rate_buckets.get(key, (0, 0.0))
    if expires_at <= now:
        _rate_buckets[key] = (1, now + window_seconds)
        return True
    if count >= limit:
        return False
    _rate_buckets[key] = (count + 1, expires_at)
    return True


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


@app.exception_handler(TryOnError)
async def tryon_error_handler(request: Request, exc: TryOnError):
    return JSONResponse(status_code=exc.status_code, content=error_response(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"code": "VALIDATION_ERROR", "field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    error = ValidationError("Invalid request.", details=details)
    return JSONResponse(status_code=error.status_code, content=error_response(error))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", "-")
    logger.error(f"Unhandled error on {request.method} {request.url.path} (request_id={request_id}): {exc}", exc_info=True)
    error = InternalError()
    return JSONResponse(status_code=error.status_code, content=error_response(error))


def get_settings() -> Settings:
    return settings

def get_ledger() -> LedgerBackend:
    return ledger

def get_current_account_id(x_user_id: Optional[str] = Header(None)) -> int:
    """Account id set by the session layer in front of this service."""
    if not x_user_id:
        raise UnauthorizedError()
    try:
        account_id = int(x_user_id.strip())
    except ValueError:
        raise UnauthorizedError()
    if account_id <= 0:
        raise UnauthorizedError()
    return account_id


@app.get("/")
async def root():
    return {"message": "Virtual Try-On API is running"}

@app.post("/api/auth/register")
async def register(
    body: Optional[RegisterBody] = None,
    ledger: LedgerBackend = Depends(get_ledger),
):
    account = await ledger.create_account(email=body.email if body else None)
    logger.info(f"Registered account {account.id} with {account.credits} sign-up credits")
    return {
        "success": True,
        "message": f"Account created with {account.credits} sign-up credits.",
        "data": credits.to_camel_dict(account),
    }

@app.post("/api/generate")
async def generate(
    request: Request,
    account_id: int = Depends(get_current_account_id),
    settings: Settings = Depends(get_settings),
    ledger: LedgerBackend = Depends(get_ledger),
):
    """
    Virtual try-on for one person photo and one or more garment images.

    Body: {"userImage": str, "clothingImages": [str, ...], "generationType": "single"|"batch"}
    Images are data URIs or https URLs.
    """
    if not check_rate_limit(f"generate:{account_id}", limit=GENERATE_RATE_LIMIT, window_seconds=GENERATE_RATE_WINDOW_S):
        raise RateLimitedError()

    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON.")

    orchestrator = GenerationOrchestrator(settings, ledger)
    return await orchestrator.generate(account_id, payload)

@app.get("/api/checkin")
async def get_checkin_status(
    account_id: int = Depends(get_current_account_id),
    settings: Settings = Depends(get_settings),
    ledger: LedgerBackend = Depends(get_ledger),
):
    status = await credits.checkin_status(ledger, settings, account_id)
    return {"success": True, "data": credits.to_camel_dict(status)}

@app.post("/api/checkin")
async def post_checkin(
    account_id: int = Depends(get_current_account_id),
    settings: Settings = Depends(get_settings),
    ledger: LedgerBackend = Depends(get_ledger),
):
    result = await credits.check_in(ledger, settings, account_id)
    return {
        "success": True,
        "message": f"Checked in: +{result.credits_awarded} credits.",
        "data": credits.to_camel_dict(result),
    }

@app.get("/api/purchase")
async def get_packages():
    return {"success": True, "data": [credits.to_camel_dict(p) for p in credits.list_packages()]}

@app.post("/api/purchase")
async def post_purchase(
    body: PurchaseBody,
    account_id: int = Depends(get_current_account_id),
    x_admin_secret: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    ledger: LedgerBackend = Depends(get_ledger),
):
    """Record a credit package paid for offline. Operator only."""
    if not settings.admin_secret:
        raise UnauthorizedError("Credit purchases are disabled on this server.")
    if x_admin_secret != settings.admin_secret:
        raise UnauthorizedError("Operator credentials required.")

    purchase = await credits.grant_package(ledger, account_id, body.packageName, body.adminNote or "")
    account = await ledger.get_account(account_id)
    return {
        "success": True,
        "message": f"Added {purchase.total_credits} credits.",
        "data": {
            "purchase": credits.to_camel_dict(purchase),
            "credits": account.credits,
            "userLevel": account.tier.value,
        },
    }

@app.get("/api/user/history")
async def get_history(
    type: str = Query("generation"),
    limit: int = Query(30, ge=1, le=100),
    account_id: int = Depends(get_current_account_id),
    ledger: LedgerBackend = Depends(get_ledger),
):
    items = await credits.history(ledger, account_id, type, limit)
    return {"success": True, "data": [credits.to_camel_dict(i) for i in items]}

@app.get("/api/user/stats")
async def get_stats(
    account_id: int = Depends(get_current_account_id),
    ledger: LedgerBackend = Depends(get_ledger),
):
    return {"success": True, "data": await credits.credit_stats(ledger, account_id)}

@app.get("/api/user/me")
async def get_me(
    account_id: int = Depends(get_current_account_id),
    settings: Settings = Depends(get_settings),
    ledger: LedgerBackend = Depends(get_ledger),
):
    account = await ledger.get_account(account_id)
    limits = settings.limits_for(account.tier)
    upgrade = next_tier(account.tier)
    return {
        "success": True,
        "data": {
            "id": account.id,
            "email": account.email,
            "credits": account.credits,
            "userLevel": account.tier.value,
            "levelName": display_name(account.tier),
            "limits": {
                "maxClothingItems": limits.max_garments,
                "checkinType": limits.checkin_cadence.value,
                "singleCost": limits.single_cost,
                "batchCost": limits.batch_cost,
                "canBatch": limits.can_batch,
            },
            "nextLevel": upgrade.value if upgrade else None,
        },
    }


if __name__ == "__main__":
    port = int(os.getenv("PORT", 8000))
    uvicorn.run("main:app", host="0.0.0.0", port=port)
