from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request, BackgroundTasks
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from typing import List, Dict, Any
from datetime import datetime, timezone
import jwt
import pytz

from weighing_errors import WeighingError
from weighing_models import WeighingRequest, Label, LedgerAudit
from unit_conversion_engine import UnitConversionEngine
from stock_ledger import StockLedger
from label_code_generator import LabelCodeGenerator, DEFAULT_PREFIX, SEQUENCE_WIDTH
from label_encoder import LabelEncoder, DEFAULT_MAX_QR_VERSION, DEFAULT_MAX_BARCODE_LENGTH
from weighing_service import WeighingService
from notifications import CriticalStockNotifier

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'lab_weighing')]

# Resend Email Configuration
RESEND_API_KEY = os.environ.get('RESEND_API_KEY')
SENDER_EMAIL = os.environ.get('SENDER_EMAIL', 'onboarding@resend.dev')
CRITICAL_STOCK_ALERT_EMAILS = [
    email.strip() for email in os.environ.get('CRITICAL_STOCK_ALERT_EMAILS', '').split(',') if email.strip()
]

# Label configuration
LABEL_TIMEZONE = pytz.timezone(os.environ.get('LABEL_TIMEZONE', 'UTC'))
LABEL_CODE_PREFIX = os.environ.get('LABEL_CODE_PREFIX', DEFAULT_PREFIX)
LABEL_SEQUENCE_WIDTH = int(os.environ.get('LABEL_SEQUENCE_WIDTH', SEQUENCE_WIDTH))
LABEL_QR_MAX_VERSION = int(os.environ.get('LABEL_QR_MAX_VERSION', DEFAULT_MAX_QR_VERSION))
LABEL_BARCODE_MAX_LENGTH = int(os.environ.get('LABEL_BARCODE_MAX_LENGTH', DEFAULT_MAX_BARCODE_LENGTH))

app = FastAPI(title="Laboratory Weighing & Label API")

# ==================== CORS CONFIGURATION (MUST BE FIRST) ====================
# Default allowed origins for local development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:3001",
    "http://127.0.0.1:3001",
]

cors_origins_env = os.environ.get('CORS_ORIGINS', '')
if cors_origins_env:
    cors_origins = [origin.strip() for origin in cors_origins_env.split(',') if origin.strip()]
else:
    cors_origins = DEFAULT_CORS_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Requested-With",
        "Accept",
        "Origin",
        "Access-Control-Request-Method",
        "Access-Control-Request-Headers",
    ],
    expose_headers=["*"],
    max_age=600,  # Cache preflight for 10 minutes
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

api_router = APIRouter(prefix="/api")

# JWT Configuration
SECRET_KEY = os.environ.get('JWT_SECRET', 'lab-weighing-secret-key-change-in-production')
ALGORITHM = "HS256"

security = HTTPBearer()

# ==================== CORE SERVICES ====================

units = UnitConversionEngine()
stock_ledger = StockLedger(db, units=units)
weighing_service = WeighingService(
    db,
    ledger=stock_ledger,
    code_generator=LabelCodeGenerator(db, prefix=LABEL_CODE_PREFIX, sequence_width=LABEL_SEQUENCE_WIDTH),
    encoder=LabelEncoder(max_qr_version=LABEL_QR_MAX_VERSION, max_barcode_length=LABEL_BARCODE_MAX_LENGTH),
    units=units,
    label_timezone=LABEL_TIMEZONE
)
critical_stock_notifier = CriticalStockNotifier(RESEND_API_KEY, SENDER_EMAIL, CRITICAL_STOCK_ALERT_EMAILS)


def get_db():
    return db


def get_weighing_service() -> WeighingService:
    return weighing_service


def get_notifier() -> CriticalStockNotifier:
    return critical_stock_notifier


@app.exception_handler(WeighingError)
async def weighing_error_handler(request: Request, exc: WeighingError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

# ==================== HEALTH ENDPOINT (ROOT LEVEL) ====================
@app.get("/api/health")
async def health_check(database=Depends(get_db)):
    """Health check endpoint for monitoring and CORS verification"""
    db_ok = False
    try:
        await database.command("ping")
        db_ok = True
    except Exception as e:
        logger.warning(f"Database ping failed: {e}")
    return {
        "ok": True,
        "time": datetime.now(timezone.utc).isoformat(),
        "service": "Laboratory Weighing API",
        "version": "1.0.0",
        "db_ok": db_ok
    }

# ==================== AUTH ====================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    database=Depends(get_db)
):
    try:
        token = credentials.credentials
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")
        user = await database.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
        if user is None:
            raise HTTPException(status_code=401, detail="User not found")
        return user
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

# ==================== COMPOUNDS (CATALOG READ) ====================

def with_stock_level(compound: dict) -> dict:
    """Attach normalized stock figures to a catalog document"""
    try:
        stock_mg, critical_mg = stock_ledger.stock_levels(compound)
    except WeighingError as e:
        logger.warning(f"Compound {compound.get('id')} has unusable stock units: {e.message}")
        return {**compound, "stock_mg": None, "critical_mg": None, "below_critical": None}
    return {**compound, "stock_mg": stock_mg, "critical_mg": critical_mg, "below_critical": stock_mg < critical_mg}


@api_router.get("/compounds")
async def get_compounds(current_user: dict = Depends(get_current_user), database=Depends(get_db)):
    """List compounds with their current stock level"""
    compounds = await database.compounds.find({}, {"_id": 0}).sort("name", 1).to_list(1000)
    return [with_stock_level(compound) for compound in compounds]


@api_router.get("/compounds/{compound_id}")
async def get_compound(compound_id: str, current_user: dict = Depends(get_current_user), database=Depends(get_db)):
    compound = await database.compounds.find_one({"id": compound_id}, {"_id": 0})
    if not compound:
        raise HTTPException(status_code=404, detail="Compound not found")
    return with_stock_level(compound)

# ==================== WEIGHING ====================

@api_router.post("/weighing", response_model=Dict[str, Any])
async def create_weighing(
    weighing_data: WeighingRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    service: WeighingService = Depends(get_weighing_service),
    notifier: CriticalStockNotifier = Depends(get_notifier)
):
    """Record a weighing: concentration, stock debit, label and codes"""
    if current_user.get("role") == "readonly":
        raise HTTPException(status_code=403, detail="Read-only users cannot create weighing records")

    actor = current_user.get("name") or current_user.get("email") or current_user.get("id")
    result = await service.submit(weighing_data, actor=actor)

    if result.below_critical:
        background_tasks.add_task(notifier.notify_critical_stock, result)

    return result.to_response()

# ==================== LABELS ====================

@api_router.get("/labels", response_model=List[Label])
async def get_labels(current_user: dict = Depends(get_current_user), database=Depends(get_db)):
    labels = await database.labels.find({}, {"_id": 0}).sort("created_at", -1).to_list(1000)
    return [Label(**label_data) for label_data in labels]


@api_router.get("/labels/{label_id}")
async def get_label_with_codes(
    label_id: str,
    current_user: dict = Depends(get_current_user),
    database=Depends(get_db),
    service: WeighingService = Depends(get_weighing_service)
):
    """Stored label plus freshly rendered QR and barcode images"""
    label = await database.labels.find_one({"id": label_id}, {"_id": 0})
    if not label:
        raise HTTPException(status_code=404, detail="Label not found")
    encoded = service.encode_stored_label(label)
    return {"label": label, **encoded.to_base64()}

# ==================== STOCK LEDGER ====================

@api_router.get("/stock/{compound_id}/movements")
async def get_stock_movements(
    compound_id: str,
    current_user: dict = Depends(get_current_user),
    service: WeighingService = Depends(get_weighing_service)
):
    """Ledger movements of a compound, newest first"""
    await service.ledger.get_compound(compound_id)
    return await service.ledger.list_movements(compound_id)


@api_router.get("/stock/{compound_id}/audit", response_model=LedgerAudit)
async def audit_stock(
    compound_id: str,
    current_user: dict = Depends(get_current_user),
    service: WeighingService = Depends(get_weighing_service)
):
    return await service.ledger.audit(compound_id)


app.include_router(api_router)

@app.on_event("startup")
async def startup_event():
    try:
        await db.labels.create_index([("label_code", 1)], unique=True, name="label_code_unique")
        await db.usages.create_index([("compound_id", 1), ("created_at", -1)], name="usage_compound_idx")
        await db.stock_movements.create_index(
            [("compound_id", 1), ("ledger_version", 1)], unique=True, name="movement_version_unique"
        )
        await db.counters.create_index([("collection", 1)], unique=True, name="counter_collection_unique")
        logger.info("Weighing indexes created")
    except Exception as e:
        logger.warning(f"Failed to create weighing indexes: {e}")

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
