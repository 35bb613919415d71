from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import os
import logging

from dashimport.config import get_import_settings
from dashimport.import_routes import router as import_router
from dashimport.supabase_client import get_supabase

settings = get_import_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Dashboard Import API",
    description="Workbook import and reconciliation for the resource dashboard",
    version="1.0.0"
)

allowed_origins = ["http://localhost:3000", "http://127.0.0.1:3000"]

# Additional allowed origins from environment
extra_origins = os.environ.get("CORS_ORIGINS", "")
if extra_origins:
    allowed_origins.extend([o.strip() for o in extra_origins.split(",") if o.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Log startup information."""
    port = os.environ.get("PORT", "8000")
    logger.info(f"Dashboard Import API starting on port {port}")
    logger.info(f"Supabase connected: {get_supabase() is not None}")
    logger.info(f"Dataset: {settings.dataset_id}")


app.include_router(import_router)


@app.get("/health")
def health():
    return {"status": "ok"}
