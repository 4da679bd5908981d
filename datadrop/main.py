import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from datadrop.api.auth import router as auth_router
from datadrop.api.routes import router
from datadrop.cleaner import start_cleaner
from datadrop.config import CORS_ORIGINS, ENABLE_CLEANER, LOG_LEVEL
from datadrop.core.exceptions import register_exception_handlers
from datadrop.db import engine, init_db
from datadrop.storage import get_cdn_invalidator, get_deletion_queue, get_object_storage

app = FastAPI(title="DataDrop API", version="1.0.0")

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("datadrop")

origins = [origin.strip() for origin in CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=origins != ["*"],
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

init_db()

app.include_router(auth_router)
app.include_router(router)
register_exception_handlers(app)

if ENABLE_CLEANER:
    start_cleaner(
        engine,
        logger,
        storage=get_object_storage(),
        invalidator=get_cdn_invalidator(),
        deletion_queue=get_deletion_queue(),
    )
