"""
Topic Sync API - Main Application

Small FastAPI app for starting, watching and stopping sync runs.

Run with:
    uvicorn topic_sync.api.main:app --port 8000
"""

import logging

from fastapi import FastAPI

from .. import __version__
from ..config import SyncSettings, load_env_file
from ..logging_utils import configure_logging
from .routers import health, sync

load_env_file()
_settings = SyncSettings.from_env()
configure_logging(_settings.log_level, _settings.log_file)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Topic Sync API",
    description="Run control for the Intercom topic sync pipeline",
    version=__version__,
)

app.include_router(health.router)
app.include_router(sync.router)
