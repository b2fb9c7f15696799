import os
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from mail_scheduler.api import create_app
from mail_scheduler.config_loader import load_settings
from mail_scheduler.core import MailScheduler

# Configure logging level from environment
log_level = os.getenv("MSCHED_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


if __name__ == "__main__":
    settings = load_settings()
    if settings.db_path != ":memory:":
        settings.db_path = os.path.expanduser(settings.db_path)
    # Create the scheduler but don't start it yet - let uvicorn own the event loop
    scheduler = MailScheduler(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: open storage, run restart recovery, start the queue loop
        await scheduler.start()
        yield
        # Shutdown: give in-flight attempts the configured grace period
        await scheduler.stop()

    app = create_app(scheduler, api_token=settings.api_token, lifespan=lifespan)

    uvicorn.run(app, host=settings.http_host, port=settings.http_port)
