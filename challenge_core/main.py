import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from challenge_core/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from challenge_core.core.config import settings, validate_config  # noqa: E402
from challenge_core.core.logging import configure_logging  # noqa: E402
from challenge_core.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from challenge_core.core.database import create_all_tables  # noqa: E402
from challenge_core.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from challenge_core.api import admin_challenge, health, outreach, progress, tasks  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("challenge")
    logger.info("Starting challenge task engine...")
    app.state.startup_time = time.time()
    if settings.ENV != "production":
        # Dev convenience; production schema is managed by migrations
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("challenge").info("Stopping challenge task engine...")


app = FastAPI(title="Challenge Task Engine", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(tasks.router)
app.include_router(outreach.router)
app.include_router(progress.router)
app.include_router(admin_challenge.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("challenge_core.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
