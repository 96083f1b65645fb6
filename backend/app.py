from fastapi import FastAPI
import logging
import os
import sys
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# Load environment
load_dotenv()

# Import settings (after dotenv loads)
import settings

# Configure stdout/stderr for UTF-8 (pt-BR messages in logs)
if sys.stdout.encoding != 'utf-8':
    sys.stdout.reconfigure(encoding='utf-8')
if sys.stderr.encoding != 'utf-8':
    sys.stderr.reconfigure(encoding='utf-8')

log_dir = os.path.dirname(settings.LOG_FILE)
if log_dir:
    os.makedirs(log_dir, exist_ok=True)

# Setup logging with RGE configuration (UTF-8 encoding for Unicode support)
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - [%(name)s] - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(settings.LOG_FILE, encoding='utf-8'),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)
logger.info(f"Starting {settings.SERVICE_NAME} v{settings.SERVICE_VERSION}")

from db import get_engine, init_database
from api.routes import router, set_engine, set_stats, set_worker
from scheduler.stats import ExecutionStats
from scheduler.worker import start_followup_worker, stop_followup_worker

engine = None
stats = ExecutionStats()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    global engine

    # Initialize database
    engine = get_engine(settings.DATABASE_URL)
    init_database(engine)
    set_engine(engine)
    set_stats(stats)

    if not settings.EVOLUTION_API_URL or not settings.EVOLUTION_API_KEY:
        logger.warning("Evolution API not configured - every send will fail until it is")
    if not settings.OPENAI_API_KEY:
        logger.warning("No OpenAI key configured - messages will use template substitution only")

    # Start follow-up worker
    try:
        worker = start_followup_worker(engine, stats)
        set_worker(worker)
        logger.info(
            f"Follow-up worker started: every {settings.POLL_INTERVAL_MINUTES} min, "
            f"up to {settings.MAX_ITEMS_PER_TICK} items per pull"
        )
    except Exception as e:
        logger.error(f"Failed to start follow-up worker: {e}", exc_info=True)

    yield

    # Stop follow-up worker
    try:
        stop_followup_worker()
    except Exception as e:
        logger.error(f"Error stopping follow-up worker: {e}", exc_info=True)

    logger.info("Application shutdown")


# Create app
app = FastAPI(title="Reengage Worker", lifespan=lifespan)
app.include_router(router)


def main():
    import uvicorn
    uvicorn.run(
        app,
        host=settings.APP_HOST,
        port=settings.APP_PORT
    )


if __name__ == "__main__":
    main()
