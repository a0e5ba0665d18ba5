import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.db.engine import init_db
from app.services.webhook_dispatcher import webhook_dispatcher

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DB_AUTO_INIT_ON_STARTUP:
        logger.info("Initializing Database...")
        try:
            await init_db()
            logger.info("Database initialized successfully.")
        except Exception as e:
            logger.exception(f"Startup Failure: {e}")
            raise

    dispatcher_task = None
    if settings.WEBHOOK_DISPATCHER_ENABLED:
        dispatcher_task = asyncio.create_task(webhook_dispatcher.run_forever())

    yield

    logger.info("Shutting down...")
    if dispatcher_task is not None:
        dispatcher_task.cancel()
        try:
            await dispatcher_task
        except asyncio.CancelledError:
            logger.info("Webhook dispatcher stopped.")


from app.routers import approvals, documents, webhooks

app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    if process_time > 0.5:
        logger.warning(f"Slow Request: {request.method} {request.url.path} took {process_time:.4f}s")

    return response


@app.get("/health")
async def health():
    return {"status": "ok", "project": settings.PROJECT_NAME}


app.include_router(approvals.router, prefix="/api")
app.include_router(webhooks.router, prefix="/api")
app.include_router(documents.router, prefix="/api")
