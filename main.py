import uvicorn
import time
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from battleloop.api.battle import router as battle_router, shutdown_engine
from battleloop.utils.logging_config import setup_logging

# Initialize enhanced logging
setup_logging()
logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Kill a running agent rather than leave it orphaned
    await shutdown_engine()


app = FastAPI(title="BattleLoop API", lifespan=lifespan)

# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info("Incoming: %s %s from %s", request.method, request.url.path, client_host)

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                "Outgoing: %s %s - Status: %d - Time: %.2fms",
                request.method, request.url.path, response.status_code, process_time,
            )
            return response
        except Exception as e:
            logger.error("Request failed: %s %s - Error: %s", request.method, request.url.path, e)
            raise

app.add_middleware(LoggingMiddleware)

# ---------------------------------------------------------------------------
# CORS: the dashboard (port 3000) calls the backend (port 8000)
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Health endpoint
@app.get("/health")
async def health_check():
    return {"status": "ok"}

app.include_router(battle_router, tags=["Battle"])

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
