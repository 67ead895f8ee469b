import logging
import os
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import orm  # noqa: F401  テーブル定義を Base に登録する
from db import Base, engine
from errors import EngineError
from routers import ALL_ROUTERS

app = FastAPI(title="備品貸出API")

Base.metadata.create_all(bind=engine)

# -----------------------
# Logging
# -----------------------
logging.basicConfig(
    level=os.getenv("APP_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("app")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed_ms = int((time.time() - start) * 1000)
    logger.info(
        "method=%s path=%s status=%s elapsed_ms=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("path=%s code=%s detail=%s", request.url.path, exc.code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "detail": exc.detail})


@app.get("/")
def root():
    return {"message": "備品貸出API", "docs": "/docs"}


for r in ALL_ROUTERS:
    app.include_router(r)
