from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .config import settings
from .deps import get_engine, get_redis
from .logging import setup_logging

setup_logging(json_output=settings.log_json, level=settings.log_level)

app = FastAPI(title="Guide Backend", version="0.1.0")

from .api import router as v1_router
app.include_router(v1_router)


@app.exception_handler(RequestValidationError)
async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request data",
            "details": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
                for err in exc.errors()
            ],
        },
    )


@app.get("/healthz")
def healthz():
    # DB check
    engine = get_engine()
    with engine.connect() as conn:
        conn.execute(text("select 1"))

    # Redis check
    r = get_redis()
    if r.ping() is not True:
        raise RuntimeError("redis ping failed")

    return {"status": "ok", "db": "ok", "redis": "ok"}
