# farmgate/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from dotenv import find_dotenv, load_dotenv

# -------------------------------------------------
# LOAD .env ONCE (top of file, before any getenv use)
# -------------------------------------------------
load_dotenv(find_dotenv(usecwd=True))

from fastapi import FastAPI  # noqa: E402
from starlette.exceptions import HTTPException as StarletteHTTPException  # noqa: E402

from farmgate.authz_errors import http_exception_handler  # noqa: E402
from farmgate.context import AppContext  # noqa: E402
from farmgate.database import init_db  # noqa: E402
from farmgate.routers import access, session  # noqa: E402
from farmgate.settings import log_level  # noqa: E402

logging.basicConfig(
    level=log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("farmgate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.ctx = AppContext()
    logger.info("Access-control context ready")
    try:
        yield
    finally:
        app.state.ctx.teardown()
        logger.info("Access-control context closed")


# -------------------------------------------------
# APP SETUP
# -------------------------------------------------
app = FastAPI(title="FarmGate Backend", version="0.1.0", lifespan=lifespan)

app.add_exception_handler(StarletteHTTPException, http_exception_handler)

# Routers
app.include_router(session.router)
app.include_router(access.router)


@app.get("/health")
def health():
    return {"status": "ok"}
