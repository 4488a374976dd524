# =====================================================================
# SECTION START: IMPORTS
# =====================================================================

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import DUFFEL_API_TOKEN, LOG_LEVEL, QSTASH_TOKEN, WORKER_URL
from db import Base, engine
import models  # noqa: F401
from routers.admin import router as admin_router
from routers.jobs import router as jobs_router
from routers.offers import router as offers_router
from routers.search import router as search_router
from services.change_feed import get_change_feed

# =====================================================================
# SECTION END: IMPORTS
# =====================================================================


logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("main")


# =====================================================================
# SECTION START: FastAPI APP AND CORS
# =====================================================================

app = FastAPI()


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)

    if not DUFFEL_API_TOKEN:
        logger.warning("[startup] DUFFEL_API_TOKEN is not set, every job will fail")
    if not QSTASH_TOKEN or not WORKER_URL:
        logger.warning(
            f"[startup] queue not configured has_token={bool(QSTASH_TOKEN)} has_worker_url={bool(WORKER_URL)}"
        )

    feed = get_change_feed()
    logger.info(f"[startup] change feed={type(feed).__name__}")


SEARCH_ROUTES = ("/initiate-search", "/search")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    if request.url.path in SEARCH_ROUTES:
        message = "Missing or invalid search parameters"
    else:
        message = "Invalid request"
    return JSONResponse(
        status_code=400,
        content={
            "error": message,
            "details": [
                {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
                for err in exc.errors()
            ],
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(admin_router)
app.include_router(search_router)
app.include_router(jobs_router)
app.include_router(offers_router)

# =====================================================================
# SECTION END: FastAPI APP AND CORS
# =====================================================================
