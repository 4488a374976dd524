"""routers/admin.py - Health checks, route listing, runtime config overrides."""

from typing import List, Optional

from fastapi import APIRouter, Header, HTTPException

from config import ADMIN_API_TOKEN
from db import SessionLocal
from models import AdminConfig
from schemas.admin import AdminConfigResponse, AdminConfigUpdatePayload

router = APIRouter()

# Keys the search pipeline reads through config.get_config_*
ADMIN_CONFIG_KEYS = {
    "SEARCH_TIMEOUT_SECONDS",
    "DEFAULT_OFFER_LIMIT",
    "MAX_OFFER_LIMIT",
    "DEFAULT_OFFER_SORT",
    "MAX_AIRPORTS_PER_CITY",
    "WORKER_STALE_SECONDS",
    "REQUIRE_SEARCH_OWNER",
}


def _require_admin(x_admin_token: Optional[str]) -> None:
    received = (x_admin_token or "").strip()
    expected = (ADMIN_API_TOKEN or "").strip()

    if received.lower().startswith("bearer "):
        received = received[7:].strip()

    if expected == "":
        raise HTTPException(status_code=500, detail="Admin token not configured")

    if received != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


# =====================================================================
# SECTION: HEALTH ROUTES
# =====================================================================

@router.get("/")
def home():
    return {"message": "Flight search backend is running"}


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/routes")
def list_routes_handler():
    # Imported lazily to avoid circular import
    from main import app
    return [route.path for route in app.routes]


# =====================================================================
# SECTION: ADMIN CONFIG
# =====================================================================

@router.get("/admin/config", response_model=List[AdminConfigResponse])
def list_admin_config(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")):
    _require_admin(x_admin_token)
    db = SessionLocal()
    try:
        rows = db.query(AdminConfig).order_by(AdminConfig.key).all()
        return [AdminConfigResponse(key=r.key, value=r.value, description=r.description) for r in rows]
    finally:
        db.close()


@router.put("/admin/config/{key}", response_model=AdminConfigResponse)
def set_admin_config(
    key: str,
    payload: AdminConfigUpdatePayload,
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
):
    _require_admin(x_admin_token)

    key = key.strip().upper()
    if key not in ADMIN_CONFIG_KEYS:
        raise HTTPException(status_code=400, detail=f"Unknown config key: {key}")

    db = SessionLocal()
    try:
        row = db.query(AdminConfig).filter(AdminConfig.key == key).first()
        if row is None:
            row = AdminConfig(key=key)
            db.add(row)
        row.value = payload.value
        if payload.description is not None:
            row.description = payload.description
        db.commit()
        db.refresh(row)
        return AdminConfigResponse(key=row.key, value=row.value, description=row.description)
    finally:
        db.close()
