# =======================================
# SECTION: IMPORTS AND BASE
# =======================================

from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    String,
    Text,
)

from db import Base


# =======================================
# SECTION: ADMIN CONFIG MODEL
# =======================================

class AdminConfig(Base):
    __tablename__ = "admin_config"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, nullable=False)
    value = Column(String(255), nullable=True)
    description = Column(String(255), nullable=True)


# =======================================
# SECTION: SEARCH JOB MODEL
# =======================================

class SearchJobRow(Base):
    __tablename__ = "search_jobs"

    id = Column(String(36), primary_key=True, index=True)

    # X-User-Id of the caller, null for guests
    owner = Column(String(100), nullable=True, index=True)

    search_params = Column(JSON, nullable=False)

    # pending | processing | completed | failed
    status = Column(String(20), nullable=False, default="pending", index=True)

    # {"offers": [...], "meta": {...}}, only set when completed
    results = Column(JSON, nullable=True)

    # Only set when failed
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
