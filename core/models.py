"""
Cosmic Quirks Database Models
PostgreSQL (or SQLite for local/dev) schema
"""

from datetime import datetime
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, Date,
    DateTime, ForeignKey, CheckConstraint, Index, UniqueConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")


def _uuid_default() -> str:
    return str(uuid.uuid4())


Base = declarative_base()


# =============================================================================
# Users (profile rows mirrored from the hosted identity provider)
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(320))
    full_name = Column(String(200))
    plan_type = Column(String(20), nullable=False, default="registered", server_default="registered")
    generations_used_today = Column(Integer, nullable=False, default=0, server_default="0")
    last_generation_date = Column(Date)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("plan_type IN ('registered', 'premium')", name="ck_users_plan_type"),
        CheckConstraint("generations_used_today >= 0", name="ck_users_generations_non_negative"),
    )


# =============================================================================
# Anonymous usage (one row per client address per day)
# =============================================================================

class UsageTracking(Base):
    __tablename__ = "usage_tracking"

    id = Column(Integer, primary_key=True)
    ip_address = Column(String(64), nullable=False)
    date = Column(Date, nullable=False)
    generations_used = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("ip_address", "date", name="uq_usage_tracking_ip_date"),
        CheckConstraint("generations_used >= 0", name="ck_usage_tracking_non_negative"),
    )


# =============================================================================
# Image asset pool (reused for anonymous visitors)
# =============================================================================

class ImageAsset(Base):
    __tablename__ = "image_assets"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    image_url = Column(Text, nullable=False)
    character_name = Column(String(200), nullable=False)
    character_description = Column(Text, nullable=False)
    question_theme = Column(String(20), default="general")
    form_type = Column(String(50), nullable=False, default="fortune")
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    usage_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_used_at = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("usage_count >= 0", name="ck_image_assets_usage_non_negative"),
        Index("ix_image_assets_lookup", "is_active", "form_type", "question_theme"),
    )


# =============================================================================
# Prediction results (registered callers only)
# =============================================================================

class PredictionResult(Base):
    __tablename__ = "prediction_results"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)
    user_id = Column(String(64), ForeignKey("users.id"))
    client_ip = Column(String(64))
    form_type = Column(String(50), nullable=False, default="fortune")
    user_name = Column(String(50), nullable=False)
    question = Column(Text, nullable=False)
    birth_month = Column(String(2), nullable=False)
    birth_year = Column(String(4), nullable=False)
    character_name = Column(String(200), nullable=False)
    character_description = Column(Text, nullable=False)
    prediction_text = Column(Text, nullable=False)
    image_variants = Column(JSON_TYPE)
    question_theme = Column(String(20), default="general")
    generation_source = Column(String(30), default="ai")
    usage_count = Column(Integer, nullable=False, default=1)
    last_used_at = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)

    __table_args__ = (
        Index("ix_prediction_results_user_created", "user_id", "created_at"),
    )
