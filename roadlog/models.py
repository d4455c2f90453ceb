from sqlalchemy import Column, Integer, Text, DateTime, Double
from sqlalchemy.sql import func

from roadlog.database import Base
from roadlog.variables import DEFAULT_PLACE_RADIUS_M


class KeyValue(Base):
    """Single-namespace storage: the event log lives under one key as a JSON array."""
    __tablename__ = "kv_store"
    key        = Column(Text, primary_key=True)
    value      = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class NamedPlace(Base):
    __tablename__ = "named_places"
    id         = Column(Integer, primary_key=True, index=True)
    label      = Column(Text, nullable=False)
    label_key  = Column(Text, unique=True, index=True, nullable=False)  # lower-cased label
    lat        = Column(Double, nullable=False)
    lon        = Column(Double, nullable=False)
    radius_m   = Column(Double, nullable=False, default=DEFAULT_PLACE_RADIUS_M)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
