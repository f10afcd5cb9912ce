"""
Listing Model - only the availability fields payment events change
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum

from app.db.database import Base, utcnow


class ListingStatus(str, enum.Enum):
    ACTIVE = "active"
    RESERVED = "reserved"
    SOLD = "sold"


class Listing(Base):
    """Listing record"""

    __tablename__ = "listings"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=True)
    status = Column(SQLEnum(ListingStatus), default=ListingStatus.ACTIVE, nullable=False)
    reserved_by = Column(String(64), nullable=True)
    reserved_until = Column(DateTime, nullable=True)
    sold_at = Column(DateTime, nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
