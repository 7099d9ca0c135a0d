"""
models.py
----------
Defines the PostgreSQL tables for the write service using SQLAlchemy ORM.
Each class here represents one table in the database.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, Text, UniqueConstraint
from sqlalchemy.orm import validates
from .session import Base

def normalize_description(description):
    """Trimmed, case-folded form of a description used for duplicate checks."""
    return (description or "").strip().casefold()

class Crime(Base):
    """
    Represents one recorded incident (crime, disturbance, ...).

    Rows come from the emergency-dispatch feed poller or from users through
    the write service API. The table is automatically created if it doesn't
    exist yet.
    """
    __tablename__ = "crimes"

    # Primary key: automatically incremented ID
    id = Column(Integer, primary_key=True, autoincrement=True)

    # External id from the feed (we use this to avoid duplicate inserts).
    # User-created incidents have no uid.
    uid = Column(String(128), nullable=True)

    # Short classification, e.g. "Diefstal", "Vandalisme", "Overlast"
    type = Column(String(128), nullable=False, default="")

    description = Column(Text, nullable=False, default="")

    # Kept in sync with description, so the duplicate check is a plain
    # equality lookup instead of TRIM/LOWER on every row
    description_normalized = Column(Text, nullable=False, default="", index=True)

    # Address parts
    street = Column(String(256), nullable=False, default="")
    house_number = Column(String(32), nullable=False, default="")
    postcode = Column(String(16), nullable=False, default="")
    city = Column(String(128), nullable=False, default="", index=True)
    province = Column(String(128), nullable=False, default="")

    # Coordinates for map plotting, (0, 0) means "no location"
    lat = Column(Float, nullable=False, default=0.0)
    lng = Column(Float, nullable=False, default=0.0)

    # When it occurred (local time)
    incident_date_time = Column(DateTime, index=True)

    # When the record was stored, set by CrimeService.add
    created_at = Column(DateTime, index=True)

    # Ensures uniqueness on uid to avoid duplicates
    __table_args__ = (
        UniqueConstraint("uid", name="uq_crimes_uid"),
    )

    @validates("description")
    def _sync_normalized_description(self, key, value):
        value = value or ""
        self.description_normalized = normalize_description(value)
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "uid": self.uid,
            "type": self.type,
            "description": self.description,
            "street": self.street,
            "house_number": self.house_number,
            "postcode": self.postcode,
            "city": self.city,
            "province": self.province,
            "lat": self.lat,
            "lng": self.lng,
            "incident_date_time": self.incident_date_time.isoformat() if self.incident_date_time else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Crime(id={self.id}, uid={self.uid}, type={self.type})>"
