"""
crime_service.py
-----------------
CRUD, filtering and statistics for incidents stored in the crimes table.

Both the write service (feed poller, create/update/delete endpoints) and the
read service (list, filter and statistics endpoints) go through this class.
Every call opens its own session, so one CrimeService can be shared between
the Flask request threads and the poller thread.
"""

import logging
from collections import Counter
from datetime import date, datetime, timedelta
from typing import List, NamedTuple, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from src.write_service.db.models import Crime, normalize_description

logger = logging.getLogger(__name__)

# Label used when an incident has no type or city
UNKNOWN_LABEL = "Onbekend"

# Fixed 6-hour windows of the day: (label, first hour, last hour exclusive)
TIME_SLOTS = [
    ("00:00-06:00", 0, 6),
    ("06:00-12:00", 6, 12),
    ("12:00-18:00", 12, 18),
    ("18:00-24:00", 18, 24),
]

# Fields a full update overwrites. uid and created_at are never touched.
MUTABLE_FIELDS = (
    "type", "description", "street", "house_number", "postcode",
    "city", "province", "incident_date_time", "lat", "lng",
)


class InvalidCrimeError(ValueError):
    """The incident breaks a storage rule (e.g. no location)."""


class DuplicateCrimeError(InvalidCrimeError):
    """Another stored incident already has the same normalized description."""


class MonthCounts(NamedTuple):
    current_month: int
    previous_month: int


class TypeCount(NamedTuple):
    type: str
    count: int


class CityCount(NamedTuple):
    city: str
    count: int


class SlotCount(NamedTuple):
    label: str
    count: int


class DayCount(NamedTuple):
    date: date
    count: int


def _month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _previous_month_start(month_start: datetime) -> datetime:
    if month_start.month == 1:
        return month_start.replace(year=month_start.year - 1, month=12)
    return month_start.replace(month=month_start.month - 1)


def _bucket_label(value) -> str:
    if value is None or not str(value).strip():
        return UNKNOWN_LABEL
    return value


class CrimeService:
    """
    Repository over the crimes table.

    session_factory: a sessionmaker (or any callable returning a Session
    usable as a context manager). Use expire_on_commit=False so returned
    rows stay readable after the session closes.
    """

    def __init__(self, session_factory, clock=datetime.now):
        self._session_factory = session_factory
        self._clock = clock

    # ------------------------------
    # CRUD
    # ------------------------------
    def _check_storable(self, session, crime: Crime, exclude_id: Optional[int] = None):
        if (crime.lat or 0.0) == 0.0 and (crime.lng or 0.0) == 0.0:
            raise InvalidCrimeError("An incident needs a location, coordinates 0,0 are not allowed")
        if self._description_taken(session, crime.description, exclude_id):
            raise DuplicateCrimeError(f"An incident with description '{crime.description.strip()}' already exists")

    @staticmethod
    def _description_taken(session, description, exclude_id=None) -> bool:
        normalized = normalize_description(description)
        if not normalized:
            return False
        query = select(Crime.id).where(Crime.description_normalized == normalized)
        if exclude_id is not None:
            query = query.where(Crime.id != exclude_id)
        return session.scalar(query.limit(1)) is not None

    def add(self, crime: Crime) -> Crime:
        """
        Insert a new incident. Sets created_at when it is not filled in yet.
        Raises InvalidCrimeError for coordinates 0,0 and DuplicateCrimeError
        when the normalized description is already stored.
        """
        if crime.created_at is None:
            crime.created_at = self._clock()
        if crime.incident_date_time is None:
            crime.incident_date_time = crime.created_at

        with self._session_factory() as session:
            self._check_storable(session, crime)
            try:
                session.add(crime)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to insert crime uid={crime.uid}: {e}")
                raise
            session.refresh(crime)
            session.expunge(crime)
        return crime

    def get_by_id(self, crime_id: int) -> Optional[Crime]:
        with self._session_factory() as session:
            return session.get(Crime, crime_id)

    def get_all(self) -> List[Crime]:
        """All incidents, newest created first."""
        with self._session_factory() as session:
            query = select(Crime).order_by(Crime.created_at.desc(), Crime.id.desc())
            return list(session.scalars(query))

    def get_filtered(self, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None,
                     crime_type: Optional[str] = None, city: Optional[str] = None) -> List[Crime]:
        """
        Incidents matching every given filter, newest created first.

        date_from / date_to are inclusive bounds on incident_date_time.
        crime_type and city are exact matches. Filters left as None or
        blank are ignored.
        """
        query = select(Crime)

        if date_from is not None:
            query = query.where(Crime.incident_date_time >= date_from)
        if date_to is not None:
            query = query.where(Crime.incident_date_time <= date_to)
        if crime_type and crime_type.strip():
            query = query.where(Crime.type == crime_type)
        if city and city.strip():
            query = query.where(Crime.city == city)

        query = query.order_by(Crime.created_at.desc(), Crime.id.desc())
        with self._session_factory() as session:
            return list(session.scalars(query))

    def update(self, crime: Crime) -> Optional[Crime]:
        """
        Overwrite the editable fields of the stored incident with the same id.
        Returns the updated incident, or None when the id does not exist.
        Raises the same errors as add, ignoring the row itself.
        """
        with self._session_factory() as session:
            existing = session.get(Crime, crime.id)
            if existing is None:
                return None

            self._check_storable(session, crime, exclude_id=existing.id)

            for field in MUTABLE_FIELDS:
                setattr(existing, field, getattr(crime, field))

            try:
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to update crime {crime.id}: {e}")
                raise
            session.refresh(existing)
            return existing

    def delete(self, crime_id: int) -> bool:
        """Remove an incident. Returns whether a row existed."""
        with self._session_factory() as session:
            existing = session.get(Crime, crime_id)
            if existing is None:
                return False
            try:
                session.delete(existing)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to delete crime {crime_id}: {e}")
                raise
            return True

    # ------------------------------
    # Duplicate checks used by the feed poller
    # ------------------------------
    def exists_by_uid(self, uid: str) -> bool:
        with self._session_factory() as session:
            query = select(Crime.id).where(Crime.uid == uid).limit(1)
            return session.scalar(query) is not None

    def exists_by_description(self, description: str, exclude_id: Optional[int] = None) -> bool:
        """Case-insensitive, trimmed match against stored descriptions."""
        with self._session_factory() as session:
            return self._description_taken(session, description, exclude_id)

    # ------------------------------
    # Statistics (read only)
    # ------------------------------
    def get_total_count(self) -> int:
        with self._session_factory() as session:
            return session.scalar(select(func.count(Crime.id))) or 0

    def get_count_in_range(self, date_from: datetime, date_to: datetime) -> int:
        """Number of incidents with date_from <= incident_date_time <= date_to."""
        query = (
            select(func.count(Crime.id))
            .where(Crime.incident_date_time >= date_from)
            .where(Crime.incident_date_time <= date_to)
        )
        with self._session_factory() as session:
            return session.scalar(query) or 0

    def get_this_and_previous_month_counts(self) -> MonthCounts:
        current_start = _month_start(self._clock())
        previous_start = _previous_month_start(current_start)
        if current_start.month == 12:
            next_start = current_start.replace(year=current_start.year + 1, month=1)
        else:
            next_start = current_start.replace(month=current_start.month + 1)

        def count_between(start, end):
            query = (
                select(func.count(Crime.id))
                .where(Crime.incident_date_time >= start)
                .where(Crime.incident_date_time < end)
            )
            return session.scalar(query) or 0

        with self._session_factory() as session:
            return MonthCounts(
                current_month=count_between(current_start, next_start),
                previous_month=count_between(previous_start, current_start),
            )

    def _grouped_counts(self, column, top: int):
        with self._session_factory() as session:
            rows = session.execute(select(column, func.count(Crime.id)).group_by(column)).all()

        # Blank and whitespace-only values end up in different SQL groups,
        # merge them under one label here
        counts = Counter()
        for value, count in rows:
            counts[_bucket_label(value)] += count

        ordered = sorted(counts.items(), key=lambda pair: (-pair[1], pair[0]))
        if top > 0:
            ordered = ordered[:top]
        return ordered

    def get_counts_by_type(self, top: int = 6) -> List[TypeCount]:
        """Most common incident types, highest count first. top <= 0 returns all."""
        return [TypeCount(label, count) for label, count in self._grouped_counts(Crime.type, top)]

    def get_top_cities(self, top: int = 5) -> List[CityCount]:
        """Cities with the most incidents, highest count first. top <= 0 returns all."""
        return [CityCount(label, count) for label, count in self._grouped_counts(Crime.city, top)]

    def get_counts_by_time_slot(self) -> List[SlotCount]:
        """Incidents per 6-hour window of the (local) day, always four entries."""
        with self._session_factory() as session:
            moments = session.scalars(
                select(Crime.incident_date_time).where(Crime.incident_date_time.is_not(None))
            ).all()

        slot_counts = [0] * len(TIME_SLOTS)
        for moment in moments:
            for index, (_, first_hour, end_hour) in enumerate(TIME_SLOTS):
                if first_hour <= moment.hour < end_hour:
                    slot_counts[index] += 1
                    break

        return [SlotCount(label, slot_counts[index]) for index, (label, _, _) in enumerate(TIME_SLOTS)]

    def get_counts_per_day(self, days: int = 7) -> List[DayCount]:
        """
        Incidents per calendar day for the last `days` days, today included.
        Oldest day first; days without incidents are listed with count 0.
        """
        if days <= 0:
            return []

        today = self._clock().date()
        first_day = today - timedelta(days=days - 1)
        window_start = datetime.combine(first_day, datetime.min.time())
        window_end = datetime.combine(today + timedelta(days=1), datetime.min.time())

        with self._session_factory() as session:
            moments = session.scalars(
                select(Crime.incident_date_time)
                .where(Crime.incident_date_time >= window_start)
                .where(Crime.incident_date_time < window_end)
            ).all()

        per_day = Counter(moment.date() for moment in moments)
        return [
            DayCount(first_day + timedelta(days=offset), per_day.get(first_day + timedelta(days=offset), 0))
            for offset in range(days)
        ]

    def get_newest(self) -> Optional[Crime]:
        """The most recently created incident, or None when the table is empty."""
        query = select(Crime).order_by(Crime.created_at.desc(), Crime.id.desc()).limit(1)
        with self._session_factory() as session:
            return session.scalar(query)
