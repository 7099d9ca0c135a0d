"""
crime_processor.py
This code turns raw items from the emergency-dispatch feed into Crime rows.

A feed item looks like this (field names are the Dutch names the feed uses):
    {
        "uid": "A1",
        "dienst": "Politie",               # service / agency
        "melding": "Diefstal fiets",        # description
        "plaats": "Utrecht",                # city
        "latlong": "52.1,5.1",              # or "plaats_latlon"
        "datum": "01-01-2025",              # dd-MM-yyyy
        "tijd": "10:00:00",                 # H:mm or H:mm:ss
        "timestamp": "1735722000",          # epoch seconds, used when datum/tijd are missing
        "locatie": "...", "postcode": "...", "regio": "..."
    }

Nothing here touches the database or the network; the poller decides what
to do with the results.
"""
import logging
import math
import re
from datetime import datetime

from jsonschema import Draft7Validator

from src.write_service.db.models import Crime

logger = logging.getLogger(__name__)

# Values of the fields we read must be simple scalars
_scalar = {"type": ["string", "number", "null"]}

# Shape of one feed item. Missing fields are fine, the poller applies its own
# rules (uid required, dienst must match, ...).
FEED_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        field: _scalar
        for field in (
            "uid", "dienst", "melding", "plaats", "latlong", "plaats_latlon",
            "datum", "tijd", "timestamp", "locatie", "postcode", "regio",
        )
    },
}

_item_validator = Draft7Validator(FEED_ITEM_SCHEMA)

# Formats of "datum tijd", tried in order
DATETIME_FORMATS = ("%d-%m-%Y %H:%M:%S", "%d-%m-%Y %H:%M")

_DIGITS = re.compile(r"\d+")
# Leading / trailing characters that are not letters or digits
_EDGE_PUNCTUATION = re.compile(r"^[\W_]+|[\W_]+$")


def clean_data(raw_data):
    """
    This function ensures that the feed document is in a standardized format:
    a list of items. A single object is wrapped in a list. Returns None when the
    root is neither an array nor an object.
    """
    if isinstance(raw_data, dict):
        # One item = wrap dictionary in list
        return [raw_data]
    if isinstance(raw_data, list):
        return raw_data
    return None


def validate_item(item):
    """Returns a list of problems with the item's shape (empty when it is fine)."""
    return [error.message for error in _item_validator.iter_errors(item)]


def get_text(item, key):
    """Field value as a string ("" when missing or null)."""
    value = item.get(key)
    if value is None:
        return ""
    return str(value)


def derive_type(description, service):
    """
    Short incident type from the description: drop digits, take the first word
    and strip punctuation around it. Falls back to the service name.

    "12 auto's botsen op straat" -> "auto's"
    """
    without_digits = _DIGITS.sub("", (description or "").strip()).strip()
    tokens = without_digits.split()
    if not tokens:
        return service

    token = _EDGE_PUNCTUATION.sub("", tokens[0])
    return token or service


def parse_lat_lng(text):
    """Parse "lat,lng". Returns (lat, lng) or None when it is not two numbers."""
    parts = [part.strip() for part in (text or "").split(",")]
    parts = [part for part in parts if part]
    if len(parts) < 2:
        return None

    try:
        lat = float(parts[0])
        lng = float(parts[1])
    except ValueError:
        return None

    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    return lat, lng


def parse_coordinates(item):
    """
    Coordinates of a feed item. "latlong" wins when it is filled in, otherwise
    "plaats_latlon" is used. Anything unparseable gives (0.0, 0.0).
    """
    primary = get_text(item, "latlong")
    source = primary if primary.strip() else get_text(item, "plaats_latlon")

    parsed = parse_lat_lng(source)
    if parsed is None:
        return 0.0, 0.0
    return parsed


def _parse_date_and_time(date_text, time_text):
    combined = f"{date_text.strip()} {time_text.strip()}"
    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(combined, fmt)
        except ValueError:
            continue
    return None


def _parse_epoch(value):
    if isinstance(value, bool) or value is None:
        return None
    try:
        seconds = int(str(value).strip())
        return datetime.fromtimestamp(seconds)
    except (ValueError, OverflowError, OSError):
        return None


def parse_incident_datetime(item, now):
    """
    When the incident happened, in local time.
    1. "datum" + "tijd" (dd-MM-yyyy H:mm[:ss])
    2. "timestamp" (epoch seconds)
    3. now
    """
    if item.get("datum") is not None and item.get("tijd") is not None:
        parsed = _parse_date_and_time(get_text(item, "datum"), get_text(item, "tijd"))
        if parsed is not None:
            return parsed
        logger.debug(f"Could not parse datum/tijd for uid={item.get('uid')}")

    parsed = _parse_epoch(item.get("timestamp"))
    if parsed is not None:
        return parsed

    return now


def build_crime(item, now, crime_type=None):
    """Map a feed item onto a new (unsaved) Crime."""
    description = get_text(item, "melding")
    lat, lng = parse_coordinates(item)

    return Crime(
        uid=get_text(item, "uid").strip(),
        type=crime_type if crime_type is not None else derive_type(description, get_text(item, "dienst")),
        description=description,
        street=get_text(item, "locatie"),
        house_number="",
        postcode=get_text(item, "postcode"),
        city=get_text(item, "plaats"),
        province=get_text(item, "regio"),
        lat=lat,
        lng=lng,
        incident_date_time=parse_incident_datetime(item, now),
    )
