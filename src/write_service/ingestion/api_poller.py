"""
api_poller.py
Polls the emergency-dispatch JSON feed at a fixed interval, turns police items
into Crime rows, skips the ones we already have and stores the rest.
Every stored crime is published through the CrimeNotifier.

Here is how the poller runs:
    1. Set FEED_URL (and optionally POLL_INTERVAL_SECONDS, FEED_TIMEOUT_SECONDS,
       FEED_SERVICE) in .env.
    2. Run python -m src.write_service.app from the project's root folder.
       The poller starts with the write service and ticks immediately, then
       every POLL_INTERVAL_SECONDS.
    3. Or go to http://localhost:5000/poll (POST) to run one tick by hand.

A tick that is still running when the next one is due makes the next one get
skipped, ticks never pile up.
"""
import logging
import os
import threading
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from src.write_service.ingestion.json_fetcher import get_json
from src.write_service.processing.crime_processor import (
    build_crime,
    clean_data,
    derive_type,
    get_text,
    validate_item,
)
from src.write_service.services.crime_service import InvalidCrimeError

logger = logging.getLogger(__name__)


def float_from_env(name, default):
    """Read a number from the environment, falling back to default when it is missing or malformed."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"{name}={value!r} is not a number, using {default}")
        return default


# Configuration
FEED_URL = os.getenv("FEED_URL")
POLL_INTERVAL_SECONDS = float_from_env("POLL_INTERVAL_SECONDS", 10.0)
FEED_TIMEOUT_SECONDS = float_from_env("FEED_TIMEOUT_SECONDS", 10.0)
# Only items from this service ("dienst") are crimes
FEED_SERVICE = os.getenv("FEED_SERVICE", "Politie")


class ApiPollService:
    """
    Fetch -> parse -> dedupe -> insert -> notify, once per tick.

    crime_service: CrimeService used for the duplicate checks and inserts.
    notifier: CrimeNotifier that receives every inserted crime.
    """

    def __init__(self, crime_service, notifier, api_url=FEED_URL,
                 interval=POLL_INTERVAL_SECONDS, timeout=FEED_TIMEOUT_SECONDS,
                 service_name=FEED_SERVICE, clock=datetime.now):
        if not api_url:
            raise ValueError("api_url is required")

        self.crime_service = crime_service
        self.notifier = notifier
        self.api_url = api_url
        self.interval = interval if interval and interval > 0 else 10
        self.timeout = timeout
        self.service_name = service_name
        self._clock = clock

        # Single slot: whoever holds it is running a tick
        self._tick_slot = threading.BoundedSemaphore(1)
        self._stop_event = threading.Event()
        self._scheduler = None

    # ------------------------------
    # Scheduling
    # ------------------------------
    def start(self):
        """Start ticking: once right away, then every interval."""
        if self._scheduler is not None and self._scheduler.is_alive():
            return
        self._stop_event.clear()
        self._scheduler = threading.Thread(target=self._schedule_loop, name="api-poller", daemon=True)
        self._scheduler.start()
        logger.info(f"Polling {self.api_url} every {self.interval}s")

    def stop(self):
        """Stop scheduling new ticks. A fetch already in flight is not interrupted."""
        self._stop_event.set()
        logger.info("Poller stopped")

    @property
    def is_polling(self):
        """True while a tick is running."""
        if self._tick_slot.acquire(blocking=False):
            self._tick_slot.release()
            return False
        return True

    def _schedule_loop(self):
        while not self._stop_event.is_set():
            self.trigger()
            self._stop_event.wait(self.interval)

    def trigger(self):
        """
        Run one tick on a background thread. Returns False (and does nothing)
        when the previous tick is still running.
        """
        if not self._tick_slot.acquire(blocking=False):
            logger.debug("Previous poll still running, skipping this tick")
            return False

        worker = threading.Thread(target=self._run_tick, name="api-poller-tick", daemon=True)
        worker.start()
        return True

    def poll_now(self):
        """
        Run one tick on the calling thread. Returns the inserted crimes, or
        None when another tick is already running.
        """
        if not self._tick_slot.acquire(blocking=False):
            logger.debug("Previous poll still running, not starting another one")
            return None
        try:
            return self.poll_once()
        finally:
            self._tick_slot.release()

    def _run_tick(self):
        try:
            self.poll_once()
        except Exception:
            logger.exception("Polling failed")
        finally:
            self._tick_slot.release()

    # ------------------------------
    # One tick
    # ------------------------------
    def poll_once(self):
        """
        Fetch the feed once and store every new police item.
        Returns the list of crimes that were inserted.
        """
        raw_data = get_json(self.api_url, timeout=self.timeout)
        if raw_data is None:
            return []

        items = clean_data(raw_data)
        if items is None:
            logger.warning(f"Feed returned unexpected JSON root {type(raw_data).__name__}, skipping tick")
            return []

        inserted = []
        for item in items:
            try:
                crime = self.process_item(item)
            except Exception:
                logger.exception(f"Failed to process feed item {item!r}")
                continue
            if crime is not None:
                inserted.append(crime)

        if inserted:
            logger.info(f"Inserted {len(inserted)} new crime(s) from {self.api_url}")
        return inserted

    def process_item(self, item):
        """
        Run one feed item through the filter chain. Returns the stored Crime,
        or None when the item was rejected or could not be saved.
        """
        problems = validate_item(item)
        if problems:
            logger.warning(f"Skipping malformed feed item: {'; '.join(problems)}")
            return None

        uid = get_text(item, "uid").strip()
        if not uid:
            logger.debug("Skipping feed item without uid")
            return None

        service = get_text(item, "dienst")
        if service.casefold() != self.service_name.casefold():
            logger.debug(f"Skipping feed item uid={uid} because dienst != {self.service_name} (dienst={service})")
            return None

        description = get_text(item, "melding")
        crime_type = derive_type(description, service)

        # FIRST: dedupe by uid (fast, exact)
        if self.crime_service.exists_by_uid(uid):
            logger.debug(f"Skipping existing item uid={uid}")
            return None

        # SECOND: dedupe by description (case-insensitive, trimmed)
        if description.strip() and self.crime_service.exists_by_description(description):
            logger.debug(f"Skipping feed item uid={uid} because a crime with the same description already exists")
            return None

        crime = build_crime(item, now=self._clock(), crime_type=crime_type)
        if crime.lat == 0.0 and crime.lng == 0.0:
            logger.debug(f"Skipping feed item uid={uid} because coordinates are 0,0")
            return None

        try:
            saved = self.crime_service.add(crime)
        except InvalidCrimeError as e:
            logger.debug(f"Skipping feed item uid={uid}: {e}")
            return None
        except SQLAlchemyError:
            logger.exception(f"Failed to insert crime uid={uid}")
            return None

        # Let listeners (UI, recent list, ...) know. The insert stays even if this fails.
        try:
            self.notifier.publish(saved)
        except Exception as e:
            logger.warning(f"Notifier publish failed for uid={uid}: {e}")

        logger.info(f"Inserted crime from API uid={uid} at {saved.lat},{saved.lng}")
        return saved
