"""
Tests for the feed poller: filter chain, duplicate handling, notification and
the "skip, don't queue" tick guard. The feed itself is always mocked.
"""

import copy
import threading
from datetime import datetime
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.exc import OperationalError

from src.write_service.ingestion.api_poller import ApiPollService, float_from_env
from src.write_service.services.crime_notifier import CrimeNotifier
from src.write_service.services.crime_service import DuplicateCrimeError

FEED_URL = "https://feed.example.org/meldingen.json"
NOW = datetime(2025, 3, 15, 12, 0, 0)

FEED_ITEM = {
    "uid": "A1",
    "dienst": "Politie",
    "melding": "Diefstal fiets",
    "plaats": "Utrecht",
    "latlong": "52.1,5.1",
    "datum": "01-01-2025",
    "tijd": "10:00:00",
}


def item(**overrides):
    value = copy.deepcopy(FEED_ITEM)
    value.update(overrides)
    return value


@pytest.fixture
def notifier():
    return CrimeNotifier()


@pytest.fixture
def received(notifier):
    """Everything the notifier publishes."""
    crimes = []
    notifier.subscribe(crimes.append)
    return crimes


@pytest.fixture
def poller(crime_service, notifier):
    return ApiPollService(crime_service, notifier, api_url=FEED_URL, interval=60, clock=lambda: NOW)


@pytest.fixture
def feed():
    """Patch the fetcher; set feed.return_value to what the feed should return."""
    with patch("src.write_service.ingestion.api_poller.get_json") as mock_get_json:
        yield mock_get_json


def test_end_to_end_insert_then_nothing_new(poller, feed, crime_service, received):
    feed.return_value = [item()]

    inserted = poller.poll_once()

    assert len(inserted) == 1
    stored = crime_service.get_all()
    assert len(stored) == 1
    crime = stored[0]
    assert crime.uid == "A1"
    assert crime.type == "Diefstal"
    assert crime.city == "Utrecht"
    assert crime.lat == 52.1
    assert crime.lng == 5.1
    assert crime.incident_date_time == datetime(2025, 1, 1, 10, 0, 0)
    assert [c.uid for c in received] == ["A1"]

    # Same feed again: nothing new
    assert poller.poll_once() == []
    assert crime_service.get_total_count() == 1
    assert len(received) == 1
    feed.assert_called_with(FEED_URL, timeout=poller.timeout)


def test_single_object_root_is_accepted(poller, feed, crime_service):
    feed.return_value = item()
    assert len(poller.poll_once()) == 1
    assert crime_service.get_total_count() == 1


@pytest.mark.parametrize("root", [None, "not a feed", 42])
def test_unusable_feed_aborts_tick(poller, feed, crime_service, root):
    feed.return_value = root
    assert poller.poll_once() == []
    assert crime_service.get_total_count() == 0


@pytest.mark.parametrize("uid", [None, "", "   "])
def test_missing_uid_is_rejected(poller, feed, crime_service, received, uid):
    bad = item(uid=uid)
    feed.return_value = [bad]

    assert poller.poll_once() == []
    assert crime_service.get_total_count() == 0
    assert received == []


def test_item_without_uid_key_is_rejected(poller, feed, crime_service):
    bad = item()
    del bad["uid"]
    feed.return_value = [bad]
    assert poller.poll_once() == []
    assert crime_service.get_total_count() == 0


@pytest.mark.parametrize("service", ["Brandweer", "Ambulance", "", None])
def test_other_services_are_rejected(poller, feed, crime_service, service):
    feed.return_value = [item(dienst=service)]
    assert poller.poll_once() == []
    assert crime_service.get_total_count() == 0


@pytest.mark.parametrize("service", ["politie", "POLITIE", "Politie"])
def test_service_match_is_case_insensitive(poller, feed, crime_service, service):
    feed.return_value = [item(dienst=service)]
    assert len(poller.poll_once()) == 1


def test_known_uid_is_rejected_even_when_everything_else_differs(poller, feed, crime_service):
    feed.return_value = [item()]
    poller.poll_once()

    feed.return_value = [item(melding="Inbraak woning", plaats="Zeist", latlong="52.08,5.23")]
    assert poller.poll_once() == []
    assert crime_service.get_total_count() == 1


def test_known_description_is_rejected_under_new_uid(poller, feed, crime_service, received):
    feed.return_value = [item()]
    poller.poll_once()

    feed.return_value = [item(uid="B2", melding="  DIEFSTAL fiets  ")]
    assert poller.poll_once() == []
    assert crime_service.get_total_count() == 1
    assert len(received) == 1


def test_empty_descriptions_are_not_deduplicated(poller, feed, crime_service):
    feed.return_value = [item(uid="E1", melding=""), item(uid="E2", melding="")]

    inserted = poller.poll_once()

    assert [crime.uid for crime in inserted] == ["E1", "E2"]
    # Nothing to derive a type from, so the service name is used
    assert {crime.type for crime in inserted} == {"Politie"}


@pytest.mark.parametrize("coordinates", [
    {"latlong": "0,0"},
    {"latlong": "0.0, 0.0"},
    {"latlong": "not,numbers"},
    {"latlong": None, "plaats_latlon": None},
])
def test_zero_or_missing_coordinates_are_rejected(poller, feed, crime_service, coordinates):
    feed.return_value = [item(**coordinates)]
    assert poller.poll_once() == []
    assert crime_service.get_total_count() == 0


def test_plaats_latlon_is_used_when_latlong_is_missing(poller, feed):
    bad = item(plaats_latlon="51.92,4.48")
    del bad["latlong"]
    feed.return_value = [bad]

    [crime] = poller.poll_once()
    assert (crime.lat, crime.lng) == (51.92, 4.48)


def test_type_derivation_and_optional_address(poller, feed):
    feed.return_value = [item(
        uid="C3",
        melding="12 auto's botsen op straat",
        locatie="Catharijnesingel",
        postcode="3511GB",
        regio="Utrecht",
    )]

    [crime] = poller.poll_once()
    assert crime.type == "auto's"
    assert crime.street == "Catharijnesingel"
    assert crime.postcode == "3511GB"
    assert crime.province == "Utrecht"


def test_timestamp_and_default_time(poller, feed):
    with_timestamp = item(uid="T1", melding="Inbraak", timestamp="1735722000")
    del with_timestamp["datum"]
    del with_timestamp["tijd"]
    without_time = item(uid="T2", melding="Overlast")
    del without_time["datum"]
    del without_time["tijd"]
    feed.return_value = [with_timestamp, without_time]

    first, second = poller.poll_once()
    assert first.incident_date_time == datetime.fromtimestamp(1735722000)
    assert second.incident_date_time == NOW


def test_malformed_item_is_skipped_and_batch_continues(poller, feed, crime_service):
    feed.return_value = ["just a string", item(uid={"nested": "uid"}), item(uid="OK1", melding="Vandalisme bushokje")]

    inserted = poller.poll_once()

    assert [crime.uid for crime in inserted] == ["OK1"]
    assert crime_service.get_total_count() == 1


def test_insert_failure_drops_only_that_item(crime_service, notifier, received, feed):
    real_add = crime_service.add

    def flaky_add(crime):
        if crime.uid == "F1":
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return real_add(crime)

    crime_service.add = flaky_add
    poller = ApiPollService(crime_service, notifier, api_url=FEED_URL, clock=lambda: NOW)
    feed.return_value = [item(uid="F1", melding="Inbraak"), item(uid="F2", melding="Overlast")]

    inserted = poller.poll_once()

    assert [crime.uid for crime in inserted] == ["F2"]
    assert [crime.uid for crime in received] == ["F2"]


def test_dedupe_query_failure_is_logged_and_skipped(notifier, feed):
    broken_service = Mock()
    broken_service.exists_by_uid.side_effect = [OperationalError("SELECT", {}, Exception("gone")), False]
    broken_service.exists_by_description.return_value = False
    broken_service.add.side_effect = lambda crime: crime
    poller = ApiPollService(broken_service, notifier, api_url=FEED_URL, clock=lambda: NOW)
    feed.return_value = [item(uid="D1", melding="Inbraak"), item(uid="D2", melding="Overlast")]

    inserted = poller.poll_once()

    assert [crime.uid for crime in inserted] == ["D2"]


def test_notifier_failure_keeps_the_insert(crime_service, feed):
    notifier = Mock()
    notifier.publish.side_effect = RuntimeError("listener crashed")
    poller = ApiPollService(crime_service, notifier, api_url=FEED_URL, clock=lambda: NOW)
    feed.return_value = [item()]

    inserted = poller.poll_once()

    assert len(inserted) == 1
    assert crime_service.exists_by_uid("A1")


def test_overlapping_tick_is_skipped(crime_service, notifier, feed):
    """While one tick is running, the next trigger does nothing."""
    release = threading.Event()
    started = threading.Event()
    calls = []

    def slow_feed(url, timeout):
        calls.append(url)
        started.set()
        release.wait(5)
        return []

    feed.side_effect = slow_feed
    poller = ApiPollService(crime_service, notifier, api_url=FEED_URL, interval=60)

    assert poller.trigger() is True
    assert started.wait(5)
    assert poller.is_polling is True
    assert poller.trigger() is False
    assert poller.poll_now() is None

    release.set()
    for _ in range(100):
        if not poller.is_polling:
            break
        threading.Event().wait(0.05)

    assert poller.is_polling is False
    assert calls == [FEED_URL]
    assert poller.poll_now() == []


def test_tick_exception_releases_the_guard(crime_service, notifier, feed):
    feed.side_effect = RuntimeError("unexpected")
    poller = ApiPollService(crime_service, notifier, api_url=FEED_URL)

    with pytest.raises(RuntimeError):
        poller.poll_now()
    assert poller.is_polling is False


def test_start_ticks_immediately_and_stop(crime_service, notifier, feed):
    ticked = threading.Event()

    def record(url, timeout):
        ticked.set()
        return []

    feed.side_effect = record
    poller = ApiPollService(crime_service, notifier, api_url=FEED_URL, interval=60)

    poller.start()
    try:
        assert ticked.wait(5)
    finally:
        poller.stop()


def test_api_url_is_required(crime_service, notifier):
    with pytest.raises(ValueError):
        ApiPollService(crime_service, notifier, api_url=None)


def test_rejection_at_insert_time_is_skipped(crime_service, notifier, received, feed):
    """Another writer may store the same description between the check and the insert."""
    real_add = crime_service.add

    def racing_add(crime):
        if crime.uid == "R1":
            raise DuplicateCrimeError("already stored")
        return real_add(crime)

    crime_service.add = racing_add
    poller = ApiPollService(crime_service, notifier, api_url=FEED_URL, clock=lambda: NOW)
    feed.return_value = [item(uid="R1", melding="Inbraak"), item(uid="R2", melding="Overlast")]

    inserted = poller.poll_once()

    assert [crime.uid for crime in inserted] == ["R2"]
    assert [crime.uid for crime in received] == ["R2"]


@pytest.mark.parametrize("value, expected", [
    ("30", 30.0),
    ("2.5", 2.5),
    ("ten", 10.0),
    ("", 10.0),
    (None, 10.0),
])
def test_float_from_env(monkeypatch, value, expected):
    if value is None:
        monkeypatch.delenv("POLL_INTERVAL_SECONDS", raising=False)
    else:
        monkeypatch.setenv("POLL_INTERVAL_SECONDS", value)

    assert float_from_env("POLL_INTERVAL_SECONDS", 10.0) == expected
