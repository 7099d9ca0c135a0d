import os
import logging
from collections import deque
from datetime import datetime

from flask import Flask, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from src.write_service.db.models import Crime
from src.write_service.db.session import SessionLocal, engine, create_tables
from src.write_service.ingestion.api_poller import ApiPollService, FEED_URL
from src.write_service.services.crime_notifier import CrimeNotifier
from src.write_service.services.crime_service import CrimeService, DuplicateCrimeError, InvalidCrimeError

logging.basicConfig(level=logging.INFO)

# This is the Python app for the WRITE service
app = Flask(__name__)

try:
    create_tables(engine)
except SQLAlchemyError as e:
    logging.warning(f"Failed creating tables: {e}")

crime_service = CrimeService(SessionLocal)
notifier = CrimeNotifier()

# Crimes delivered through the notifier since this process started
recent_crimes = deque(maxlen=50)
notifier.subscribe(recent_crimes.appendleft)

# The poller only exists when a feed is configured
poller = ApiPollService(crime_service, notifier) if FEED_URL else None

# Fields a client may send when creating or updating a crime
TEXT_FIELDS = ("type", "description", "street", "house_number", "postcode", "city", "province")


def crime_from_payload(payload, crime_id=None, require_incident_time=False):
    """
    Build a Crime from a JSON body. Raises ValueError when a field has the
    wrong format. A full update must say when the incident happened, a new
    incident defaults to now.
    """
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")

    values = {field: str(payload.get(field) or "") for field in TEXT_FIELDS}

    try:
        values["lat"] = float(payload.get("lat") or 0.0)
        values["lng"] = float(payload.get("lng") or 0.0)
    except (TypeError, ValueError):
        raise ValueError("'lat' and 'lng' must be numbers")

    incident = payload.get("incident_date_time")
    if incident:
        try:
            values["incident_date_time"] = datetime.fromisoformat(str(incident))
        except ValueError:
            raise ValueError("'incident_date_time' must be an ISO 8601 datetime")
    elif require_incident_time:
        raise ValueError("'incident_date_time' is required")
    else:
        values["incident_date_time"] = datetime.now()

    return Crime(id=crime_id, **values)


@app.route('/api/crimes', methods=['POST'], strict_slashes=False)
def create_crime():
    """Store a crime entered by a user."""
    try:
        crime = crime_from_payload(request.get_json(silent=True))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    try:
        saved = crime_service.add(crime)
    except DuplicateCrimeError as e:
        return jsonify({"error": str(e)}), 409
    except InvalidCrimeError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError as e:
        app.logger.error(f"Failed to store crime: {e}")
        return jsonify({"error": "Internal server error"}), 500

    notifier.publish(saved)
    return jsonify(saved.to_dict()), 201


@app.route('/api/crimes/<int:crime_id>', methods=['PUT'])
def update_crime(crime_id):
    """Overwrite all editable fields of an existing crime."""
    try:
        crime = crime_from_payload(request.get_json(silent=True), crime_id=crime_id, require_incident_time=True)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    try:
        updated = crime_service.update(crime)
    except DuplicateCrimeError as e:
        return jsonify({"error": str(e)}), 409
    except InvalidCrimeError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError as e:
        app.logger.error(f"Failed to update crime {crime_id}: {e}")
        return jsonify({"error": "Internal server error"}), 500

    if updated is None:
        return jsonify({"error": f"Crime {crime_id} not found"}), 404
    return jsonify(updated.to_dict()), 200


@app.route('/api/crimes/<int:crime_id>', methods=['DELETE'])
def delete_crime(crime_id):
    try:
        deleted = crime_service.delete(crime_id)
    except SQLAlchemyError as e:
        app.logger.error(f"Failed to delete crime {crime_id}: {e}")
        return jsonify({"error": "Internal server error"}), 500

    if not deleted:
        return jsonify({"error": f"Crime {crime_id} not found"}), 404
    return jsonify({"deleted": crime_id}), 200


@app.route('/api/crimes/recent', methods=['GET'])
def recent():
    """Crimes stored since the service started (feed and users), newest first."""
    return jsonify([crime.to_dict() for crime in list(recent_crimes)])


@app.route('/poll', methods=['POST'], strict_slashes=False)
def poll():
    """Run one feed poll right now and report what was inserted."""
    if poller is None:
        return jsonify({"error": "No feed configured, set FEED_URL"}), 503

    inserted = poller.poll_now()
    if inserted is None:
        return jsonify({"error": "A poll is already running"}), 409
    return jsonify({
        "inserted": len(inserted),
        "uids": [crime.uid for crime in inserted],
    })


@app.route('/health')
def health():
    """Endpoint for checking health of this app (if basic endpoint works or not)."""
    logging.info("Health is okay.")
    return {
        'status': 'ok',
        'poller': 'disabled' if poller is None else ('polling' if poller.is_polling else 'idle'),
    }


if __name__ == '__main__':
    """Called when this app is started."""
    logging.info("The write service Python app has started.")
    if poller is not None:
        poller.start()
    else:
        logging.warning("FEED_URL is not set, the feed poller is not started.")

    debug_mode = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    # The reloader would start a second poller
    app.run(host='0.0.0.0', port=5000, debug=debug_mode, use_reloader=False)
