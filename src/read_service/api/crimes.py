# src/read_service/api/crimes.py

from datetime import datetime

from flask import Blueprint, request, jsonify, current_app


def parse_datetime_arg(name):
    """
    Read an optional ISO 8601 query parameter as naive local time (the way
    incident times are stored). A value with a UTC offset is converted first.
    Raises ValueError with a readable message when it is not a valid date.
    """
    value = request.args.get(name)
    if value is None or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        raise ValueError(f"'{name}' must be an ISO 8601 date or datetime, got '{value}'")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def create_crimes_blueprint(crime_service, social_media_service):
    """
    Factory that creates the crimes blueprint with access to the
    CrimeService and the social media lookup.

    Endpoints:
        GET /api/crimes                 list, optionally filtered
        GET /api/crimes/newest          most recently stored crime
        GET /api/crimes/<id>            one crime
        GET /api/crimes/<id>/social     related social media posts
    """
    bp = Blueprint("crimes", __name__, url_prefix="/api")

    @bp.route("/crimes", methods=["GET"], strict_slashes=False)
    def get_crimes():
        """
        List crimes, newest first.

        Query Parameters:
            from (ISO datetime, optional): incident time on or after
            to (ISO datetime, optional): incident time on or before
            type (str, optional): exact crime type
            city (str, optional): exact city
        """
        try:
            date_from = parse_datetime_arg("from")
            date_to = parse_datetime_arg("to")
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        crimes = crime_service.get_filtered(
            date_from=date_from,
            date_to=date_to,
            crime_type=request.args.get("type"),
            city=request.args.get("city"),
        )
        return jsonify({
            "total": len(crimes),
            "crimes": [crime.to_dict() for crime in crimes],
        }), 200

    @bp.route("/crimes/newest", methods=["GET"])
    def get_newest_crime():
        crime = crime_service.get_newest()
        if crime is None:
            return jsonify({"error": "No crimes stored yet"}), 404
        return jsonify(crime.to_dict()), 200

    @bp.route("/crimes/<int:crime_id>", methods=["GET"])
    def get_crime(crime_id):
        crime = crime_service.get_by_id(crime_id)
        if crime is None:
            return jsonify({"error": f"Crime {crime_id} not found"}), 404
        return jsonify(crime.to_dict()), 200

    @bp.route("/crimes/<int:crime_id>/social", methods=["GET"])
    def get_crime_social_posts(crime_id):
        """Posts from around the time of the crime that mention its type or city."""
        crime = crime_service.get_by_id(crime_id)
        if crime is None:
            return jsonify({"error": f"Crime {crime_id} not found"}), 404

        keywords = [word for word in (crime.type, crime.city) if word and word.strip()]
        try:
            posts = social_media_service.get_posts_for_incident(crime.incident_date_time, keywords)
        except Exception as e:
            current_app.logger.error(f"Social media lookup failed for crime {crime_id}: {e}")
            return jsonify({"error": "Social media lookup failed"}), 502

        return jsonify({
            "crime_id": crime_id,
            "keywords": keywords,
            "posts": [post.to_dict() for post in posts],
        }), 200

    return bp
