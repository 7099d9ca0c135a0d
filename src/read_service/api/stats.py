# src/read_service/api/stats.py

from flask import Blueprint, request, jsonify

from .crimes import parse_datetime_arg


# Largest accepted "top" and "days" values
MAX_TOP = 100
MAX_DAYS = 366


def _int_arg(name, default, maximum):
    value = request.args.get(name)
    if value is None or value == "":
        return default
    number = int(value)
    if number > maximum:
        raise ValueError(f"'{name}' must be at most {maximum}, got {number}")
    return number


def create_stats_blueprint(crime_service):
    """
    Factory that creates the statistics blueprint (dashboard numbers).

    Every endpoint is read only and computed from the crimes table.
    """
    bp = Blueprint("stats", __name__, url_prefix="/api/stats")

    @bp.errorhandler(ValueError)
    def bad_parameter(error):
        return jsonify({"error": str(error)}), 400

    @bp.route("/total", methods=["GET"])
    def total():
        return jsonify({"total": crime_service.get_total_count()}), 200

    @bp.route("/range", methods=["GET"])
    def count_in_range():
        date_from = parse_datetime_arg("from")
        date_to = parse_datetime_arg("to")
        if date_from is None or date_to is None:
            return jsonify({"error": "Both 'from' and 'to' are required"}), 400
        return jsonify({
            "from": date_from.isoformat(),
            "to": date_to.isoformat(),
            "count": crime_service.get_count_in_range(date_from, date_to),
        }), 200

    @bp.route("/months", methods=["GET"])
    def this_and_previous_month():
        counts = crime_service.get_this_and_previous_month_counts()
        return jsonify({
            "current_month": counts.current_month,
            "previous_month": counts.previous_month,
        }), 200

    @bp.route("/types", methods=["GET"])
    def counts_by_type():
        top = _int_arg("top", 6, MAX_TOP)
        return jsonify([
            {"type": row.type, "count": row.count}
            for row in crime_service.get_counts_by_type(top)
        ]), 200

    @bp.route("/cities", methods=["GET"])
    def top_cities():
        top = _int_arg("top", 5, MAX_TOP)
        return jsonify([
            {"city": row.city, "count": row.count}
            for row in crime_service.get_top_cities(top)
        ]), 200

    @bp.route("/timeslots", methods=["GET"])
    def counts_by_time_slot():
        return jsonify([
            {"label": row.label, "count": row.count}
            for row in crime_service.get_counts_by_time_slot()
        ]), 200

    @bp.route("/days", methods=["GET"])
    def counts_per_day():
        days = _int_arg("days", 7, MAX_DAYS)
        return jsonify([
            {"date": row.date.isoformat(), "count": row.count}
            for row in crime_service.get_counts_per_day(days)
        ]), 200

    return bp
