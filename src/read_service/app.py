"""
app.py: Main Flask application for the CQRS Query Side (Read Service) of the WijkAgent Data API.

This microservice handles read-optimized operations:
- Listing and filtering crimes stored by the write service (feed poller + users).
- Dashboard statistics (totals, per type, per city, per time slot, per day).
- Social media posts related to a crime.
- Open API (Swagger) integration for documentation.

Run with: python -m src.read_service.app (starts on port 5001).
Integrates with write_service via shared PG (CQRS separation).
"""

import os
import logging
from flask import Flask, jsonify
from flask_swagger_ui import get_swaggerui_blueprint
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from flask_cors import CORS

from dotenv import load_dotenv

try:
    load_dotenv()
except ImportError:
    pass

from src.write_service.db.session import SessionLocal, engine, create_tables
from src.write_service.services.crime_service import CrimeService
from src.read_service.processors.social_media_processor import SocialMediaControlService
from src.read_service.api.crimes import create_crimes_blueprint
from src.read_service.api.stats import create_stats_blueprint

logging.basicConfig(level=logging.INFO)

# Initialize Flask app
app = Flask(__name__)

# Use Flask CORS to allow connections from other sites
CORS(app)

# Make sure INFO-level logs show up
app.logger.setLevel("INFO")

# Tables are normally created by the write service, but the read service
# should also start against an empty database
try:
    create_tables(engine)
except SQLAlchemyError as e:
    app.logger.warning(f"Failed creating tables: {e}")

# Shared services
crime_service = CrimeService(SessionLocal)
social_media_service = SocialMediaControlService()

app.register_blueprint(create_crimes_blueprint(crime_service, social_media_service))
app.register_blueprint(create_stats_blueprint(crime_service))

# Swagger UI configuration
SWAGGER_URL = '/swagger'  # URL for Swagger UI (e.g., http://localhost:5001/swagger)
API_URL = '/swagger.json'

# Swagger UI config (passed to blueprint)
SWAGGER_CONFIG = {
    'app_name': "WijkAgent Data API - Read Service",
    'deepLinking': True,
    'defaultModelsExpandDepth': -1,
    'showExtensions': True,
    'showCommonExtensions': True
}

# Create Swagger UI blueprint
swaggerui_blueprint = get_swaggerui_blueprint(
    SWAGGER_URL,
    API_URL,
    config=SWAGGER_CONFIG
)

# Register the blueprint
app.register_blueprint(swaggerui_blueprint)

# Example crime used in the Open API document
CRIME_EXAMPLE = {
    "id": 1,
    "uid": "A1",
    "type": "Diefstal",
    "description": "Diefstal fiets",
    "street": "Oudegracht",
    "house_number": "",
    "postcode": "3511AB",
    "city": "Utrecht",
    "province": "Utrecht",
    "lat": 52.1,
    "lng": 5.1,
    "incident_date_time": "2025-01-01T10:00:00",
    "created_at": "2025-01-01T10:00:12"
}

# Basic health check endpoint (Query side: Check PG connection)
@app.route('/health', methods=['GET'])
def health():
    """
    Health check for read_service: Verifies PG connection for queries.
    Returns: {"status": "ok", "postgres": true}
    """
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        postgres_status = True
    except OperationalError as e:
        app.logger.error(f"PG health check failed: {e}")
        postgres_status = False

    return jsonify({
        "status": "ok" if postgres_status else "error",
        "service": "read_service",
        "postgres": postgres_status
    })

@app.route('/swagger.json', methods=['GET'])
def swagger_spec():
    """
    Open API spec for read_service endpoints.
    """
    def ok(description, example):
        return {
            "200": {
                "description": description,
                "content": {"application/json": {"example": example}}
            }
        }

    def query_param(name, schema_type="string", fmt=None, required=False):
        schema = {"type": schema_type}
        if fmt:
            schema["format"] = fmt
        return {"name": name, "in": "query", "required": required, "schema": schema}

    crime_id_param = {"name": "crime_id", "in": "path", "required": True, "schema": {"type": "integer"}}

    return jsonify({
        "openapi": "3.0.0",
        "info": {"title": "WijkAgent Data API Read Service", "version": "1.0.0"},
        "paths": {
            "/health": {
                "get": {
                    "summary": "Health check",
                    "responses": {"200": {"description": "OK"}}
                }
            },
            "/api/crimes": {
                "get": {
                    "summary": "List crimes (newest first), optionally filtered",
                    "tags": ["Crimes"],
                    "description": "All filters are optional and combined. 'from' and 'to' are inclusive bounds on the incident time.",
                    "parameters": [
                        query_param("from", fmt="date-time"),
                        query_param("to", fmt="date-time"),
                        query_param("type"),
                        query_param("city"),
                    ],
                    "responses": ok("Matching crimes", {"total": 1, "crimes": [CRIME_EXAMPLE]})
                }
            },
            "/api/crimes/newest": {
                "get": {
                    "summary": "Most recently stored crime",
                    "tags": ["Crimes"],
                    "responses": ok("The newest crime", CRIME_EXAMPLE)
                }
            },
            "/api/crimes/{crime_id}": {
                "get": {
                    "summary": "One crime",
                    "tags": ["Crimes"],
                    "parameters": [crime_id_param],
                    "responses": ok("The crime", CRIME_EXAMPLE)
                }
            },
            "/api/crimes/{crime_id}/social": {
                "get": {
                    "summary": "Social media posts posted within 30 minutes of the crime that mention its type or city",
                    "tags": ["Crimes"],
                    "parameters": [crime_id_param],
                    "responses": ok("Related posts", {
                        "crime_id": 1,
                        "keywords": ["Diefstal", "Utrecht"],
                        "posts": [{
                            "id": "1", "platform": "X", "username": "utrecht_news",
                            "content": "Weer een diefstal bij het station in Utrecht",
                            "posted_at": "2025-01-01T10:12:00",
                            "post_url": "https://x.com/utrecht_news/1"
                        }]
                    })
                }
            },
            "/api/stats/total": {
                "get": {
                    "summary": "Total number of crimes",
                    "tags": ["Statistics"],
                    "responses": ok("Total", {"total": 42})
                }
            },
            "/api/stats/range": {
                "get": {
                    "summary": "Number of crimes between two moments (inclusive)",
                    "tags": ["Statistics"],
                    "parameters": [
                        query_param("from", fmt="date-time", required=True),
                        query_param("to", fmt="date-time", required=True),
                    ],
                    "responses": ok("Count", {"from": "2025-01-01T00:00:00", "to": "2025-01-31T23:59:59", "count": 12})
                }
            },
            "/api/stats/months": {
                "get": {
                    "summary": "Crimes this calendar month and the month before",
                    "tags": ["Statistics"],
                    "responses": ok("Counts", {"current_month": 8, "previous_month": 11})
                }
            },
            "/api/stats/types": {
                "get": {
                    "summary": "Most common crime types",
                    "tags": ["Statistics"],
                    "parameters": [query_param("top", "integer")],
                    "responses": ok("Counts per type", [{"type": "Diefstal", "count": 2}])
                }
            },
            "/api/stats/cities": {
                "get": {
                    "summary": "Cities with the most crimes",
                    "tags": ["Statistics"],
                    "parameters": [query_param("top", "integer")],
                    "responses": ok("Counts per city", [{"city": "Amsterdam", "count": 2}])
                }
            },
            "/api/stats/timeslots": {
                "get": {
                    "summary": "Crimes per 6-hour window of the day",
                    "tags": ["Statistics"],
                    "responses": ok("Counts per window", [{"label": "00:00-06:00", "count": 1}])
                }
            },
            "/api/stats/days": {
                "get": {
                    "summary": "Crimes per day for the last N days (oldest first)",
                    "tags": ["Statistics"],
                    "parameters": [query_param("days", "integer")],
                    "responses": ok("Counts per day", [{"date": "2025-01-01", "count": 3}])
                }
            }
        }
    })

# Error handler for 404
@app.errorhandler(404)
def not_found(error):
    return jsonify({"error": "Endpoint not found"}), 404

# Error handler for 500
@app.errorhandler(500)
def internal_error(error):
    return jsonify({"error": "Internal server error"}), 500

@app.errorhandler(SQLAlchemyError)
def database_error(error):
    app.logger.error(f"Database query failed: {error}")
    return jsonify({"error": "Internal server error"}), 500

if __name__ == '__main__':
    # Run the Flask app (debug mode = True for development only).
    debug_mode = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    app.run(host='0.0.0.0', port=5001, debug=debug_mode)
