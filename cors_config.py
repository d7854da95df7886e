# CORS configuration
import logging
import os

from flask import request
from flask_cors import CORS

logger = logging.getLogger(__name__)

DEFAULT_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "https://fantasyreport.app",
    "https://www.fantasyreport.app",
]


def allowed_origins():
    raw = os.environ.get("CORS_ORIGINS", "")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or DEFAULT_ORIGINS


def configure_cors(app, origins=None):
    # Admin endpoints take a bearer token, so credentials are not needed.
    CORS(app, resources={
        r"/api/*": {
            "origins": origins or allowed_origins(),
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization", "X-Admin-Token"],
        }
    })

    @app.after_request
    def log_cors(response):
        origin = request.headers.get("Origin")
        if origin:
            logger.debug(f"CORS - Origin: {origin} Method: {request.method} Status: {response.status_code}")
        return response

    return app
