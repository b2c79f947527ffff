"""Main Flask application"""
import logging
import os
import time

from dotenv import load_dotenv
from flask import Flask, jsonify, request, g
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from api.subscriptions import EXTRACTOR_EXTENSION, subscriptions_bp
from core.logging_config import configure_logging
from extraction.models import ExtractionConfig
from extraction.pipeline import SubscriptionExtractor

# Load environment variables
load_dotenv()

configure_logging()
logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"


def create_app(extractor=None):
    """Create and configure Flask application.

    ``extractor`` lets callers (and tests) inject a pre-built
    ``SubscriptionExtractor``; otherwise one is built from the environment.
    """
    logger.info("Initializing Flask application", extra={"operation": "app_init"})
    app = Flask(__name__)
    app.json.sort_keys = False

    origins = [origin.strip() for origin in os.environ.get("CORS_ORIGINS", DEFAULT_CORS_ORIGINS).split(",") if origin.strip()]
    CORS(app, resources={r"/api/*": {"origins": origins}}, supports_credentials=True)

    app.extensions[EXTRACTOR_EXTENSION] = extractor or SubscriptionExtractor(config=ExtractionConfig.from_env())

    # Request timing and tracing
    @app.before_request
    def _req_start():
        g._start = time.time()
        # Pull Cloud Run trace header for GCP log correlation
        trace_header = request.headers.get("X-Cloud-Trace-Context", "")
        g._trace = trace_header.split("/", 1)[0] if trace_header else None

        logging.getLogger("request").info(
            "request_start",
            extra={
                "operation": "request_start",
                "method": request.method,
                "path": request.path,
                "content_length": request.content_length or 0,
                "remote_addr": request.headers.get("X-Forwarded-For", request.remote_addr),
                "trace": g._trace,
            },
        )

    @app.after_request
    def _req_end(response):
        duration_ms = int((time.time() - getattr(g, "_start", time.time())) * 1000)
        logging.getLogger("request").info(
            "request_end",
            extra={
                "operation": "request_end",
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
                "trace": getattr(g, "_trace", None),
            },
        )
        return response

    @app.errorhandler(Exception)
    def _unhandled(error):
        status = 500
        if isinstance(error, HTTPException):
            status = error.code or 500
        if status >= 500:
            logging.getLogger("error").exception(
                "unhandled_exception",
                extra={
                    "operation": "unhandled_exception",
                    "method": request.method,
                    "path": request.path,
                    "status": status,
                    "trace": getattr(g, "_trace", None),
                },
            )
        if status == 404:
            return jsonify({'error': 'Endpoint not found'}), 404
        msg = "Internal server error" if status >= 500 else (getattr(error, "description", "Bad request"))
        return jsonify({"error": msg}), status

    app.register_blueprint(subscriptions_bp, url_prefix='/api')

    @app.route('/')
    def health_check():
        """Health check endpoint"""
        logger.debug("Health check requested", extra={"operation": "health_check"})
        return jsonify({
            'status': 'healthy',
            'service': 'subscription-extractor',
            'endpoints': [
                '/api/subscriptions/parse',
                '/api/subscriptions/capabilities',
            ]
        })

    return app


if __name__ == '__main__':
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    logger.info(
        "Starting Flask server",
        extra={
            "operation": "app_start",
            "host": "0.0.0.0",
            "port": port,
        },
    )
    app.run(debug=os.environ.get("FLASK_DEBUG") == "1", host='0.0.0.0', port=port)
