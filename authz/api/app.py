"""
Flask application factory and server entry-point.
"""

import os
import sys
import traceback

from flask import Flask
from flask_cors import CORS

from authz.api.routes import register_routes
from authz.config import CACHE_SWEEP_INTERVAL_SECONDS
from authz.database import missing_tables
from authz.engine import build_engine
from authz.exceptions import ConfigurationError


def create_app(engine=None):
    """Build and return a fully configured Flask application."""
    app = Flask(__name__)
    CORS(app)

    # ── Initialise shared resources ──────────────────────────────────
    if engine is None:
        try:
            print("[init] Initializing authorization engine...")
            engine = build_engine()

            missing = missing_tables(engine.storage.engine)
            if missing:
                raise ConfigurationError(f"Missing tables: {', '.join(missing)}")

            print(f"[init] Role catalog version {engine.config_store.version} loaded")
            engine.start_sweepers(CACHE_SWEEP_INTERVAL_SECONDS)
            print("[init] ✓ API server ready")
        except ConfigurationError as e:
            print(f"[FATAL] Failed to initialize: {e}", file=sys.stderr)
            traceback.print_exc()
            sys.exit(1)

    app.config["AUTHZ_ENGINE"] = engine

    # ── Register routes ──────────────────────────────────────────────
    register_routes(app, engine)

    return app


def main():
    """Run the development server."""
    print("=" * 60)
    print("Immunization Records – Authorization API Server")
    print("=" * 60)

    app = create_app()

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    debug = os.getenv("FLASK_ENV") == "development"

    print(f"\n[server] Starting Flask API on {host}:{port}")
    print(f"[server] Debug mode: {debug}")
    print("[server] CORS enabled: True")
    print("\nAPI Endpoints:")
    print(f"  - POST http://{host}:{port}/api/roles/assign")
    print(f"  - POST http://{host}:{port}/api/permissions/check")
    print(f"  - POST http://{host}:{port}/api/documents/validate-access")
    print(f"  - GET  http://{host}:{port}/api/users/<userId>/role-info")
    print(f"  - GET  http://{host}:{port}/api/collections/<resource>/access")
    print(f"  - GET  http://{host}:{port}/api/collections/<resource>/documents")
    print(f"  - GET  http://{host}:{port}/health")
    print("\n" + "=" * 60)

    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    main()
