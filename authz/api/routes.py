"""
Flask route handlers for the authorization REST API.
"""

import sys
import traceback

from flask import jsonify, request
from sqlalchemy import text as sa_text

from authz.assignment import assign_user_role
from authz.exceptions import (
    AuthorizationError,
    InvalidUserContext,
    NetworkError,
    NotFoundError,
)
from authz.models import ResourceContext

NOT_AUTHORIZED = {"allowed": False, "error": "not authorized"}


def register_routes(app, engine):
    """Register all API routes on the Flask *app*."""

    def _json_body():
        if not request.is_json:
            return None
        return request.get_json(silent=True) or {}

    def _unavailable(e):
        print(f"[ERROR] Upstream failure: {e}", file=sys.stderr)
        return jsonify({"error": "Service temporarily unavailable"}), 503

    def _user_or_none(user_id):
        try:
            return engine.role_manager.get_user_context(user_id)
        except (NotFoundError, InvalidUserContext):
            return None

    # ── Health / info ────────────────────────────────────────────────

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({
            "service": "Immunization Records Authorization API",
            "version": "1.0.0",
            "status": "running",
            "endpoints": {
                "assign_role": "/api/roles/assign",
                "check_permission": "/api/permissions/check",
                "validate_document_access": "/api/documents/validate-access",
                "role_info": "/api/users/<userId>/role-info",
                "collection_access": "/api/collections/<resource>/access",
                "documents": "/api/collections/<resource>/documents",
                "health": "/health",
            },
        })

    @app.route("/health", methods=["GET"])
    def health():
        checks = {"database": False, "configuration": False}
        try:
            with engine.storage.engine.connect() as conn:
                conn.execute(sa_text("SELECT 1"))
            checks["database"] = True
        except Exception as e:
            print(f"[WARN] Health check database failure: {e}", file=sys.stderr)

        checks["configuration"] = engine.config_store.version > 0
        all_healthy = all(checks.values())

        return jsonify({
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
            "configVersion": engine.config_store.version,
            "caches": [engine.role_manager.cache.stats(), engine.validator.cache_stats()],
        }), 200 if all_healthy else 503

    # ── Role assignment ──────────────────────────────────────────────

    @app.route("/api/roles/assign", methods=["POST"])
    def assign_role():
        data = _json_body()
        if data is None:
            return jsonify({"success": False, "error": "Content-Type must be application/json"}), 400
        body, status = assign_user_role(engine, data)
        return jsonify(body), status

    # ── Permission checks ────────────────────────────────────────────

    @app.route("/api/permissions/check", methods=["POST"])
    def check_permission():
        data = _json_body()
        if data is None:
            return jsonify({"error": "Content-Type must be application/json"}), 400
        user_id = data.get("userId")

        try:
            if isinstance(data.get("requests"), list):
                batch = engine.validator.validate_batch_permissions(user_id, data["requests"])
                results = [
                    {"resource": r["resource"], "operation": r["operation"], "allowed": r["allowed"]}
                    for r in batch["results"]
                ]
                return jsonify({"userId": user_id, "results": results, "summary": batch["summary"]}), 200

            context = None
            if data.get("facilityId") is not None:
                context = ResourceContext(facility_id=data.get("facilityId"))
            decision = engine.validator.check_permission(
                user_id, data.get("resource"), data.get("operation"), resource_context=context
            )
        except NetworkError as e:
            return _unavailable(e)

        return jsonify(decision.public_view()), 200 if decision.allowed else 403

    @app.route("/api/documents/validate-access", methods=["POST"])
    def validate_document_access():
        data = _json_body()
        if data is None:
            return jsonify({"error": "Content-Type must be application/json"}), 400

        collection = data.get("collection")
        document_id = data.get("documentId")
        if not data.get("userId") or not collection or not document_id or not data.get("operation"):
            return jsonify({"error": "userId, collection, documentId and operation are required"}), 400

        try:
            user = _user_or_none(data["userId"])
            if user is None or not engine.config_store.catalog.is_resource(collection):
                return jsonify(NOT_AUTHORIZED), 403
            document = engine.storage.get_document(engine.database, collection, document_id)
            decision = engine.documents.check_document_access(
                user, document, data["operation"], resource=collection
            )
            engine.documents.audit(user, collection, data["operation"], decision, document_id=document.id)
        except NotFoundError:
            return jsonify({"error": "Document not found"}), 404
        except NetworkError as e:
            return _unavailable(e)

        return jsonify(decision.public_view()), 200 if decision.allowed else 403

    # ── Users / collections ──────────────────────────────────────────

    @app.route("/api/users/<user_id>/role-info", methods=["GET"])
    def role_info(user_id):
        try:
            info = engine.role_manager.get_user_role_info(user_id)
        except NotFoundError:
            return jsonify({"error": "User not found"}), 404
        except NetworkError as e:
            return _unavailable(e)
        return jsonify({"success": True, **info.to_dict()}), 200

    @app.route("/api/collections/<resource>/access", methods=["GET"])
    def collection_access(resource):
        user_id = request.args.get("userId", "").strip()
        if not user_id:
            return jsonify({"error": "userId is required"}), 400
        try:
            user = _user_or_none(user_id)
        except NetworkError as e:
            return _unavailable(e)
        return jsonify(engine.validator.validate_collection_access(user, resource)), 200

    @app.route("/api/collections/<resource>/documents", methods=["GET"])
    def list_documents(resource):
        args = request.args.to_dict()
        user_id = args.pop("userId", "").strip()
        if not user_id:
            return jsonify({"error": "userId is required"}), 400
        limit = args.pop("limit", None)
        offset = args.pop("offset", 0)
        order_by = args.pop("orderBy", None)

        try:
            result = engine.queries.query_for_user(user_id, resource, args, limit, offset, order_by)
        except NotFoundError:
            return jsonify(NOT_AUTHORIZED), 403
        except NetworkError as e:
            return _unavailable(e)
        except AuthorizationError as e:
            print(f"[WARN] Query on {resource} refused for {user_id}: {e.reason}", file=sys.stderr)
            return jsonify(NOT_AUTHORIZED), 403
        except ValueError:
            return jsonify({"error": "limit and offset must be integers"}), 400

        return jsonify({"success": True, **result}), 200

    # ── Error handlers ───────────────────────────────────────────────

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Endpoint not found", "message": str(e)}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "message": str(e)}), 405

    @app.errorhandler(500)
    def internal_error(e):
        traceback.print_exc()
        return jsonify({"error": "Internal server error"}), 500
