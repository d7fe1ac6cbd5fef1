import mimetypes

from flask import Blueprint, abort, current_app, jsonify, send_file

from app.wellness_admin.storage import LocalStorage, StorageError, storage_from_config

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return jsonify({"service": "wellness-admin", "ok": True})


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Liveness check for k8s/DO. No DB access, minimal overhead.
    """
    return "ok", 200


@bp.get("/storage/<path:key>")
def local_storage(key: str):
    # Firebase and S3 objects are served by their bucket; this only backs the local backend.
    storage = storage_from_config(current_app.config)
    if not isinstance(storage, LocalStorage):
        abort(404)
    try:
        if not storage.exists(key):
            abort(404)
        fh = storage.open(key)
    except StorageError:
        abort(404)
    return send_file(fh, mimetype=mimetypes.guess_type(key)[0] or "application/octet-stream")
