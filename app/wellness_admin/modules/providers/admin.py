from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.wellness_admin.cache import cache, create_cache_key
from app.wellness_admin.db import db_session, providers_session
from app.wellness_admin.docstore import get_docstore
from app.wellness_admin.models import User
from app.wellness_admin.modules.providers.models import Provider
from app.wellness_admin.modules.providers.service import (
    PROVIDERS_CACHE_TTL,
    create_provider,
    delete_provider,
    list_reviews,
    parse_provider_id,
    provider_dict,
    search_providers,
    update_provider,
    validate_provider_payload,
)
from app.wellness_admin.modules.security_admin.service import clamp_limit
from app.wellness_admin.rbac import require_permission

bp = Blueprint("providers", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _invalidate() -> None:
    cache.delete_by_prefix("provider")


@bp.get("")
@require_permission("providers", "read")
def providers_list():
    q = (request.args.get("q") or "").strip()
    category = (request.args.get("category") or "").strip()
    limit = clamp_limit(request.args.get("limit"), 50, 1, 200)
    offset = max(request.args.get("offset", 0, type=int) or 0, 0)

    key = create_cache_key("providers", {"q": q.lower(), "category": category.lower(), "limit": limit, "offset": offset})
    cached = cache.get(key)
    if cached is not None:
        return jsonify(cached)

    rows = search_providers(providers_session(), q=q, category=category, limit=limit, offset=offset)
    body = {"providers": [provider_dict(p) for p in rows], "limit": limit, "offset": offset}
    cache.set(key, body, PROVIDERS_CACHE_TTL)
    return jsonify(body)


@bp.post("")
@require_permission("providers", "write")
def providers_create():
    payload = request.get_json(silent=True) or {}
    errors = validate_provider_payload(payload)
    if errors:
        return jsonify({"error": errors[0], "errors": errors}), 400
    ps = providers_session()
    s = db_session()
    provider = create_provider(ps, payload, _current_user(), s)
    ps.commit()
    s.commit()
    _invalidate()
    return jsonify({"provider": provider_dict(provider)}), 201


@bp.get("/<provider_id>")
@require_permission("providers", "read")
def providers_get(provider_id: str):
    pid = parse_provider_id(provider_id)
    if not pid:
        return jsonify({"error": "Invalid provider id"}), 400
    key = create_cache_key("provider", {"id": pid})
    cached = cache.get(key)
    if cached is not None:
        return jsonify(cached)
    provider = providers_session().get(Provider, pid)
    if not provider:
        return jsonify({"error": "Provider not found"}), 404
    body = {"provider": provider_dict(provider)}
    cache.set(key, body, PROVIDERS_CACHE_TTL)
    return jsonify(body)


@bp.patch("/<provider_id>")
@require_permission("providers", "write")
def providers_patch(provider_id: str):
    pid = parse_provider_id(provider_id)
    if not pid:
        return jsonify({"error": "Invalid provider id"}), 400
    payload = request.get_json(silent=True) or {}
    ps = providers_session()
    provider = ps.get(Provider, pid)
    if not provider:
        return jsonify({"error": "Provider not found"}), 404
    errors = validate_provider_payload(payload, partial=True)
    if errors:
        return jsonify({"error": errors[0], "errors": errors}), 400
    s = db_session()
    touched = update_provider(ps, provider, payload, _current_user(), s)
    if not touched:
        return jsonify({"error": "No fields to update"}), 400
    ps.commit()
    s.commit()
    _invalidate()
    return jsonify({"provider": provider_dict(provider)})


@bp.delete("/<provider_id>")
@require_permission("providers", "delete")
def providers_delete(provider_id: str):
    pid = parse_provider_id(provider_id)
    if not pid:
        return jsonify({"error": "Invalid provider id"}), 400
    ps = providers_session()
    provider = ps.get(Provider, pid)
    if not provider:
        return jsonify({"error": "Provider not found"}), 404
    s = db_session()
    delete_provider(ps, provider, _current_user(), s)
    ps.commit()
    s.commit()
    _invalidate()
    return jsonify({"ok": True})


@bp.get("/<provider_id>/reviews")
@require_permission("providers", "read")
def providers_reviews(provider_id: str):
    pid = parse_provider_id(provider_id)
    if not pid:
        return jsonify({"error": "Invalid provider id"}), 400
    limit = clamp_limit(request.args.get("limit"), 50, 1, 200)
    return jsonify(list_reviews(get_docstore(), pid, limit))
