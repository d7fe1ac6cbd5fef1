from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.wellness_admin.cache import cache, create_cache_key
from app.wellness_admin.docstore import get_docstore
from app.wellness_admin.modules.analytics.posthog_client import posthog_client_from_config
from app.wellness_admin.modules.analytics.service import (
    ANALYTICS_CACHE_TTL,
    clamp_days,
    dashboard,
    finance_funnel,
    product_insights,
)
from app.wellness_admin.rate_limit import analytics_limiter, rate_limited
from app.wellness_admin.rbac import require_permission

bp = Blueprint("analytics", __name__)


def _cached_json(key: str, build):
    cached = cache.get(key)
    if cached is not None:
        body, state = cached, "HIT"
    else:
        body, state = build(), "MISS"
        cache.set(key, body, ANALYTICS_CACHE_TTL)
    resp = jsonify(body)
    resp.headers["X-Cache"] = state
    resp.headers["X-RateLimit-Remaining"] = str(getattr(g, "rate_limit_remaining", ""))
    resp.headers["Cache-Control"] = "private, max-age=300"
    return resp


@bp.get("")
@require_permission("analytics", "read")
@rate_limited(analytics_limiter)
def analytics_dashboard():
    return _cached_json(create_cache_key("analytics"), lambda: dashboard(get_docstore()))


@bp.get("/product")
@require_permission("analytics", "read")
@rate_limited(analytics_limiter)
def analytics_product():
    days = clamp_days(request.args.get("days"))
    return _cached_json(
        create_cache_key("product-analytics", {"days": days}),
        lambda: product_insights(posthog_client_from_config(), days),
    )


@bp.get("/product/finance")
@require_permission("analytics", "read")
@rate_limited(analytics_limiter)
def analytics_finance_funnel():
    days = clamp_days(request.args.get("days"))
    return _cached_json(
        create_cache_key("product-finance-funnel", {"days": days}),
        lambda: finance_funnel(posthog_client_from_config(), days),
    )
