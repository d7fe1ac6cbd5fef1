from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.wellness_admin.audit import record_event
from app.wellness_admin.docstore import DocumentStore, iso
from app.wellness_admin.modules.providers.models import Provider

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.wellness_admin.models import User


PROVIDERS_CACHE_TTL = 30 * 60  # seconds; invalidated on writes

# DTO field -> (column, kind)
_PATCHABLE: dict[str, tuple[str, str]] = {
    "providerName": ("provider_name", "name"),
    "location": ("location", "text"),
    "physicalAddress": ("physical_address", "text"),
    "speciality": ("speciality", "text"),
    "formattedAddress": ("formatted_address", "text"),
    "country": ("country", "text"),
    "telephone": ("telephone", "list"),
    "services": ("services", "list"),
    "emails": ("email", "list"),
    "inferredCategories": ("inferred_categories", "list"),
    "coordinates": ("coordinates", "coords"),
}


def parse_provider_id(raw: str) -> int | None:
    try:
        n = float(raw)
    except (TypeError, ValueError):
        return None
    if n != n or n <= 0 or not n.is_integer():
        return None
    return int(n)


def parse_json_string_array(raw: Any) -> list[str]:
    """JSON array text -> list of strings. Non-JSON text comes back as a single item."""
    if raw is None:
        return []
    s = str(raw).strip()
    if not s or s == "[]" or s.lower() == "null":
        return []
    try:
        value = json.loads(s)
    except ValueError:
        return [s]
    if isinstance(value, list):
        return [str(x) for x in value if x not in (None, "")]
    return []


def parse_coordinates(raw: Any) -> dict[str, float] | None:
    if raw is None:
        return None
    s = str(raw).strip()
    if not s or s.lower() == "null":
        return None
    try:
        value = json.loads(s)
    except ValueError:
        return None
    if not isinstance(value, dict):
        return None
    lat, lng = value.get("lat"), value.get("lng")
    if isinstance(lat, (int, float)) and isinstance(lng, (int, float)) and not isinstance(lat, bool):
        return {"lat": lat, "lng": lng}
    return None


def provider_dict(p: Provider) -> dict[str, Any]:
    return {
        "id": int(p.id),
        "providerName": p.provider_name or "",
        "location": p.location,
        "physicalAddress": p.physical_address,
        "telephone": parse_json_string_array(p.telephone),
        "services": parse_json_string_array(p.services),
        "emails": parse_json_string_array(p.email),
        "speciality": p.speciality,
        "inferredCategories": parse_json_string_array(p.inferred_categories),
        "coordinates": parse_coordinates(p.coordinates),
        "formattedAddress": p.formatted_address,
        "country": p.country,
        "createdAt": p.created_at.isoformat() if p.created_at else None,
        "updatedAt": p.updated_at.isoformat() if p.updated_at else None,
    }


def category_search_term(category: str) -> str:
    # "specialists" matches both Specialist and Specialists.
    if category.lower() == "specialists":
        return "%Specialist%"
    return f"%{category}%"


def search_providers(s: "Session", *, q: str, category: str, limit: int, offset: int) -> list[Provider]:
    query = s.query(Provider)
    if category:
        query = query.filter(Provider.inferred_categories.ilike(category_search_term(category)))
    if q:
        term = f"%{q}%"
        query = query.filter(
            or_(
                Provider.provider_name.ilike(term),
                Provider.speciality.ilike(term),
                Provider.services.ilike(term),
                Provider.inferred_categories.ilike(term),
                Provider.location.ilike(term),
                Provider.country.ilike(term),
            )
        )
    return query.order_by(Provider.provider_name.asc(), Provider.id.asc()).offset(offset).limit(limit).all()


def _list_json(value: Any) -> str:
    if value is None:
        return "[]"
    if isinstance(value, str):
        value = [value]
    return json.dumps([str(v) for v in value])


def _coords_json(value: Any) -> str | None:
    if not value:
        return None
    return json.dumps({"lat": value["lat"], "lng": value["lng"]})


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def validate_provider_payload(payload: dict[str, Any], *, partial: bool = False) -> list[str]:
    """Field errors for a create body, or for a PATCH body when `partial`."""
    errors = []
    if not partial or "providerName" in payload:
        if not str(payload.get("providerName") or "").strip():
            errors.append("providerName is required")
    for api_name, (_column, kind) in _PATCHABLE.items():
        value = payload.get(api_name)
        if value is None:
            continue
        if kind == "text" and not isinstance(value, str):
            errors.append(f"{api_name} must be a string")
        elif kind == "list" and not (
            isinstance(value, str) or (isinstance(value, list) and all(isinstance(v, str) for v in value))
        ):
            errors.append(f"{api_name} must be a list of strings")
        elif kind == "coords" and not (
            isinstance(value, dict) and _is_number(value.get("lat")) and _is_number(value.get("lng"))
        ):
            errors.append("coordinates must be an object with numeric lat and lng")
    return errors


def create_provider(s: "Session", payload: dict[str, Any], user: "User", audit_s: "Session") -> Provider:
    pid = payload.get("id")
    if not isinstance(pid, int) or isinstance(pid, bool):
        pid = int(s.query(func.coalesce(func.max(Provider.id), 0)).scalar() or 0) + 1
    now = datetime.utcnow()
    provider = Provider(
        id=pid,
        provider_name=str(payload.get("providerName")).strip(),
        location=payload.get("location"),
        physical_address=payload.get("physicalAddress"),
        telephone=_list_json(payload.get("telephone")),
        services=_list_json(payload.get("services")),
        email=_list_json(payload.get("emails")),
        speciality=payload.get("speciality"),
        inferred_categories=_list_json(payload.get("inferredCategories")),
        coordinates=_coords_json(payload.get("coordinates")),
        formatted_address=payload.get("formattedAddress"),
        country=payload.get("country"),
        created_at=now,
        updated_at=now,
    )
    s.add(provider)
    s.flush()
    record_event(
        audit_s,
        actor=user,
        action="PROVIDER_CREATED",
        severity="low",
        message=f"Provider {provider.provider_name} created",
        entity_type="provider",
        entity_id=str(provider.id),
    )
    return provider


def update_provider(s: "Session", provider: Provider, payload: dict[str, Any], user: "User", audit_s: "Session") -> list[str]:
    """Apply patchable fields; returns the DTO names that were present."""
    touched: list[str] = []
    for api_name, (column, kind) in _PATCHABLE.items():
        if api_name not in payload:
            continue
        value = payload[api_name]
        if kind == "name":
            value = str(value or "").strip()
        elif kind == "list":
            value = _list_json(value)
        elif kind == "coords":
            value = _coords_json(value)
        setattr(provider, column, value)
        touched.append(api_name)
    if touched:
        provider.updated_at = datetime.utcnow()
        record_event(
            audit_s,
            actor=user,
            action="PROVIDER_UPDATED",
            severity="low",
            entity_type="provider",
            entity_id=str(provider.id),
            metadata={"fields": touched},
        )
    return touched


def delete_provider(s: "Session", provider: Provider, user: "User", audit_s: "Session") -> None:
    record_event(
        audit_s,
        actor=user,
        action="PROVIDER_DELETED",
        severity="medium",
        message=f"Provider {provider.provider_name} deleted",
        entity_type="provider",
        entity_id=str(provider.id),
    )
    s.delete(provider)


def list_reviews(store: DocumentStore, provider_id: int, limit: int) -> dict[str, Any]:
    docs = store.query(f"providers/{provider_id}/reviews", order_by="created_at", descending=True, limit=limit)
    reviews = []
    for d in docs:
        data = d.data
        reviews.append(
            {
                "id": d.id,
                "userId": data.get("user_id"),
                "userName": data.get("user_name") or "Anonymous",
                "providerId": data.get("provider_id") or provider_id,
                "providerName": data.get("provider_name"),
                "rating": data.get("rating"),
                "comment": data.get("comment") or "",
                "appointmentId": data.get("appointment_id"),
                "createdAt": iso(data.get("created_at")),
                "updatedAt": iso(data.get("updated_at")),
            }
        )
    total = len(reviews)
    ratings = []
    for r in reviews:
        try:
            ratings.append(float(r["rating"] or 0))
        except (TypeError, ValueError):
            ratings.append(0.0)
    average = sum(ratings) / total if total else 0
    return {"reviews": reviews, "stats": {"totalReviews": total, "averageRating": average}}
