from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from functools import wraps
from typing import Any

from flask import current_app, g, jsonify
from sqlalchemy.orm import Session

from app.wellness_admin.models import Permission, Role, User, UserRole

logger = logging.getLogger(__name__)

RESOURCE_TYPES = (
    "users",
    "posts",
    "stories",
    "analytics",
    "generate",
    "explore",
    "upload",
    "admin",
    "providers",
    "finance",
    "fitness",
    "mindfulness",
    "mood",
    "nutrition",
    "water",
    "wellsphere",
    "fcm",
    "points",
    "onboarding",
    "security",
)

ACTIONS = ("read", "write", "delete", "manage")
MANAGE = "manage"

ROLES = ("superadmin", "admin", "moderator", "viewer", "editor")

# Resources a legacy role="admin" account may touch with any action.
LEGACY_ADMIN_RESOURCES = ("admin", "users", "posts", "stories", "analytics", "generate", "explore", "upload")
# Legacy admins additionally get providers:manage in their permission keys.
LEGACY_ADMIN_KEY_RESOURCES = ("admin", "providers") + LEGACY_ADMIN_RESOURCES[1:]

ROLE_DESCRIPTIONS = {
    "superadmin": "Full access to every resource",
    "admin": "Manage users, content, analytics and the admin area",
    "moderator": "Moderate users, posts and stories",
    "viewer": "Read-only access",
    "editor": "Create and edit content",
}

_ROLE_GRANTS: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    "admin": (LEGACY_ADMIN_RESOURCES, ("read", "write", "manage")),
    "moderator": (("users", "posts", "stories"), ("read", "write")),
    "editor": (("posts", "stories", "generate", "explore", "upload"), ("read", "write")),
    "viewer": (RESOURCE_TYPES, ("read",)),
}


def permission_id(resource: str, action: str) -> str:
    return f"perm_{resource}_{action}"


def role_id(name: str) -> str:
    return "role_" + name.strip().lower().replace(" ", "_")


def permission_key(resource: str, action: str) -> str:
    return f"{resource}:{action}"


def is_superadmin(user: User | None, now: datetime | None = None) -> bool:
    if not user or not user.is_active:
        return False
    if user.role == "superadmin":
        return True
    return any(r.name == "superadmin" for r in user.active_roles(now))


def user_has_permission(
    user: User | None,
    resource: str,
    action: str,
    resource_id: str | None = None,
) -> bool:
    if not user or not user.is_active:
        return False

    # Legacy single-role column.
    if user.role == "superadmin":
        return True
    if user.role == "admin" and resource in LEGACY_ADMIN_RESOURCES:
        return True

    roles = user.active_roles()
    if any(r.name == "superadmin" for r in roles):
        return True

    for role in roles:
        for perm in role.permissions:
            if perm.resource == resource and perm.action in (action, MANAGE):
                return True

    if resource_id is not None:
        for rp in user.resource_permissions:
            if rp.resource_type != resource:
                continue
            if rp.resource_id is not None and rp.resource_id != str(resource_id):
                continue
            granted = rp.permissions or []
            if action in granted or MANAGE in granted:
                return True
    return False


def user_permission_keys(user: User | None) -> set[str]:
    keys: set[str] = set()
    if not user or not user.is_active:
        return keys
    for role in user.active_roles():
        for perm in role.permissions:
            keys.add(perm.key)
    for rp in user.resource_permissions:
        for action in rp.permissions or []:
            keys.add(permission_key(rp.resource_type, action))

    if user.role == "superadmin":
        keys.update(permission_key(res, MANAGE) for res in RESOURCE_TYPES)
    elif user.role == "admin":
        keys.update(permission_key(res, MANAGE) for res in LEGACY_ADMIN_KEY_RESOURCES)
    return keys


def can_permission(keys: set[str] | list[str], resource: str, action: str) -> bool:
    return permission_key(resource, action) in keys or permission_key(resource, MANAGE) in keys


def _unauthorized():
    return jsonify({"error": "Unauthorized"}), 401


def _forbidden(missing: str):
    g.missing_permission = missing
    current_app.logger.warning(
        "Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None)
    )
    return jsonify({"error": f"Forbidden: missing permission {missing}"}), 403


def require_permission(
    resource: str,
    action: str,
    resource_id_arg: str | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Gate a route on resource:action. When `resource_id_arg` names a URL
    parameter, its value is used for resource-scoped grants.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return _unauthorized()
            rid = kwargs.get(resource_id_arg) if resource_id_arg else None
            if not user_has_permission(user, resource, action, None if rid is None else str(rid)):
                return _forbidden(permission_key(resource, action))
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_superadmin() -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return _unauthorized()
            if not is_superadmin(user):
                return _forbidden("superadmin")
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_login() -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return _unauthorized()
            return fn(*args, **kwargs)

        return wrapped

    return decorator


# ---------- Seeding ----------
def _ensure_permission(s: Session, resource: str, action: str, description: str | None = None) -> tuple[Permission, bool]:
    pid = permission_id(resource, action)
    p = s.get(Permission, pid)
    if p:
        return p, False
    p = Permission(id=pid, resource=resource, action=action, description=description or f"{action} {resource}")
    s.add(p)
    return p, True


def _grant(role: Role, perm: Permission) -> None:
    if perm not in role.permissions:
        role.permissions.append(perm)


def _migrate_legacy_roles(s: Session, assigned_by: str | None) -> int:
    migrated = 0
    legacy_map = {"superadmin": role_id("superadmin"), "admin": role_id("admin")}
    for user in s.query(User).all():
        rid = legacy_map.get(user.role)
        if not rid or s.get(Role, rid) is None:
            continue
        if any(ra.role_id == rid for ra in user.role_assignments):
            continue
        user.role_assignments.append(UserRole(user_id=user.id, role_id=rid, assigned_by=assigned_by))
        migrated += 1
    return migrated


def initialize_rbac(s: Session, *, assigned_by: str | None = None) -> dict[str, int]:
    """
    Create system roles/permissions (idempotent) and migrate legacy user.role
    values into role assignments. Caller commits.
    """
    existing_roles = s.query(Role).count()
    roles_created = 0
    perms_created = 0

    if existing_roles == 0:
        perms: dict[tuple[str, str], Permission] = {}
        for res in RESOURCE_TYPES:
            for act in ACTIONS:
                p, created = _ensure_permission(s, res, act)
                perms[(res, act)] = p
                perms_created += int(created)

        for name in ROLES:
            role = Role(id=role_id(name), name=name, description=ROLE_DESCRIPTIONS[name], is_system=True)
            s.add(role)
            roles_created += 1
            if name == "superadmin":
                for p in perms.values():
                    _grant(role, p)
                continue
            resources, actions = _ROLE_GRANTS[name]
            for res in resources:
                for act in actions:
                    _grant(role, perms[(res, act)])
        s.flush()

    migrated = _migrate_legacy_roles(s, assigned_by)
    s.flush()
    logger.info("RBAC initialized: roles_created=%s perms_created=%s migrated=%s", roles_created, perms_created, migrated)
    return {"rolesCreated": roles_created, "permissionsCreated": perms_created, "usersMigrated": migrated}


def ensure_security_permissions(s: Session) -> None:
    """Ensure security:read/manage exist and are granted to superadmin (both) and admin (read)."""
    p_read, _ = _ensure_permission(s, "security", "read", "View security settings and audit log")
    p_manage, _ = _ensure_permission(s, "security", "manage", "Manage security settings and sessions")
    superadmin = s.get(Role, role_id("superadmin"))
    if superadmin:
        _grant(superadmin, p_read)
        _grant(superadmin, p_manage)
    admin = s.get(Role, role_id("admin"))
    if admin:
        _grant(admin, p_read)
    s.flush()


def count_superadmins(s: Session, now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    rows = (
        s.query(UserRole)
        .join(User, User.id == UserRole.user_id)
        .filter(UserRole.role_id == role_id("superadmin"))
        .filter(User.is_active.is_(True))
        .all()
    )
    return sum(1 for ra in rows if ra.is_active(now))

