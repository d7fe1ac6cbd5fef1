from __future__ import annotations

import secrets
from datetime import datetime
from typing import TYPE_CHECKING, Any

from werkzeug.security import generate_password_hash

from app.wellness_admin.audit import record_event
from app.wellness_admin.docstore import to_datetime
from app.wellness_admin.models import AuthSession, Permission, ResourcePermission, Role, User, UserRole, new_id
from app.wellness_admin.rbac import ACTIONS, RESOURCE_TYPES, count_superadmins, role_id, user_permission_keys
from app.wellness_admin.security import get_security_settings

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

_PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789"
_PASSWORD_SYMBOLS = "!@#$%*-_?"


class RbacAdminError(ValueError):
    """Validation failure surfaced to the client as a 400."""


def generate_temporary_password(length: int = 14) -> str:
    chars = _PASSWORD_ALPHABET + _PASSWORD_SYMBOLS
    out = [secrets.choice(chars) for _ in range(length)]
    out[0] = secrets.choice(_PASSWORD_SYMBOLS)
    return "".join(out)


def permission_dict(p: Permission) -> dict[str, Any]:
    return {
        "id": p.id,
        "resource": p.resource,
        "action": p.action,
        "description": p.description,
        "createdAt": p.created_at.isoformat() if p.created_at else None,
    }


def role_dict(r: Role, *, with_permissions: bool = True) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": r.id,
        "name": r.name,
        "description": r.description,
        "isSystem": bool(r.is_system),
        "createdAt": r.created_at.isoformat() if r.created_at else None,
        "updatedAt": r.updated_at.isoformat() if r.updated_at else None,
    }
    if with_permissions:
        out["permissions"] = [permission_dict(p) for p in sorted(r.permissions, key=lambda p: p.id)]
    return out


def resource_permission_dict(rp: ResourcePermission) -> dict[str, Any]:
    return {
        "id": rp.id,
        "userId": rp.user_id,
        "resourceType": rp.resource_type,
        "resourceId": rp.resource_id,
        "permissions": list(rp.permissions or []),
        "conditions": rp.conditions,
        "createdAt": rp.created_at.isoformat() if rp.created_at else None,
        "updatedAt": rp.updated_at.isoformat() if rp.updated_at else None,
    }


def assignment_dict(ra: UserRole) -> dict[str, Any]:
    return {
        "role": role_dict(ra.role, with_permissions=False),
        "assignedBy": ra.assigned_by,
        "assignedAt": ra.assigned_at.isoformat() if ra.assigned_at else None,
        "expiresAt": ra.expires_at.isoformat() if ra.expires_at else None,
    }


def admin_user_dict(u: User) -> dict[str, Any]:
    role_perms: dict[str, Permission] = {}
    for r in u.active_roles():
        for p in r.permissions:
            role_perms[p.id] = p
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "role": u.role,
        "isActive": bool(u.is_active),
        "twoFactorEnabled": bool(u.two_factor_enabled),
        "mustChangePassword": bool(u.must_change_password),
        "createdAt": u.created_at.isoformat() if u.created_at else None,
        "roles": [role_dict(r, with_permissions=False) for r in u.active_roles()],
        "permissions": {
            "keys": sorted(user_permission_keys(u)),
            "roleBased": [permission_dict(p) for p in role_perms.values()],
            "resourceBased": [resource_permission_dict(rp) for rp in u.resource_permissions],
        },
    }


def grouped_permissions(perms: list[Permission]) -> dict[str, list[dict[str, Any]]]:
    grouped: dict[str, list[dict[str, Any]]] = {}
    for p in perms:
        grouped.setdefault(p.resource, []).append(permission_dict(p))
    return grouped


def create_role(s: "Session", payload: dict[str, Any], actor: User) -> Role:
    name = (payload.get("name") or "").strip()
    if not name:
        raise RbacAdminError("Role name is required")
    rid = role_id(name)
    if s.get(Role, rid) is not None or s.query(Role).filter(Role.name == name).one_or_none():
        raise RbacAdminError("Role already exists")
    role = Role(id=rid, name=name, description=(payload.get("description") or "").strip() or None, is_system=False)
    perm_ids = [str(p) for p in (payload.get("permissionIds") or [])]
    if perm_ids:
        perms = s.query(Permission).filter(Permission.id.in_(perm_ids)).all()
        missing = sorted(set(perm_ids) - {p.id for p in perms})
        if missing:
            raise RbacAdminError(f"Unknown permission(s): {', '.join(missing)}")
        role.permissions = perms
    s.add(role)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="ROLE_CREATED",
        severity="high",
        message=f"Role {name} created",
        entity_type="role",
        entity_id=rid,
        metadata={"permissionIds": perm_ids},
    )
    return role


def create_admin_user(s: "Session", payload: dict[str, Any], actor: User) -> tuple[User, list[Role], str]:
    email = (payload.get("email") or "").strip().lower()
    name = (payload.get("name") or "").strip()
    if not email or not name:
        raise RbacAdminError("Name and email are required")

    wanted = payload.get("roleIds")
    role_ids = [str(r) for r in wanted] if isinstance(wanted, list) and wanted else [role_id("admin")]
    roles = s.query(Role).filter(Role.id.in_(role_ids)).all()
    missing = [rid for rid in role_ids if rid not in {r.id for r in roles}]
    if missing:
        raise RbacAdminError(f"Unknown role(s): {', '.join(missing)}")

    if s.query(User).filter(User.email == email).one_or_none():
        raise RbacAdminError("User with this email already exists")

    password = (payload.get("password") or "").strip() or generate_temporary_password()
    if len(password) < 8:
        raise RbacAdminError("Password must be at least 8 characters")

    settings = get_security_settings(s)
    now = datetime.utcnow()
    user = User(
        id=new_id(),
        email=email,
        name=name,
        password_hash=generate_password_hash(password),
        role="superadmin" if any(r.name == "superadmin" for r in roles) else "admin",
        email_verified=True,
        must_change_password=bool(settings.force_password_change_on_first_login),
        password_changed_at=now,
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()
    for r in roles:
        user.role_assignments.append(UserRole(user_id=user.id, role_id=r.id, assigned_by=actor.id, assigned_at=now))
    s.flush()
    record_event(
        s,
        actor=actor,
        action="ADMIN_USER_CREATED",
        severity="high",
        message=f"Admin user {email} created",
        entity_type="user",
        entity_id=user.id,
        metadata={"email": email, "roleIds": role_ids},
    )
    return user, roles, password


def assign_role(s: "Session", user: User, payload: dict[str, Any], actor: User) -> UserRole:
    rid = (payload.get("roleId") or "").strip()
    if not rid:
        raise RbacAdminError("Role ID is required")
    if s.get(Role, rid) is None:
        raise RbacAdminError(f"Unknown role: {rid}")
    if any(ra.role_id == rid for ra in user.role_assignments):
        raise RbacAdminError("Role already assigned")
    expires_raw = payload.get("expiresAt")
    expires_at = to_datetime(expires_raw) if expires_raw else None
    if expires_raw and expires_at is None:
        raise RbacAdminError("expiresAt must be an ISO date-time")
    ra = UserRole(
        user_id=user.id,
        role_id=rid,
        assigned_by=actor.id,
        assigned_at=datetime.utcnow(),
        expires_at=expires_at.replace(tzinfo=None) if expires_at else None,
    )
    user.role_assignments.append(ra)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="ROLE_ASSIGNED",
        severity="high",
        message=f"Role {rid} assigned to {user.email}",
        entity_type="user",
        entity_id=user.id,
        metadata={"roleId": rid, "expiresAt": expires_raw},
    )
    return ra


def remove_role(s: "Session", user: User, rid: str, actor: User) -> None:
    if not rid:
        raise RbacAdminError("Role ID is required")
    ra = next((a for a in user.role_assignments if a.role_id == rid), None)
    if ra is None:
        raise RbacAdminError("Role is not assigned to this user")
    if rid == role_id("superadmin") and ra.is_active() and count_superadmins(s) <= 1:
        raise RbacAdminError("Cannot remove the last superadmin")
    user.role_assignments.remove(ra)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="ROLE_REMOVED",
        severity="high",
        message=f"Role {rid} removed from {user.email}",
        entity_type="user",
        entity_id=user.id,
        metadata={"roleId": rid},
    )


def _validate_actions(perms: Any) -> list[str]:
    if not isinstance(perms, list) or not perms:
        raise RbacAdminError("resourceType and permissions array are required")
    bad = [p for p in perms if p not in ACTIONS]
    if bad:
        raise RbacAdminError(f"Invalid action(s): {', '.join(map(str, bad))}")
    return [str(p) for p in perms]


def create_resource_permission(s: "Session", user: User, payload: dict[str, Any], actor: User) -> ResourcePermission:
    resource_type = (payload.get("resourceType") or "").strip()
    if not resource_type:
        raise RbacAdminError("resourceType and permissions array are required")
    if resource_type not in RESOURCE_TYPES:
        raise RbacAdminError(f"Invalid resourceType: {resource_type}")
    actions = _validate_actions(payload.get("permissions"))
    now = datetime.utcnow()
    rp = ResourcePermission(
        id=f"rperm_{new_id()}",
        user_id=user.id,
        resource_type=resource_type,
        resource_id=(str(payload["resourceId"]) if payload.get("resourceId") else None),
        permissions=actions,
        conditions=payload.get("conditions") or None,
        created_at=now,
        updated_at=now,
    )
    user.resource_permissions.append(rp)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="RESOURCE_PERMISSION_GRANTED",
        severity="high",
        message=f"{resource_type}:{','.join(actions)} granted to {user.email}",
        entity_type="user",
        entity_id=user.id,
        metadata={"permissionId": rp.id, "resourceId": rp.resource_id},
    )
    return rp


def update_resource_permission(s: "Session", user: User, payload: dict[str, Any], actor: User) -> ResourcePermission:
    pid = (payload.get("permissionId") or "").strip()
    if not pid:
        raise RbacAdminError("Permission ID is required")
    rp = next((p for p in user.resource_permissions if p.id == pid), None)
    if rp is None:
        raise LookupError("Permission not found")
    if "permissions" in payload:
        rp.permissions = _validate_actions(payload.get("permissions"))
    if "resourceId" in payload:
        rp.resource_id = str(payload["resourceId"]) if payload.get("resourceId") else None
    if "conditions" in payload:
        rp.conditions = payload.get("conditions") or None
    rp.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="RESOURCE_PERMISSION_UPDATED",
        severity="high",
        entity_type="user",
        entity_id=user.id,
        metadata={"permissionId": pid, "permissions": list(rp.permissions or [])},
    )
    return rp


def delete_resource_permission(s: "Session", user: User, pid: str, actor: User) -> None:
    if not pid:
        raise RbacAdminError("Permission ID is required")
    rp = next((p for p in user.resource_permissions if p.id == pid), None)
    if rp is None:
        raise LookupError("Permission not found")
    user.resource_permissions.remove(rp)
    record_event(
        s,
        actor=actor,
        action="RESOURCE_PERMISSION_REVOKED",
        severity="high",
        entity_type="user",
        entity_id=user.id,
        metadata={"permissionId": pid},
    )


def reset_password(s: "Session", user: User, payload: dict[str, Any], actor: User) -> str:
    password = (payload.get("password") or "").strip() or generate_temporary_password()
    if len(password) < 8:
        raise RbacAdminError("Password must be at least 8 characters")
    now = datetime.utcnow()
    user.password_hash = generate_password_hash(password)
    user.must_change_password = True
    user.password_changed_at = now
    user.updated_at = now
    revoked = s.query(AuthSession).filter(AuthSession.user_id == user.id).delete(synchronize_session=False)
    record_event(
        s,
        actor=actor,
        action="ADMIN_PASSWORD_RESET",
        severity="high",
        message=f"Password reset for {user.email}",
        entity_type="user",
        entity_id=user.id,
        metadata={"sessionsRevoked": revoked},
    )
    return password
