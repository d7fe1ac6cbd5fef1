from __future__ import annotations

from flask import Blueprint, abort, g, jsonify, request

from app.wellness_admin.db import db_session
from app.wellness_admin.mailer import MailerError, send_credentials_email, send_password_reset_email
from app.wellness_admin.models import Permission, Role, User
from app.wellness_admin.modules.rbac_admin.service import (
    RbacAdminError,
    admin_user_dict,
    assign_role,
    assignment_dict,
    create_admin_user,
    create_resource_permission,
    create_role,
    delete_resource_permission,
    grouped_permissions,
    permission_dict,
    remove_role,
    reset_password,
    resource_permission_dict,
    role_dict,
    update_resource_permission,
)
from app.wellness_admin.rbac import (
    ensure_security_permissions,
    initialize_rbac,
    is_superadmin,
    require_login,
    require_permission,
    require_superadmin,
)

bp = Blueprint("rbac_admin", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _target_user(user_id: str) -> User:
    u = db_session().get(User, user_id)
    if not u:
        abort(404, description="User not found")
    return u


def _bad_request(e: Exception):
    db_session().rollback()
    return jsonify({"error": str(e)}), 400


@bp.post("/initialize")
@require_login()
def initialize():
    user = _current_user()
    if user.role not in ("admin", "superadmin") and not is_superadmin(user):
        return jsonify({"error": "Forbidden - Admin access required"}), 403
    s = db_session()
    summary = initialize_rbac(s, assigned_by=user.id)
    ensure_security_permissions(s)
    s.commit()
    return jsonify({"success": True, "message": "RBAC system initialized", **summary})


@bp.get("/permissions")
@require_permission("admin", "read")
def permissions_list():
    s = db_session()
    perms = s.query(Permission).order_by(Permission.resource.asc(), Permission.action.asc()).all()
    return jsonify({"permissions": [permission_dict(p) for p in perms], "grouped": grouped_permissions(perms)})


@bp.get("/roles")
@require_permission("admin", "read")
def roles_list():
    s = db_session()
    roles = s.query(Role).order_by(Role.name.asc()).all()
    return jsonify({"roles": [role_dict(r) for r in roles]})


@bp.post("/roles")
@require_permission("admin", "manage")
def roles_create():
    s = db_session()
    try:
        role = create_role(s, request.get_json(silent=True) or {}, _current_user())
    except RbacAdminError as e:
        return _bad_request(e)
    s.commit()
    return jsonify({"role": role_dict(role)}), 201


@bp.get("/users")
@require_permission("admin", "read")
def users_list():
    s = db_session()
    users = s.query(User).order_by(User.name.asc()).all()
    return jsonify({"users": [admin_user_dict(u) for u in users]})


@bp.post("/users")
@require_superadmin()
def users_create():
    s = db_session()
    actor = _current_user()
    payload = request.get_json(silent=True) or {}
    initialize_rbac(s, assigned_by=actor.id)
    try:
        user, roles, password = create_admin_user(s, payload, actor)
    except RbacAdminError as e:
        return _bad_request(e)
    s.commit()

    email_sent = False
    email_error = None
    if payload.get("sendEmail"):
        try:
            send_credentials_email(user.email, name=user.name, temporary_password=password, roles=[r.name for r in roles])
            email_sent = True
        except MailerError as e:
            email_error = str(e)

    body = {
        "success": True,
        "userId": user.id,
        "email": user.email,
        "roles": [{"id": r.id, "name": r.name} for r in roles],
        "emailSent": email_sent,
        "emailError": email_error,
    }
    if payload.get("returnPassword"):
        body["temporaryPassword"] = password
    return jsonify(body), 201


# ---------- Role assignments ----------
@bp.get("/users/<user_id>/roles")
@require_permission("admin", "read")
def user_roles_list(user_id: str):
    user = _target_user(user_id)
    return jsonify({"roles": [assignment_dict(ra) for ra in user.role_assignments]})


@bp.post("/users/<user_id>/roles")
@require_permission("admin", "manage")
def user_roles_assign(user_id: str):
    s = db_session()
    user = _target_user(user_id)
    try:
        assign_role(s, user, request.get_json(silent=True) or {}, _current_user())
    except RbacAdminError as e:
        return _bad_request(e)
    s.commit()
    return jsonify({"success": True, "message": "Role assigned successfully"})


@bp.delete("/users/<user_id>/roles")
@require_permission("admin", "manage")
def user_roles_remove(user_id: str):
    s = db_session()
    user = _target_user(user_id)
    try:
        remove_role(s, user, (request.args.get("roleId") or "").strip(), _current_user())
    except RbacAdminError as e:
        return _bad_request(e)
    s.commit()
    return jsonify({"success": True, "message": "Role removed successfully"})


# ---------- Resource permissions ----------
@bp.get("/users/<user_id>/permissions")
@require_permission("admin", "read")
def user_permissions_list(user_id: str):
    user = _target_user(user_id)
    return jsonify({"permissions": [resource_permission_dict(rp) for rp in user.resource_permissions]})


@bp.post("/users/<user_id>/permissions")
@require_permission("admin", "manage")
def user_permissions_create(user_id: str):
    s = db_session()
    user = _target_user(user_id)
    try:
        rp = create_resource_permission(s, user, request.get_json(silent=True) or {}, _current_user())
    except RbacAdminError as e:
        return _bad_request(e)
    s.commit()
    return jsonify({"permission": resource_permission_dict(rp)}), 201


@bp.patch("/users/<user_id>/permissions")
@require_permission("admin", "manage")
def user_permissions_update(user_id: str):
    s = db_session()
    user = _target_user(user_id)
    try:
        update_resource_permission(s, user, request.get_json(silent=True) or {}, _current_user())
    except RbacAdminError as e:
        return _bad_request(e)
    except LookupError as e:
        return jsonify({"error": str(e)}), 404
    s.commit()
    return jsonify({"success": True, "message": "Permission updated successfully"})


@bp.delete("/users/<user_id>/permissions")
@require_permission("admin", "manage")
def user_permissions_delete(user_id: str):
    s = db_session()
    user = _target_user(user_id)
    try:
        delete_resource_permission(s, user, (request.args.get("permissionId") or "").strip(), _current_user())
    except RbacAdminError as e:
        return _bad_request(e)
    except LookupError as e:
        return jsonify({"error": str(e)}), 404
    s.commit()
    return jsonify({"success": True, "message": "Permission deleted successfully"})


@bp.post("/users/<user_id>/reset-password")
@require_superadmin()
def user_reset_password(user_id: str):
    s = db_session()
    user = _target_user(user_id)
    payload = request.get_json(silent=True) or {}
    try:
        password = reset_password(s, user, payload, _current_user())
    except RbacAdminError as e:
        return _bad_request(e)
    s.commit()

    email_sent = False
    email_error = None
    if payload.get("sendEmail"):
        try:
            send_password_reset_email(user.email, name=user.name, temporary_password=password)
            email_sent = True
        except MailerError as e:
            email_error = str(e)

    body = {"success": True, "userId": user.id, "email": user.email, "emailSent": email_sent, "emailError": email_error}
    if payload.get("returnPassword"):
        body["temporaryPassword"] = password
    return jsonify(body)
