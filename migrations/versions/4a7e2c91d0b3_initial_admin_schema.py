"""initial admin schema

Admin accounts, sessions, 2FA, RBAC, security settings, audit trail, the SQL
document-store tables and the provider directory.

Revision ID: 4a7e2c91d0b3
Revises:
Create Date: 2026-10-19 09:12:44.201733

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4a7e2c91d0b3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(), nullable=nullable)


def upgrade() -> None:
    # Idempotent: a database created by Base.metadata.create_all() can be stamped forward.
    conn = op.get_bind()
    existing_tables = set(sa.inspect(conn).get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False, server_default=""),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("image", sa.Text(), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("role", sa.String(32), nullable=False, server_default="admin"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("two_factor_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("must_change_password", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("password_changed_at", nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("name", sa.String(128), nullable=False, unique=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("created_at"),
            _ts("updated_at"),
        )

    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("resource", sa.String(64), nullable=False),
            sa.Column("action", sa.String(32), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            _ts("created_at"),
            sa.UniqueConstraint("resource", "action", name="uq_permissions_resource_action"),
        )

    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.String(64), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column(
                "permission_id", sa.String(64), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True
            ),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("role_id", sa.String(64), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("assigned_by", sa.String(64), nullable=True),
            _ts("assigned_at"),
            _ts("expires_at", nullable=True),
        )

    if "sessions" not in existing_tables:
        op.create_table(
            "sessions",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("token", sa.String(128), nullable=False, unique=True),
            sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("ip_address", sa.String(64), nullable=True),
            sa.Column("user_agent", sa.Text(), nullable=True),
            sa.Column("two_factor_verified", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("expires_at"),
            _ts("created_at"),
            _ts("updated_at"),
        )
        op.create_index("idx_sessions_user_id", "sessions", ["user_id"])

    if "two_factors" not in existing_tables:
        op.create_table(
            "two_factors",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column(
                "user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
            ),
            sa.Column("secret", sa.String(64), nullable=False),
            sa.Column("backup_codes", sa.JSON(), nullable=False),
            _ts("created_at"),
        )

    if "resource_permissions" not in existing_tables:
        op.create_table(
            "resource_permissions",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("resource_type", sa.String(64), nullable=False),
            sa.Column("resource_id", sa.String(255), nullable=True),
            sa.Column("permissions", sa.JSON(), nullable=False),
            sa.Column("conditions", sa.JSON(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
        )
        op.create_index("idx_resource_permissions_user", "resource_permissions", ["user_id"])

    if "security_settings" not in existing_tables:
        op.create_table(
            "security_settings",
            sa.Column("id", sa.String(32), primary_key=True),
            sa.Column("enforce_two_factor_for_all", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("login_alert_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("login_alert_emails", sa.JSON(), nullable=False),
            sa.Column("ip_allowlist_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("ip_allowlist", sa.JSON(), nullable=False),
            sa.Column("password_min_length", sa.Integer(), nullable=False, server_default="12"),
            sa.Column("password_require_uppercase", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("password_require_number", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("password_require_special", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("password_expiration_days", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("force_password_change_on_first_login", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("max_active_sessions_per_user", sa.Integer(), nullable=False, server_default="0"),
            _ts("updated_at"),
            sa.Column("updated_by", sa.String(64), nullable=True),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            _ts("created_at"),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("severity", sa.String(16), nullable=False, server_default="info"),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
            sa.Column("user_agent", sa.Text(), nullable=True),
        )
        op.create_index("idx_audit_events_created_at", "audit_events", ["created_at"])
        op.create_index("idx_audit_events_actor", "audit_events", ["actor_user_id"])

    if "documents" not in existing_tables:
        op.create_table(
            "documents",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("collection", sa.String(512), nullable=False),
            sa.Column("doc_id", sa.String(255), nullable=False),
            sa.Column("data_json", sa.Text(), nullable=False, server_default="{}"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("collection", "doc_id", name="uq_documents_collection_doc_id"),
        )
        op.create_index("idx_documents_collection", "documents", ["collection"])

    if "app_accounts" not in existing_tables:
        op.create_table(
            "app_accounts",
            sa.Column("uid", sa.String(128), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("display_name", sa.String(255), nullable=True),
            sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("created_at"),
        )

    # Created here only when the directory shares the admin database.
    if "providers" not in existing_tables:
        op.create_table(
            "providers",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
            sa.Column("provider_name", sa.Text(), nullable=False),
            sa.Column("location", sa.Text(), nullable=True),
            sa.Column("physical_address", sa.Text(), nullable=True),
            sa.Column("telephone", sa.Text(), nullable=True),
            sa.Column("services", sa.Text(), nullable=True),
            sa.Column("email", sa.Text(), nullable=True),
            sa.Column("speciality", sa.Text(), nullable=True),
            sa.Column("inferred_categories", sa.Text(), nullable=True),
            sa.Column("coordinates", sa.Text(), nullable=True),
            sa.Column("formatted_address", sa.Text(), nullable=True),
            sa.Column("country", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
        )
        op.create_index("idx_providers_provider_name", "providers", ["provider_name"])


def downgrade() -> None:
    for index, table in (
        ("idx_providers_provider_name", "providers"),
        ("idx_documents_collection", "documents"),
        ("idx_audit_events_actor", "audit_events"),
        ("idx_audit_events_created_at", "audit_events"),
        ("idx_resource_permissions_user", "resource_permissions"),
        ("idx_sessions_user_id", "sessions"),
    ):
        op.drop_index(index, table_name=table)
    for table in (
        "providers",
        "app_accounts",
        "documents",
        "audit_events",
        "security_settings",
        "resource_permissions",
        "two_factors",
        "sessions",
        "user_roles",
        "role_permissions",
        "permissions",
        "roles",
        "users",
    ):
        op.drop_table(table)
