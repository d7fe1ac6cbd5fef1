"""
RBAC administration: roles, permissions, admin accounts and their grants.
"""
