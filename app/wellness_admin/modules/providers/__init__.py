"""
Provider Directory module (relational store).

Scope:
- Providers CRUD with search/category filters and offset pagination
- Read-only provider reviews (document store)
"""
