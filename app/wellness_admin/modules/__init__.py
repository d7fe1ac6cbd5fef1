"""
Feature modules live under this package.

Keep module boundaries clean: each module should own its routes and models,
while reusing platform primitives (auth, RBAC, audit, docstore, storage, DB session).
"""
