"""
Feature modules live under this package.

Keep module boundaries clean: each module should own its routes, models and services,
while reusing platform primitives (auth, RBAC, audit, storage, DB session).
"""

