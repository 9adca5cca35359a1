"""
Feature modules live under this package.

Each module owns its models/service/blueprint and reuses the platform primitives
(auth, RBAC, audit, storage, DB session).
"""
