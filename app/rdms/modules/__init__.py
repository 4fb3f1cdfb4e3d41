"""
Feature modules live under this package.

Each module owns its models, services and JSON routes (admin.py), and reuses
the platform pieces in app.rdms (auth context, audit, storage, DB session).
"""
