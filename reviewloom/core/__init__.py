"""Core services for ReviewLoom.

Submodules are imported directly (``reviewloom.core.db``,
``reviewloom.core.analysis``) so that the HTTP layer stays optional.
"""
