"""
Taskboard RBAC engine.

Organisation-scoped role templates, system template overrides, and
effective-permission resolution for the Taskboard platform.
"""
__version__ = "0.1.0"
