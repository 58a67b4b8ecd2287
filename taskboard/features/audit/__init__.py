"""
Audit trail for role and permission changes.
"""
