"""
Organisation tenancy and membership.

Roles and permission overrides are always scoped to an organisation; only
members of an organisation can hold them there.
"""
