"""
Permission registry, per-subject permission overrides, and effective
permission resolution.
"""
