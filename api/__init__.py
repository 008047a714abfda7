"""
Read-only status API over migration runs and identity mappings.
"""
