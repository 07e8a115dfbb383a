"""
Tally Dashboard Sync
Mirrors Tally vouchers into a local SQLite cache
"""

__version__ = "1.0.0"
