"""
tokenmeter - Usage & Quota Accounting Engine

Meters AI model token consumption per user, enforces tier-based daily and
monthly entitlements, estimates cost, and reports usage history for users
and administrators.
"""

__version__ = "1.0.0"
__author__ = "tokenmeter"
