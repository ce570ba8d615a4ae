"""
Customer Intelligence Engine

RFM health scoring, rule-based customer segments and a rate-limited
natural-language analytics layer for the admin dashboard.
"""

__version__ = "1.0.0"
