"""
SpeedFunnels marketing-analytics backend.

This package holds the third-party integration credential lifecycle:
OAuth authorization, token exchange, two-tier token storage and refresh
for the Meta Ads and Google Analytics integrations.
"""

__version__ = "1.4.0"
