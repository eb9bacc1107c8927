"""
Shared primitives for the arrival alarm backend.

Submodules:
- clock: Injectable clock and interval ticker
- geo: Great-circle distance helpers
- config: AlarmSettings loaded from ALARM_* environment variables
"""
