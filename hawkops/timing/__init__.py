"""
Time-Scaling Module
===================

Bounded context mapping a session duration to every time value the
simulation uses.

Responsibilities:
- Scale SLA targets per priority
- Derive at-risk windows and L1/L2/L3 escalation thresholds from the SLA target
- Scale challenge windows and cap them to the remaining session time
- Hot-reload the scaling table from YAML
"""

__version__ = "1.0.0"
