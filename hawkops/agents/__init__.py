"""
Agents Module
=============

Bounded context for the simulated team roles.

Responsibilities:
- Perceive a team's work items into a read-only snapshot
- Decide with a fixed, ordered rule table per role
- Act through the work item services, idempotently
- Run one serialized cycle per team on each scheduler tick
"""

__version__ = "1.0.0"
