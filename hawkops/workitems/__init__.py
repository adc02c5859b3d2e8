"""
Work Items Module
=================

Bounded context for incidents, implementation plans, change requests and
post-incident reviews.

Responsibilities:
- Enforce the lifecycle of every work item through explicit state machines
- Apply transitions under per-entity locks with compare-and-set writes
- Grade plans and reviews through the content service, off the request path
- Draw change outcomes and raise follow-up incidents for failed changes
"""

__version__ = "1.0.0"
