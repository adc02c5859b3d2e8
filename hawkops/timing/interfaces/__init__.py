"""
Timing Interfaces Layer
=======================

FastAPI routes for the timing context.
"""

from hawkops.timing.interfaces.controllers import router as timing_router

__all__ = ["timing_router"]
