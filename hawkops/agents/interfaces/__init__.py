"""
Agents Interfaces Layer
=======================

FastAPI routes for the agents context.
"""

from hawkops.agents.interfaces.controllers import router as agents_router

__all__ = ["agents_router"]
