"""
Progress Interfaces Layer
=========================

FastAPI routes for the progress context.
"""

from hawkops.progress.interfaces.controllers import router as progress_router

__all__ = ["progress_router"]
