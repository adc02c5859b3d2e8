"""
HawkOps Simulation Engine
=========================

Core of an ITSM team exercise: time scaling, work item state machines,
simulated roles and progress tracking.
"""

__version__ = "1.0.0"
