"""
Shared Kernel Module
====================

Shared infrastructure used across all bounded contexts (timing, work items,
progress and agents).

Architecture Pattern: Modular Monolith
- Each module is a bounded context
- Shared kernel contains only generic infrastructure

DO NOT add simulation rules to the shared kernel.
"""

__version__ = "1.0.0"
