"""
Progress Module
===============

Bounded context for challenges, achievements and team scores.

Responsibilities:
- Instantiate challenges from templates with duration-aware windows
- Advance challenges from game events and complete them exactly once
- Compute achievement progress on demand and award each achievement once
- Keep an idempotent, non-negative score ledger per team
"""

__version__ = "1.0.0"
