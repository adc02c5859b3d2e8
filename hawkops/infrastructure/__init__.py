"""
Infrastructure Package
======================

Generic adapters: database engine/session management and LLM clients.
"""
