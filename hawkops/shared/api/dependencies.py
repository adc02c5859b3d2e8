"""
Request Dependencies
====================

FastAPI dependencies shared by every router.
"""

from typing import Any, AsyncGenerator

from fastapi import Request


async def get_services(request: Request) -> AsyncGenerator[Any, None]:
    """
    Services for one request.

    With a database the scope opens a session and commits when the
    request completes; in-process it hands back the single graph.
    """
    async with request.app.state.service_scope() as services:
        yield services
