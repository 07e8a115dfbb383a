"""
Controller Dependencies
Hands the app's AppContext to route handlers
"""

from fastapi import Request

from ..context import AppContext


def get_context(request: Request) -> AppContext:
    return request.app.state.context
