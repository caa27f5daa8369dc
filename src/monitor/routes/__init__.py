"""Route modules for the Session Monitor API."""

from .repositories import router as repositories_router
from .sessions import router as sessions_router
from .settings import router as settings_router

__all__ = [
    'repositories_router',
    'sessions_router',
    'settings_router',
]
