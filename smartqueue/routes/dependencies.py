# smartqueue/routes/dependencies.py
from fastapi import Request

from smartqueue.services.container import QueueServices


def get_services(request: Request) -> QueueServices:
    """Queue services built during application startup."""
    return request.app.state.services
