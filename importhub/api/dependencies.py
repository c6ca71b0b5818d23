"""
Request-scoped access to the services built at startup.
"""
from fastapi import HTTPException, Request

from importhub.services import Services


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Import services are not initialized")
    return services
