"""
FastAPI Dependencies

Provides dependency injection for:
- The ServiceContainer opened by the application lifespan
- TransformationService (per-request view of the container)
- Owner identity from the X-User-Id header
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from src.core.container import ServiceContainer
from src.core.cache import IResultCache
from src.modules.imagery.services import TransformationService


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return container


def get_transformation_service(
    container: ServiceContainer = Depends(get_container)
) -> TransformationService:
    return container.service


def get_result_cache(container: ServiceContainer = Depends(get_container)) -> IResultCache:
    return container.cache


def get_owner_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Opaque owner id supplied by the identity layer in front of this service."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()
