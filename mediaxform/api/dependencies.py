"""
FastAPI dependencies.

Services come from the container built in the application lifespan. Owner
identity is taken from the X-Owner-Id header; verifying who sent it is the
job of whatever sits in front of this service.
"""

from fastapi import Depends, Header, Request

from mediaxform.container import ServiceContainer
from mediaxform.core.exceptions import InvalidSpecError
from mediaxform.engines.transform.dispatcher import TransformDispatcher
from mediaxform.modules.media.service import MediaService


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_media_service(container: ServiceContainer = Depends(get_container)) -> MediaService:
    return container.media


def get_dispatcher(container: ServiceContainer = Depends(get_container)) -> TransformDispatcher:
    return container.dispatcher


def get_owner_id(x_owner_id: str = Header(default="")) -> str:
    owner_id = x_owner_id.strip()
    if not owner_id:
        raise InvalidSpecError("X-Owner-Id header is required")
    return owner_id
