"""Collaborators built at startup and handed to handlers through ``app.state``."""
from typing import Optional

from fastapi import Request

from .cache import ProfileCache
from .messaging import EventPublisher
from .payments import StripeGateway


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher


def get_cache(request: Request) -> Optional[ProfileCache]:
    return request.app.state.profile_cache


def get_gateway(request: Request) -> StripeGateway:
    return request.app.state.gateway


async def raw_body(request: Request) -> bytes:
    """Unparsed request body, read on the event loop so sync handlers can verify signatures over it."""
    return await request.body()
