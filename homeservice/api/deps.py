from fastapi import Header

from homeservice.config import settings
from homeservice.engine import get_antifraud, get_controller, get_ratings
from homeservice.errors import Unauthorized
from homeservice.services.actors import ROLE_SYSTEM, Actor
from homeservice.services.attempts import RateLimiter, get_attempt_store


def current_actor(
    x_actor_id: str | None = Header(None), x_actor_role: str | None = Header(None)
) -> Actor:
    """Identity forwarded by the auth gateway in front of the engine."""
    if not x_actor_id or not x_actor_role:
        raise Unauthorized("missing actor headers")
    if x_actor_role == ROLE_SYSTEM:
        raise Unauthorized("system actor is internal")
    try:
        return Actor(user_id=x_actor_id, role=x_actor_role)
    except ValueError as e:
        raise Unauthorized(str(e)) from e


def controller():
    return get_controller()


def antifraud():
    return get_antifraud()


def ratings():
    return get_ratings()


def diagnosis_limiter() -> RateLimiter:
    return RateLimiter(
        get_attempt_store(),
        limit=settings.DIAGNOSIS_RATE_LIMIT,
        window_seconds=settings.DIAGNOSIS_RATE_WINDOW_SECONDS,
        scope="diagnosis",
    )
