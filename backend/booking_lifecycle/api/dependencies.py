"""
Request-scoped dependencies: the service container and the calling actor.

Authentication happens upstream; the gateway forwards the resolved identity
in X-Actor-* headers.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from booking_lifecycle.container import Container
from booking_lifecycle.core.logging import bind_actor
from booking_lifecycle.schemas.audit import Actor, ActorRole


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_actor(
    request: Request,
    x_actor_id: str = Header(..., alias="X-Actor-Id"),
    x_actor_name: Optional[str] = Header(None, alias="X-Actor-Name"),
    x_actor_role: ActorRole = Header(ActorRole.CUSTOMER, alias="X-Actor-Role"),
    x_actor_email: Optional[str] = Header(None, alias="X-Actor-Email"),
) -> Actor:
    bind_actor(x_actor_id, x_actor_role.value)
    return Actor(
        id=x_actor_id,
        name=x_actor_name or x_actor_id,
        role=x_actor_role,
        email=x_actor_email,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def require_staff(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_staff:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Staff role required")
    return actor


def get_idempotency_key(idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")) -> Optional[str]:
    return idempotency_key


def require_idempotency_key(idempotency_key: Optional[str] = Depends(get_idempotency_key)) -> str:
    if not idempotency_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Idempotency-Key header is required",
        )
    return idempotency_key
