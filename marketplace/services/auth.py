from dataclasses import dataclass

from fastapi import Header, HTTPException

from marketplace.core.config import settings


@dataclass(frozen=True)
class Actor:
    user_id: str
    email: str | None
    name: str | None


async def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_email: str | None = Header(default=None),
    x_actor_name: str | None = Header(default=None),
) -> Actor:
    # Identity is established by the upstream auth layer and forwarded as headers.
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id")
    return Actor(user_id=x_actor_id.strip(), email=x_actor_email, name=x_actor_name)


async def require_internal_admin(x_internal_admin_key: str | None = Header(default=None)) -> str:
    if not x_internal_admin_key or x_internal_admin_key != settings.internal_admin_key:
        raise HTTPException(status_code=403, detail="Internal admin key required")
    return "admin"
