"""FastAPI dependencies shared by the routers.

Dependencies:
  get_actor_id   → acting user id from the ``X-Actor-Id`` header

Role and permission checks happen in the caller-side policy layer before
requests reach this service; the actor id is only recorded on history,
events and audit columns.
"""

from fastapi import Header

from app.middleware.exceptions import ValidationError


async def get_actor_id(
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
) -> str | None:
    """Return the acting user id, or None for system/anonymous callers."""
    if x_actor_id is None:
        return None
    actor = x_actor_id.strip()
    if len(actor) > 36:
        raise ValidationError("X-Actor-Id must be at most 36 characters")
    return actor or None
