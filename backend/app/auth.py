"""Caller identity for ScalingAd backend.

Identity is resolved upstream; the acting user arrives in the
``X-Actor-Id`` header and is trusted as given. Authorization against the
job's business and agency happens inside the escrow service.
"""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

MAX_ACTOR_ID_LENGTH = 128


def get_current_actor(
    x_actor_id: Annotated[str | None, Header(alias="X-Actor-Id")] = None,
) -> str:
    """Get the acting user id from the request headers."""
    actor_id = (x_actor_id or "").strip()
    if not actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated - provide X-Actor-Id header",
        )
    if len(actor_id) > MAX_ACTOR_ID_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"X-Actor-Id too long (max {MAX_ACTOR_ID_LENGTH} characters)",
        )
    return actor_id


# Type alias for dependency injection
CurrentActor = Annotated[str, Depends(get_current_actor)]
