from dataclasses import dataclass
from uuid import NAMESPACE_DNS, UUID, uuid5

from fastapi import Depends, Header, HTTPException, status

from syncjobs.config.settings import AuthMode, settings


def string_to_uuid(text: str) -> UUID:
    """Convert a string to a deterministic UUID using namespace DNS."""
    return uuid5(NAMESPACE_DNS, text)


def parse_owner(value: str) -> UUID:
    """Accept either a UUID or an opaque owner string."""
    try:
        return UUID(value)
    except ValueError:
        return string_to_uuid(value)


@dataclass
class Principal:
    """The owner on whose behalf a request runs."""

    owner_id: str
    roles: list[str]

    @property
    def owner_uuid(self) -> UUID:
        """Get the owner ID as a UUID for database operations."""
        return parse_owner(self.owner_id)


async def get_principal(
    x_owner_id: str | None = Header(None, alias="X-Owner-ID"),
) -> Principal:
    """
    Dependency injection function to get the current principal.

    Behavior based on AUTH_MODE:
    - none: Returns the dev owner with admin role
    - dev: Owner taken from the X-Owner-ID header
    - oidc: not available yet
    """
    if settings.auth_mode == AuthMode.NONE:
        return Principal(owner_id=settings.dev_owner_id, roles=["admin"])
    elif settings.auth_mode == AuthMode.DEV:
        if not x_owner_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-Owner-ID header is required in dev auth mode",
            )
        return Principal(owner_id=x_owner_id, roles=["admin"])
    elif settings.auth_mode == AuthMode.OIDC:
        raise NotImplementedError("OIDC auth mode not implemented yet")
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


# Convenience type alias for dependency injection
PrincipalDep = Depends(get_principal)
