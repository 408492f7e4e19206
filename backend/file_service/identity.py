"""Request identity derived from upstream gateway headers.

The gateway has already authenticated the caller; these headers are trusted
context, not credentials.
"""
from dataclasses import dataclass

from fastapi import Header

from file_service.exceptions import AuthenticationRequiredError


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass(frozen=True)
class Identity:
    user_id: str
    organization_id: str | None = None
    team_ids: tuple[str, ...] = ()
    roles: tuple[str, ...] = ()
    email: str | None = None

    def in_team(self, team_id: str | None) -> bool:
        return team_id is not None and team_id in self.team_ids

    def in_organization(self, organization_id: str | None) -> bool:
        return organization_id is not None and organization_id == self.organization_id

    def has_role(self, role: str) -> bool:
        return role in self.roles


async def get_identity(
    x_user_id: str | None = Header(None),
    x_user_roles: str | None = Header(None),
    x_organization_id: str | None = Header(None),
    x_team_ids: str | None = Header(None),
    x_user_email: str | None = Header(None),
) -> Identity:
    """FastAPI dependency: build the caller identity or reject with 401."""
    if not x_user_id:
        raise AuthenticationRequiredError("Missing x-user-id header")
    return Identity(
        user_id=x_user_id,
        organization_id=x_organization_id or None,
        team_ids=tuple(_split(x_team_ids)),
        roles=tuple(_split(x_user_roles)),
        email=x_user_email,
    )


async def get_optional_identity(
    x_user_id: str | None = Header(None),
    x_user_roles: str | None = Header(None),
    x_organization_id: str | None = Header(None),
    x_team_ids: str | None = Header(None),
    x_user_email: str | None = Header(None),
) -> Identity | None:
    if not x_user_id:
        return None
    return await get_identity(x_user_id, x_user_roles, x_organization_id, x_team_ids, x_user_email)
