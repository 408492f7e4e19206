"""Sharing & access control rules.

Read access and permissions are separate questions: being able to see a
file does not mean being able to download, edit or delete it.
"""
from datetime import datetime
from typing import Iterable

from passlib.context import CryptContext

from file_service.identity import Identity
from file_service.models.file_record import FileRecord
from file_service.models.file_share import FileShare, SharePermission, ShareType

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_share_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_share_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def is_owner(file: FileRecord, identity: Identity) -> bool:
    return file.owner_id == identity.user_id


def grant_matches(grant: FileShare, file: FileRecord, identity: Identity) -> bool:
    """Does this grant target the requester?

    Team and organization grants count only when they target the file's own
    team/organization and the requester belongs to it. Public links are
    reached through their token, never through identity.
    """
    share_type = ShareType(grant.share_type)
    if share_type == ShareType.USER:
        return grant.shared_with_id == identity.user_id
    if share_type == ShareType.ORGANIZATION:
        return grant.shared_with_id == file.organization_id and identity.in_organization(grant.shared_with_id)
    if share_type == ShareType.TEAM:
        return grant.shared_with_id == file.team_id and identity.in_team(grant.shared_with_id)
    return False


def active_grants_for(file: FileRecord, identity: Identity, grants: Iterable[FileShare],
                      now: datetime | None = None) -> list[FileShare]:
    return [g for g in grants if g.file_id == file.id and g.can_access(now) and grant_matches(g, file, identity)]


def has_access(file: FileRecord, identity: Identity, grants: Iterable[FileShare],
               now: datetime | None = None) -> bool:
    if is_owner(file, identity) or file.is_public:
        return True
    return bool(active_grants_for(file, identity, grants, now))


def has_permission(file: FileRecord, identity: Identity, grants: Iterable[FileShare],
                   permission: SharePermission, now: datetime | None = None) -> bool:
    if is_owner(file, identity):
        return True
    return any(g.has_permission(permission) for g in active_grants_for(file, identity, grants, now))


def can_download(file: FileRecord, identity: Identity, grants: Iterable[FileShare],
                 now: datetime | None = None) -> bool:
    if file.is_public:
        return True
    return has_permission(file, identity, grants, SharePermission.DOWNLOAD, now)
