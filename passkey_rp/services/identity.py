# passkey_rp/services/identity.py
import logging
import uuid
from typing import Optional

from passkey_rp.core.errors import MalformedRequest
from passkey_rp.db.kv import KVStore
from passkey_rp.models.models import UserIdentity

log = logging.getLogger(__name__)

MAX_USERNAME_LEN = 64


def normalize_username(username) -> str:
    if not isinstance(username, str):
        raise MalformedRequest("username must be a string")
    name = username.strip()
    if not name or len(name) > MAX_USERNAME_LEN:
        raise MalformedRequest("username must be 1-%d characters" % MAX_USERNAME_LEN)
    return name


class IdentityDirectory:
    """Username -> stable user id, backed by the `users` store."""

    def __init__(self, users: KVStore):
        self._users = users

    async def lookup(self, username: str) -> Optional[UserIdentity]:
        name = normalize_username(username)
        uid = await self._users.get(name)
        return UserIdentity(id=uid, username=name) if uid else None

    async def resolve_or_create(self, username: str) -> UserIdentity:
        # Plain put: two racing creations for one username are last-write-wins
        # and one of the generated ids is lost.
        existing = await self.lookup(username)
        if existing:
            log.info("Existing uid for %s is %s", existing.username, existing.id)
            return existing
        ident = UserIdentity(id=str(uuid.uuid4()), username=normalize_username(username))
        await self._users.put(ident.username, ident.id)
        log.info("Created uid %s for %s", ident.id, ident.username)
        return ident
