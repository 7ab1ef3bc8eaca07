# passkey_rp/services/credentials.py
from __future__ import annotations
import json
import logging
from typing import Callable, List, Optional

from passkey_rp.core.errors import (
    CounterRegression, CredentialNotFound, DuplicateCredential, StorageUnavailable,
)
from passkey_rp.db.kv import KVStore
from passkey_rp.models.models import Credential
from passkey_rp.utils.helpers import now

log = logging.getLogger(__name__)


class CredentialStore:
    """
    Passkeys keyed by user id.

    Layout:
      keys:   <user id>       -> JSON list of credentials
      owners: <credential id> -> <user id>   (global uniqueness index)

    Every mutation is one write of the user's whole list, so a failed write
    never leaves a half-updated set behind.
    """

    def __init__(self, keys: KVStore, owners: KVStore, now_fn: Callable[[], int] = now):
        self._keys = keys
        self._owners = owners
        self._now = now_fn

    async def _load(self, user_id: str) -> List[Credential]:
        raw = await self._keys.get(user_id)
        if not raw:
            return []
        try:
            return [Credential.from_dict(d) for d in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as e:
            log.error("Credentials corrupted for uid %s: %s", user_id, e)
            raise StorageUnavailable("credential set corrupted") from e

    async def _save(self, user_id: str, creds: List[Credential]) -> None:
        await self._keys.put(user_id, json.dumps([c.to_dict() for c in creds], separators=(",", ":")))

    async def list_for_user(self, user_id: str) -> List[Credential]:
        return await self._load(user_id)

    async def find_owner(self, credential_id: str) -> Optional[str]:
        return await self._owners.get(credential_id)

    async def add_credential(self, user_id: str, credential: Credential) -> None:
        if not await self._owners.put_if_absent(credential.credential_id, user_id):
            owner = await self._owners.get(credential.credential_id)
            log.warning(
                "Duplicate credential %s for uid %s (owned by %s)",
                credential.credential_id[:16], user_id, "same user" if owner == user_id else "another user",
            )
            raise DuplicateCredential(credential.credential_id)

        existing = await self._load(user_id)
        if any(c.credential_id == credential.credential_id for c in existing):
            raise DuplicateCredential(credential.credential_id)
        existing.append(credential)
        await self._save(user_id, existing)
        log.info("Stored credential %s for uid %s (%d total)", credential.credential_id[:16], user_id, len(existing))

    async def update_counter(
        self, user_id: str, credential_id: str, new_counter: int, *, backed_up: Optional[bool] = None,
    ) -> Credential:
        creds = await self._load(user_id)
        idx = next((i for i, c in enumerate(creds) if c.credential_id == credential_id), None)
        if idx is None:
            raise CredentialNotFound(credential_id)

        cred = creds[idx]
        stored = cred.signature_counter
        # Authenticators that never count report 0 forever; any non-zero history must strictly grow.
        if stored != 0 and new_counter <= stored:
            err = CounterRegression(credential_id, stored, new_counter)
            log.warning("Possible cloned authenticator for uid %s: %s", user_id, err)
            raise err

        cred.signature_counter = new_counter
        if backed_up is not None:
            cred.backed_up = backed_up
        cred.last_used_at = self._now()
        await self._save(user_id, creds)
        return cred
