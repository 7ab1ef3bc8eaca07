# passkey_rp/services/ceremony_state.py
import logging
from typing import Callable, Optional

from passkey_rp.db.kv import KVStore
from passkey_rp.models.models import CeremonyState, dump_ceremony, load_ceremony
from passkey_rp.utils.helpers import now

log = logging.getLogger(__name__)


class CeremonyStateStore:
    """At most one in-flight ceremony per user id; the latest begin() wins."""

    def __init__(self, state: KVStore, now_fn: Callable[[], int] = now):
        self._state = state
        self._now = now_fn

    async def begin(self, user_id: str, state: CeremonyState) -> None:
        await self._state.put(user_id, dump_ceremony(state))

    async def take(self, user_id: str) -> Optional[CeremonyState]:
        raw = await self._state.take(user_id)
        if raw is None:
            return None
        try:
            st = load_ceremony(raw)
        except (ValueError, KeyError, TypeError) as e:
            log.error("Discarding undecodable ceremony state for uid %s: %s", user_id, e)
            return None
        if st.expires_at <= self._now():
            log.info("Ceremony for uid %s expired at %s", user_id, st.expires_at)
            return None
        return st
