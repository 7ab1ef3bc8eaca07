"""
Shared fixtures: in-memory stores, fixed relying-party settings and a
scripted verifier for exercising the ceremony state machine without crypto.
"""
import itertools

import pytest
import pytest_asyncio

from passkey_rp.core.config import Settings
from passkey_rp.core.errors import VerificationFailed
from passkey_rp.db.kv import Database, KEYS, OWNERS, STATE, USERS
from passkey_rp.models.models import AssertionResult, Credential
from passkey_rp.services.ceremony_state import CeremonyStateStore
from passkey_rp.services.credentials import CredentialStore
from passkey_rp.services.identity import IdentityDirectory
from passkey_rp.services.orchestrator import CeremonyOrchestrator
from passkey_rp.services.verifier import CredentialVerifier

RP_ID = "localhost"
RP_ORIGIN = "http://localhost:8000"


def make_settings(**overrides) -> Settings:
    values = dict(
        rp_id=RP_ID,
        rp_origin=RP_ORIGIN,
        rp_name="Test RP",
        db_path=":memory:",
        ceremony_ttl=300,
        ceremony_timeout_ms=60000,
        challenge_bytes=32,
        passkeys_policy="compat",
        log_level="DEBUG",
    )
    values.update(overrides)
    return Settings(**values)


class Clock:
    """Manually advanced time source."""

    def __init__(self, start: int = 1_700_000_000):
        self.t = start

    def __call__(self) -> int:
        return self.t


class ScriptedVerifier(CredentialVerifier):
    """
    Accepts any response that echoes the expected challenge.

    Registration responses look like {"challenge": ..., "credential_id": ...};
    authentication responses like {"challenge": ..., "credential_id": ...,
    "counter": n}. Setting `fail` makes every call raise VerificationFailed.
    """

    def __init__(self):
        self.fail = False
        self.calls = []
        self._ids = itertools.count(1)

    def verify_registration(self, response, challenge, origin, rp_id):
        self.calls.append(("registration", challenge, origin, rp_id))
        if self.fail or response.get("challenge") != challenge:
            raise VerificationFailed("scripted failure")
        return Credential(
            credential_id=response.get("credential_id") or f"cred-{next(self._ids)}",
            public_key={"kty": "EC"},
            signature_counter=int(response.get("counter", 0)),
            transports=["internal"],
        )

    def verify_authentication(self, response, challenge, origin, rp_id, credentials, user_handle=None):
        credentials = list(credentials)
        self.calls.append(("authentication", challenge, [c.credential_id for c in credentials], user_handle))
        if self.fail or response.get("challenge") != challenge:
            raise VerificationFailed("scripted failure")
        if not any(c.credential_id == response["credential_id"] for c in credentials):
            raise VerificationFailed("credential not in allow list")
        return AssertionResult(
            credential_id=response["credential_id"],
            new_counter=int(response.get("counter", 0)),
            backed_up=bool(response.get("backed_up", False)),
        )


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return Clock()


@pytest_asyncio.fixture
async def db():
    database = Database(":memory:")
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def identities(db):
    return IdentityDirectory(db.store(USERS))


@pytest.fixture
def credentials(db, clock):
    return CredentialStore(db.store(KEYS), db.store(OWNERS), now_fn=clock)


@pytest.fixture
def ceremonies(db, clock):
    return CeremonyStateStore(db.store(STATE), now_fn=clock)


@pytest.fixture
def scripted():
    return ScriptedVerifier()


@pytest.fixture
def orchestrator(settings, identities, credentials, ceremonies, scripted, clock):
    return CeremonyOrchestrator(settings, identities, credentials, ceremonies, scripted, now_fn=clock)
