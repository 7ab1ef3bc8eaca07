# passkey_rp/services/orchestrator.py
"""
Ceremony Orchestrator: the registration and authentication state machines.

    Idle -> ChallengeIssued -> Verified(success) | Verified(failure)

start_* issues a challenge and records the ceremony; finish_* consumes that
record exactly once, delegates cryptographic checks to the verifier and only
then commits credential changes. Any failure ends the attempt; the client
must start over.
"""
from __future__ import annotations
import logging
import secrets
from typing import Any, Callable, Dict

from passkey_rp.core.config import Settings
from passkey_rp.core.errors import (
    CeremonySessionNotFound, CeremonyTypeMismatch, CredentialAlreadyRegistered,
    DuplicateCredential, MalformedRequest, NoCredentialsRegistered, UnknownUser,
    VerificationFailed,
)
from passkey_rp.models.models import (
    AuthenticationChallenge, Credential, RegistrationChallenge, UserIdentity,
)
from passkey_rp.services.ceremony_state import CeremonyStateStore
from passkey_rp.services.credentials import CredentialStore
from passkey_rp.services.identity import IdentityDirectory
from passkey_rp.services.verifier import CredentialVerifier
from passkey_rp.utils.helpers import SUPPORTED_ALGS, b64u, now

log = logging.getLogger(__name__)


class CeremonyOrchestrator:
    def __init__(
        self,
        settings: Settings,
        identities: IdentityDirectory,
        credentials: CredentialStore,
        ceremonies: CeremonyStateStore,
        verifier: CredentialVerifier,
        *,
        now_fn: Callable[[], int] = now,
    ):
        self.settings = settings
        self.identities = identities
        self.credentials = credentials
        self.ceremonies = ceremonies
        self.verifier = verifier
        self._now = now_fn

    def _new_challenge(self) -> str:
        return b64u(secrets.token_bytes(self.settings.challenge_bytes))

    async def _resolve(self, username: str) -> UserIdentity:
        ident = await self.identities.lookup(username)
        if ident is None:
            raise UnknownUser(username)
        return ident

    async def _consume(self, ident: UserIdentity, expected_type: type):
        st = await self.ceremonies.take(ident.id)
        if st is None:
            raise CeremonySessionNotFound(ident.id)
        if not isinstance(st, expected_type) or st.user_id != ident.id:
            raise CeremonyTypeMismatch(f"expected {expected_type.kind} ceremony for {ident.id}")
        return st

    # -------- Registration --------

    async def start_registration(self, username: str) -> Dict[str, Any]:
        ident = await self.identities.resolve_or_create(username)
        existing = await self.credentials.list_for_user(ident.id)
        exclude = [c.descriptor() for c in existing]

        ts = self._now()
        state = RegistrationChallenge(
            challenge=self._new_challenge(),
            user_id=ident.id,
            exclude_list=exclude,
            created_at=ts,
            expires_at=ts + self.settings.ceremony_ttl,
        )
        await self.ceremonies.begin(ident.id, state)
        log.info("start registration uid=%s exclude=%d", ident.id, len(exclude))

        s = self.settings
        return {
            "publicKey": {
                "rp": {"id": s.rp_id, "name": s.rp_name},
                "user": {
                    "id": ident.user_handle,
                    "name": ident.username,
                    "displayName": ident.username,
                },
                "challenge": state.challenge,
                "pubKeyCredParams": [{"type": "public-key", "alg": alg} for alg in SUPPORTED_ALGS],
                "timeout": s.ceremony_timeout_ms,
                "authenticatorSelection": {
                    "residentKey": "preferred",
                    "requireResidentKey": False,
                    "userVerification": s.user_verification,
                },
                "attestation": s.attestation,
                "excludeCredentials": [d.to_json() for d in exclude],
                "extensions": {"credProps": True},
            }
        }

    async def finish_registration(self, username: str, response: Dict[str, Any]) -> Credential:
        if not isinstance(response, dict):
            raise MalformedRequest("response must be an object")
        ident = await self._resolve(username)
        state: RegistrationChallenge = await self._consume(ident, RegistrationChallenge)

        cred = self.verifier.verify_registration(
            response, state.challenge, self.settings.rp_origin, self.settings.rp_id,
        )
        if any(d.credential_id == cred.credential_id for d in state.exclude_list):
            raise CredentialAlreadyRegistered(cred.credential_id)
        try:
            await self.credentials.add_credential(ident.id, cred)
        except DuplicateCredential as e:
            raise CredentialAlreadyRegistered(cred.credential_id) from e

        log.info("Passkey registered for uid=%s cred_id=%s", ident.id, cred.credential_id[:16])
        return cred

    # -------- Authentication --------

    async def start_authentication(self, username: str) -> Dict[str, Any]:
        ident = await self._resolve(username)
        creds = await self.credentials.list_for_user(ident.id)
        if not creds:
            raise NoCredentialsRegistered(ident.id)
        allow = [c.descriptor() for c in creds]

        ts = self._now()
        state = AuthenticationChallenge(
            challenge=self._new_challenge(),
            user_id=ident.id,
            allow_list=allow,
            created_at=ts,
            expires_at=ts + self.settings.ceremony_ttl,
        )
        await self.ceremonies.begin(ident.id, state)
        log.info("start authentication uid=%s allow=%d", ident.id, len(allow))

        return {
            "publicKey": {
                "challenge": state.challenge,
                "timeout": self.settings.ceremony_timeout_ms,
                "rpId": self.settings.rp_id,
                "allowCredentials": [d.to_json() for d in allow],
                "userVerification": self.settings.user_verification,
            }
        }

    async def finish_authentication(self, username: str, response: Dict[str, Any]) -> UserIdentity:
        if not isinstance(response, dict):
            raise MalformedRequest("response must be an object")
        ident = await self._resolve(username)
        state: AuthenticationChallenge = await self._consume(ident, AuthenticationChallenge)

        allowed = {d.credential_id for d in state.allow_list}
        candidates = [c for c in await self.credentials.list_for_user(ident.id) if c.credential_id in allowed]
        result = self.verifier.verify_authentication(
            response, state.challenge, self.settings.rp_origin, self.settings.rp_id,
            candidates, ident.user_handle,
        )
        if result.credential_id not in allowed:
            raise VerificationFailed("verifier matched a credential outside the allow list")

        cred = await self.credentials.update_counter(
            ident.id, result.credential_id, result.new_counter, backed_up=result.backed_up,
        )
        log.info(
            "Passkey authentication successful for uid=%s cred_id=%s counter=%d uv=%s backed_up=%s",
            ident.id, cred.credential_id[:16], cred.signature_counter, result.user_verified, cred.backed_up,
        )
        return ident
