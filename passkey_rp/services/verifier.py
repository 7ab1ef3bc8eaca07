# passkey_rp/services/verifier.py
"""
Credential Verifier: checks a browser's WebAuthn response against the
challenge the server issued and the relying party it is configured for.

`CredentialVerifier` is the capability the ceremony orchestrator depends on;
`WebAuthnVerifier` is the real implementation (CBOR/COSE decoding and
signature checks). Tests swap in scripted verifiers.
"""
from __future__ import annotations
import binascii
import hashlib
import json
import logging
from typing import Any, Dict, Iterable, Optional, Tuple

import cbor2
from cryptography import x509
from cryptography.x509.oid import ObjectIdentifier

from passkey_rp.core.errors import VerificationFailed
from passkey_rp.models.models import AssertionResult, Credential
from passkey_rp.utils.helpers import (
    FLAG_AT, FLAG_BE, FLAG_BS, FLAG_UP, FLAG_UV,
    COSE_ES256, COSE_EDDSA, COSE_RS256,
    b64u, b64u_dec, cose_to_jwk, jwk_to_public_key, now,
    parse_authenticator_data, verify_signature,
)

log = logging.getLogger(__name__)

_ALG_NAMES = {COSE_ES256: "ES256", COSE_RS256: "RS256", COSE_EDDSA: "EdDSA"}
# id-fido-gen-ce-aaguid
_AAGUID_OID = ObjectIdentifier("1.3.6.1.4.1.45724.1.1.4")


class CredentialVerifier:
    """Capability interface used by the ceremony orchestrator."""

    def verify_registration(self, response: Dict[str, Any], challenge: str, origin: str, rp_id: str) -> Credential:
        raise NotImplementedError

    def verify_authentication(
        self,
        response: Dict[str, Any],
        challenge: str,
        origin: str,
        rp_id: str,
        credentials: Iterable[Credential],
        user_handle: Optional[str] = None,
    ) -> AssertionResult:
        raise NotImplementedError


def _field(obj: Any, *path: str) -> Any:
    cur = obj
    for p in path:
        if not isinstance(cur, dict) or p not in cur:
            raise VerificationFailed(f"missing {'.'.join(path)}")
        cur = cur[p]
    return cur


def _b64_field(obj: Any, *path: str) -> bytes:
    try:
        return b64u_dec(_field(obj, *path))
    except (ValueError, binascii.Error) as e:
        raise VerificationFailed(f"bad base64url in {'.'.join(path)}") from e


def _response_credential_id(response: Dict[str, Any]) -> bytes:
    for key in ("id", "rawId"):
        if key in response and not isinstance(response[key], str):
            raise VerificationFailed(f"{key} is not a string")
    raw_id = response.get("rawId") or response.get("id")
    if not raw_id:
        raise VerificationFailed("missing credential id")
    if response.get("type", "public-key") != "public-key":
        raise VerificationFailed("wrong credential type")
    try:
        raw = b64u_dec(raw_id)
    except (ValueError, binascii.Error) as e:
        raise VerificationFailed("bad credential id") from e
    if response.get("id") and response.get("rawId") and response["id"].rstrip("=") != response["rawId"].rstrip("="):
        raise VerificationFailed("id and rawId differ")
    return raw


class WebAuthnVerifier(CredentialVerifier):
    """
    policy:
      compat - user verification preferred; "none" attestation accepted;
               unknown attestation formats accepted without statement checks.
      strict - user verification required; only verifiable attestation
               statements ("packed") are accepted.
    """

    def __init__(self, policy: str = "compat"):
        self.policy = policy

    @property
    def require_uv(self) -> bool:
        return self.policy == "strict"

    # ---- shared checks ----------------------------------------------------

    def _client_data(self, response: Dict[str, Any], expected_type: str, challenge: str, origin: str) -> Tuple[bytes, Dict[str, Any]]:
        raw = _b64_field(response, "response", "clientDataJSON")
        try:
            client = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise VerificationFailed("bad clientDataJSON") from e
        if not isinstance(client, dict):
            raise VerificationFailed("bad clientDataJSON")
        if client.get("type") != expected_type:
            raise VerificationFailed("wrong clientData type")
        if client.get("challenge") != challenge:
            raise VerificationFailed("challenge mismatch")
        if client.get("origin") != origin:
            raise VerificationFailed("origin mismatch")
        if client.get("crossOrigin") is True:
            raise VerificationFailed("cross-origin ceremony")
        return raw, client

    def _check_auth_data(self, info: Dict[str, Any], rp_id: str) -> None:
        if info["rpIdHash"] != hashlib.sha256(rp_id.encode()).digest():
            raise VerificationFailed("rpIdHash mismatch")
        if (info["flags"] & FLAG_UP) == 0:
            raise VerificationFailed("user not present")
        if self.require_uv and (info["flags"] & FLAG_UV) == 0:
            raise VerificationFailed("user verification required")

    # ---- registration -----------------------------------------------------

    def verify_registration(self, response: Dict[str, Any], challenge: str, origin: str, rp_id: str) -> Credential:
        if not isinstance(response, dict):
            raise VerificationFailed("response is not an object")
        client_raw, _ = self._client_data(response, "webauthn.create", challenge, origin)

        try:
            att = cbor2.loads(_b64_field(response, "response", "attestationObject"))
        except (cbor2.CBORDecodeError, ValueError) as e:
            raise VerificationFailed("bad attestationObject") from e
        if not isinstance(att, dict) or not isinstance(att.get("authData"), bytes):
            raise VerificationFailed("attestationObject missing authData")
        auth_data = att["authData"]
        fmt = att.get("fmt")
        att_stmt = att.get("attStmt") or {}
        if not isinstance(att_stmt, dict):
            raise VerificationFailed("attStmt is not a map")

        info = parse_authenticator_data(auth_data)
        self._check_auth_data(info, rp_id)
        if (info["flags"] & FLAG_AT) == 0:
            raise VerificationFailed("missing attested credential data")
        if info["credId"] != _response_credential_id(response):
            raise VerificationFailed("credential id mismatch")

        jwk = cose_to_jwk(info["rest"])
        client_hash = hashlib.sha256(client_raw).digest()
        self._verify_attestation(fmt, att_stmt, auth_data, client_hash, jwk, info["aaguid"])

        transports = _field(response, "response").get("transports") or response.get("transports") or []
        if not isinstance(transports, list):
            transports = []
        flags = info["flags"]
        return Credential(
            credential_id=b64u(info["credId"]),
            public_key=jwk,
            signature_counter=info["signCount"],
            transports=[str(t) for t in transports],
            aaguid=info["aaguid"].hex(),
            attestation_format=fmt,
            user_verified=bool(flags & FLAG_UV),
            backup_eligible=bool(flags & FLAG_BE),
            backed_up=bool(flags & FLAG_BS),
            created_at=now(),
        )

    def _verify_attestation(self, fmt: Any, att_stmt: Dict[str, Any], auth_data: bytes, client_hash: bytes, jwk: Dict[str, Any], aaguid: bytes) -> None:
        if fmt == "none":
            if att_stmt:
                raise VerificationFailed("none attestation carries a statement")
            if self.policy == "strict":
                raise VerificationFailed("attestation required")
            return
        if fmt == "packed":
            self._verify_packed(att_stmt, auth_data + client_hash, jwk, aaguid)
            return
        if self.policy == "strict":
            raise VerificationFailed(f"unsupported attestation format {fmt!r}")
        log.warning("Accepting unverified attestation format %r under compat policy", fmt)

    def _verify_packed(self, att_stmt: Dict[str, Any], signed: bytes, jwk: Dict[str, Any], aaguid: bytes) -> None:
        alg_id = att_stmt.get("alg")
        alg = _ALG_NAMES.get(alg_id) if isinstance(alg_id, int) else None
        sig = att_stmt.get("sig")
        if not alg or not isinstance(sig, bytes):
            raise VerificationFailed("packed: bad alg/sig")
        x5c = att_stmt.get("x5c")
        if x5c:
            if not isinstance(x5c, list) or not isinstance(x5c[0], bytes):
                raise VerificationFailed("packed: x5c is not a list of certificates")
            try:
                leaf = x509.load_der_x509_certificate(x5c[0])
            except (ValueError, TypeError) as e:
                raise VerificationFailed("packed: bad x5c") from e
            verify_signature(leaf.public_key(), alg, sig, signed)
            try:
                ext = leaf.extensions.get_extension_for_oid(_AAGUID_OID).value
            except x509.ExtensionNotFound:
                ext = None
            # extension value is an OCTET STRING wrapping the 16 AAGUID bytes
            if ext is not None and getattr(ext, "value", b"")[-16:] != aaguid:
                raise VerificationFailed("certificate AAGUID != authData AAGUID")
            return
        # self attestation: signed by the credential key itself
        pub, cred_alg = jwk_to_public_key(jwk)
        if cred_alg != alg:
            raise VerificationFailed("packed self attestation alg mismatch")
        verify_signature(pub, alg, sig, signed)

    # ---- authentication ---------------------------------------------------

    def verify_authentication(
        self,
        response: Dict[str, Any],
        challenge: str,
        origin: str,
        rp_id: str,
        credentials: Iterable[Credential],
        user_handle: Optional[str] = None,
    ) -> AssertionResult:
        if not isinstance(response, dict):
            raise VerificationFailed("response is not an object")
        cred_id = b64u(_response_credential_id(response))
        cred = next((c for c in credentials if c.credential_id == cred_id), None)
        if cred is None:
            raise VerificationFailed("credential not in allow list")

        client_raw, _ = self._client_data(response, "webauthn.get", challenge, origin)
        auth_data = _b64_field(response, "response", "authenticatorData")
        info = parse_authenticator_data(auth_data)
        self._check_auth_data(info, rp_id)

        returned_handle = _field(response, "response").get("userHandle")
        if returned_handle is not None and not isinstance(returned_handle, str):
            raise VerificationFailed("userHandle is not a string")
        if returned_handle and user_handle and returned_handle.rstrip("=") != user_handle:
            raise VerificationFailed("userHandle mismatch")

        sig = _b64_field(response, "response", "signature")
        pub, alg = jwk_to_public_key(cred.public_key)
        verify_signature(pub, alg, sig, auth_data + hashlib.sha256(client_raw).digest())

        flags = info["flags"]
        return AssertionResult(
            credential_id=cred_id,
            new_counter=info["signCount"],
            user_verified=bool(flags & FLAG_UV),
            backed_up=bool(flags & FLAG_BS),
        )
