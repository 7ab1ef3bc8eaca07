"""
Software WebAuthn authenticator for tests.

Produces registration and assertion responses in the JSON shape the browser
script posts to the server, signed with real keys (ES256 or Ed25519), so the
full verifier path runs without hardware.
"""
import hashlib
import json
import os
import struct
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass, field
from typing import Dict, Optional

import cbor2
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.hazmat.primitives.hashes import SHA256


def b64url(data: bytes) -> str:
    return urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    return urlsafe_b64decode(s + "=" * (-len(s) % 4))


def _cose_key(private_key) -> Dict[int, object]:
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        raw = private_key.public_key().public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
        return {1: 1, 3: -8, -1: 6, -2: raw}
    numbers = private_key.public_key().public_numbers()
    return {1: 2, 3: -7, -1: 1, -2: numbers.x.to_bytes(32, "big"), -3: numbers.y.to_bytes(32, "big")}


def _sign(private_key, data: bytes) -> bytes:
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return private_key.sign(data)
    return private_key.sign(data, ec.ECDSA(SHA256()))


@dataclass
class StoredKey:
    credential_id: bytes
    private_key: object
    rp_id: str
    user_handle: Optional[str]
    sign_count: int = 0


@dataclass
class SoftAuthenticator:
    """
    alg:        "ES256" or "EdDSA"
    counting:   increment the signature counter on every assertion; False
                models authenticators that always report 0
    attestation: "none" or "packed" (self attestation)
    backed_up:  report the credential as backup eligible and backed up
    """
    alg: str = "ES256"
    counting: bool = True
    attestation: str = "none"
    user_verifying: bool = True
    backed_up: bool = False
    aaguid: bytes = b"\x00" * 16
    keys: Dict[bytes, StoredKey] = field(default_factory=dict)

    def _new_key(self):
        if self.alg == "EdDSA":
            return ed25519.Ed25519PrivateKey.generate()
        return ec.generate_private_key(ec.SECP256R1())

    def _flags(self, extra: int = 0) -> int:
        return 0x01 | (0x04 if self.user_verifying else 0) | (0x18 if self.backed_up else 0) | extra

    @staticmethod
    def client_data(kind: str, challenge: str, origin: str) -> bytes:
        return json.dumps(
            {"type": kind, "challenge": challenge, "origin": origin, "crossOrigin": False},
            separators=(",", ":"),
        ).encode()

    def create(self, public_key: dict, origin: str, credential_id: Optional[bytes] = None) -> dict:
        """navigator.credentials.create() against the server's creation options."""
        rp_id = public_key["rp"]["id"]
        credential_id = credential_id or os.urandom(32)
        private_key = self._new_key()
        self.keys[credential_id] = StoredKey(credential_id, private_key, rp_id, public_key["user"]["id"])

        client_data = self.client_data("webauthn.create", public_key["challenge"], origin)
        auth_data = (
            hashlib.sha256(rp_id.encode()).digest()
            + struct.pack(">BI", self._flags(0x40), 0)
            + self.aaguid
            + struct.pack(">H", len(credential_id))
            + credential_id
            + cbor2.dumps(_cose_key(private_key))
        )
        if self.attestation == "packed":
            sig = _sign(private_key, auth_data + hashlib.sha256(client_data).digest())
            att_stmt = {"alg": -8 if self.alg == "EdDSA" else -7, "sig": sig}
        else:
            att_stmt = {}
        attestation_object = cbor2.dumps({"fmt": self.attestation, "attStmt": att_stmt, "authData": auth_data})
        return {
            "id": b64url(credential_id),
            "rawId": b64url(credential_id),
            "type": "public-key",
            "authenticatorAttachment": "platform",
            "clientExtensionResults": {},
            "response": {
                "clientDataJSON": b64url(client_data),
                "attestationObject": b64url(attestation_object),
                "transports": ["internal"],
            },
        }

    def get(self, public_key: dict, origin: str, credential_id: Optional[bytes] = None,
            sign_count: Optional[int] = None) -> dict:
        """navigator.credentials.get() against the server's request options."""
        if credential_id is None:
            for desc in public_key.get("allowCredentials", []):
                cid = b64url_decode(desc["id"])
                if cid in self.keys:
                    credential_id = cid
                    break
        if credential_id is None or credential_id not in self.keys:
            raise ValueError("No matching credential found for assertion")

        stored = self.keys[credential_id]
        if sign_count is not None:
            stored.sign_count = sign_count
        elif self.counting:
            stored.sign_count += 1

        client_data = self.client_data("webauthn.get", public_key["challenge"], origin)
        auth_data = hashlib.sha256(stored.rp_id.encode()).digest() + struct.pack(">BI", self._flags(), stored.sign_count)
        signature = _sign(stored.private_key, auth_data + hashlib.sha256(client_data).digest())
        return {
            "id": b64url(credential_id),
            "rawId": b64url(credential_id),
            "type": "public-key",
            "clientExtensionResults": {},
            "response": {
                "clientDataJSON": b64url(client_data),
                "authenticatorData": b64url(auth_data),
                "signature": b64url(signature),
                "userHandle": stored.user_handle,
            },
        }
