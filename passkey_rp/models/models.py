"""
Domain Models and Data Structures
"""
from __future__ import annotations
import json
import uuid
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, Optional, List, Union

from passkey_rp.utils.helpers import b64u


@dataclass(frozen=True)
class UserIdentity:
    """Stable identity behind a username. `id` is a UUID4 string."""
    id: str
    username: str

    @property
    def user_handle(self) -> str:
        """WebAuthn user.id / userHandle: base64url of the 16 raw UUID bytes."""
        return b64u(uuid.UUID(self.id).bytes)


@dataclass
class Credential:
    """A registered passkey, owned by exactly one user."""
    credential_id: str                  # base64url of the raw credential id
    public_key: Dict[str, Any]          # JWK
    signature_counter: int = 0
    transports: List[str] = field(default_factory=list)
    aaguid: Optional[str] = None
    attestation_format: Optional[str] = None
    user_verified: bool = False
    backup_eligible: bool = False
    backed_up: bool = False
    created_at: int = 0
    last_used_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Credential":
        return cls(
            credential_id=d["credential_id"],
            public_key=d["public_key"],
            signature_counter=int(d.get("signature_counter") or 0),
            transports=list(d.get("transports") or []),
            aaguid=d.get("aaguid"),
            attestation_format=d.get("attestation_format"),
            user_verified=bool(d.get("user_verified", False)),
            backup_eligible=bool(d.get("backup_eligible", False)),
            backed_up=bool(d.get("backed_up", False)),
            created_at=int(d.get("created_at") or 0),
            last_used_at=d.get("last_used_at"),
        )

    def descriptor(self) -> "CredentialDescriptor":
        return CredentialDescriptor(self.credential_id, list(self.transports))


@dataclass(frozen=True)
class CredentialDescriptor:
    credential_id: str
    transports: List[str] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        """PublicKeyCredentialDescriptor for exclude/allow lists."""
        out: Dict[str, Any] = {"type": "public-key", "id": self.credential_id}
        if self.transports:
            out["transports"] = list(self.transports)
        return out


@dataclass(frozen=True)
class RegistrationChallenge:
    challenge: str                      # base64url nonce
    user_id: str
    exclude_list: List[CredentialDescriptor]
    created_at: int
    expires_at: int

    kind = "registration"


@dataclass(frozen=True)
class AuthenticationChallenge:
    challenge: str
    user_id: str
    allow_list: List[CredentialDescriptor]
    created_at: int
    expires_at: int

    kind = "authentication"


CeremonyState = Union[RegistrationChallenge, AuthenticationChallenge]


def dump_ceremony(state: CeremonyState) -> str:
    listed = state.exclude_list if isinstance(state, RegistrationChallenge) else state.allow_list
    body = {
        "type": state.kind,
        "challenge": state.challenge,
        "user_id": state.user_id,
        "credentials": [{"id": d.credential_id, "transports": list(d.transports)} for d in listed],
        "created_at": state.created_at,
        "expires_at": state.expires_at,
    }
    return json.dumps(body, separators=(",", ":"))


def load_ceremony(raw: str) -> CeremonyState:
    """Inverse of dump_ceremony. Raises ValueError/KeyError on unknown shapes."""
    d = json.loads(raw)
    listed = [CredentialDescriptor(c["id"], list(c.get("transports") or [])) for c in d.get("credentials") or []]
    common = dict(
        challenge=d["challenge"],
        user_id=d["user_id"],
        created_at=int(d["created_at"]),
        expires_at=int(d["expires_at"]),
    )
    if d["type"] == RegistrationChallenge.kind:
        return RegistrationChallenge(exclude_list=listed, **common)
    if d["type"] == AuthenticationChallenge.kind:
        return AuthenticationChallenge(allow_list=listed, **common)
    raise ValueError(f"unknown ceremony type {d['type']!r}")


@dataclass(frozen=True)
class AssertionResult:
    """What the verifier reports after a good assertion."""
    credential_id: str
    new_counter: int
    user_verified: bool = False
    backed_up: bool = False
