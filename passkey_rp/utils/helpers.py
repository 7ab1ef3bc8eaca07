# passkey_rp/utils/helpers.py
import base64
import io
import logging
import struct
import time
from typing import Any, Dict, Tuple

import cbor2
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa, padding, ed25519

from passkey_rp.core.errors import VerificationFailed

log = logging.getLogger(__name__)

# authenticator data flags
FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_BE = 0x08
FLAG_BS = 0x10
FLAG_AT = 0x40
FLAG_ED = 0x80

# COSE algorithm identifiers we accept, in order of preference
COSE_ES256 = -7
COSE_EDDSA = -8
COSE_RS256 = -257
SUPPORTED_ALGS = (COSE_ES256, COSE_EDDSA, COSE_RS256)


# -------- Base64 utilities --------
def b64u(data: bytes) -> str:
    """Base64url encode bytes to string."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def b64u_dec(s: str) -> bytes:
    """Base64url decode string to bytes."""
    if not isinstance(s, str):
        raise ValueError("expected base64url text")
    pad = '=' * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode())


# -------- Time utility --------
def now() -> int:
    """Get current timestamp."""
    return int(time.time())


# -------- Passkey / WebAuthn utilities --------
def cose_to_jwk(cbor_bytes: bytes) -> dict:
    """Convert COSE key to JWK format"""
    try:
        m = cbor2.loads(cbor_bytes)
    except (cbor2.CBORDecodeError, ValueError) as e:
        raise VerificationFailed(f"bad COSE key: {e}") from e
    if not isinstance(m, dict):
        raise VerificationFailed("COSE key is not a map")
    kty = m.get(1)  # 1=OKP, 2=EC2, 3=RSA
    alg = m.get(3)
    if kty == 2:  # EC2
        crv = m.get(-1); x = m.get(-2); y = m.get(-3)
        if crv != 1 or alg not in (None, COSE_ES256):
            raise VerificationFailed("unsupported EC curve")
        if not isinstance(x, bytes) or not isinstance(y, bytes) or len(x) != 32 or len(y) != 32:
            raise VerificationFailed("bad EC coordinates")
        return {"kty": "EC", "crv": "P-256", "x": b64u(x), "y": b64u(y), "alg": "ES256"}
    if kty == 3:  # RSA
        n = m.get(-1); e = m.get(-2)
        if alg not in (None, COSE_RS256) or not isinstance(n, bytes) or not isinstance(e, bytes):
            raise VerificationFailed("unsupported RSA key")
        return {"kty": "RSA", "n": b64u(n), "e": b64u(e), "alg": "RS256"}
    if kty == 1:  # OKP (Ed25519)
        crv = m.get(-1); x = m.get(-2)
        if crv == 6 and isinstance(x, bytes) and len(x) == 32:
            return {"kty": "OKP", "crv": "Ed25519", "x": b64u(x), "alg": "EdDSA"}
        raise VerificationFailed("unsupported OKP curve")
    raise VerificationFailed("unsupported COSE key")


def jwk_to_public_key(jwk: dict):
    """Convert JWK to cryptography public key object

    Returns:
        Tuple of (public_key, algorithm_name)
    """
    try:
        if jwk.get("kty") == "EC" and jwk.get("crv") == "P-256":
            x = int.from_bytes(b64u_dec(jwk["x"]), "big")
            y = int.from_bytes(b64u_dec(jwk["y"]), "big")
            numbers = ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1())
            return numbers.public_key(), "ES256"
        if jwk.get("kty") == "RSA":
            n = int.from_bytes(b64u_dec(jwk["n"]), "big")
            e = int.from_bytes(b64u_dec(jwk["e"]), "big")
            pub = rsa.RSAPublicNumbers(e, n).public_key()
            return pub, "RS256"
        if jwk.get("kty") == "OKP" and jwk.get("crv") == "Ed25519":
            pub = ed25519.Ed25519PublicKey.from_public_bytes(b64u_dec(jwk["x"]))
            return pub, "EdDSA"
    except (KeyError, ValueError) as e:
        raise VerificationFailed(f"bad JWK: {e}") from e
    raise VerificationFailed("unsupported JWK")


_KEY_TYPES = {
    "ES256": ec.EllipticCurvePublicKey,
    "RS256": rsa.RSAPublicKey,
    "EdDSA": ed25519.Ed25519PublicKey,
}


def verify_signature(pub, alg: str, sig: bytes, msg: bytes) -> None:
    """Check `sig` over `msg`; raises VerificationFailed on any mismatch."""
    expected = _KEY_TYPES.get(alg)
    if expected is None:
        raise VerificationFailed(f"unsupported alg {alg}")
    if not isinstance(pub, expected):
        raise VerificationFailed(f"{type(pub).__name__} cannot verify {alg}")
    try:
        if alg == "ES256":
            pub.verify(sig, msg, ec.ECDSA(hashes.SHA256()))
        elif alg == "RS256":
            pub.verify(sig, msg, padding.PKCS1v15(), hashes.SHA256())
        else:
            pub.verify(sig, msg)
    except (InvalidSignature, ValueError) as e:
        raise VerificationFailed("signature verify failed") from e


def parse_authenticator_data(ad: bytes) -> Dict[str, Any]:
    """Parse WebAuthn authenticator data

    Returns dict with:
        - rpIdHash: bytes
        - flags: int
        - signCount: int
        - aaguid: bytes (if AT flag set)
        - credId: bytes (if AT flag set)
        - rest: bytes (remaining data after credId, typically COSE key)
    """
    if not isinstance(ad, (bytes, bytearray)) or len(ad) < 37:
        raise VerificationFailed("authData too short")
    ad = bytes(ad)
    rpIdHash = ad[0:32]
    flags = ad[32]
    signCount = struct.unpack(">I", ad[33:37])[0]
    off = 37
    res: Dict[str, Any] = {"rpIdHash": rpIdHash, "flags": flags, "signCount": signCount}
    if flags & FLAG_AT:
        if len(ad) < off + 16 + 2:
            raise VerificationFailed("attestedCredentialData truncated")
        aaguid = ad[off:off+16]; off += 16
        cred_len = struct.unpack(">H", ad[off:off+2])[0]; off += 2
        if cred_len == 0 or len(ad) < off + cred_len:
            raise VerificationFailed("credential id truncated")
        credId = ad[off:off+cred_len]; off += cred_len
        res.update({"aaguid": aaguid, "credId": credId})
        # The COSE key may be followed by an extensions map (ED flag); split on CBOR item boundary.
        res["rest"], res["extensions"] = _split_cose_key(ad[off:], bool(flags & FLAG_ED))
    return res


def _split_cose_key(tail: bytes, has_extensions: bool) -> Tuple[bytes, bytes]:
    if not has_extensions:
        return tail, b""
    buf = io.BytesIO(tail)
    try:
        cbor2.CBORDecoder(buf).decode()
    except (cbor2.CBORDecodeError, ValueError) as e:
        raise VerificationFailed(f"bad credential public key: {e}") from e
    cut = buf.tell()
    return tail[:cut], tail[cut:]
