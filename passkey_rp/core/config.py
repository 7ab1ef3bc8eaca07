# passkey_rp/core/config.py
from __future__ import annotations
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Literal, Dict, Any
from urllib.parse import urlsplit
import yaml

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    # Relying party
    rp_id: str
    rp_origin: str
    rp_name: str
    # DB
    db_path: str
    # Ceremonies
    ceremony_ttl: int           # seconds a started ceremony stays redeemable
    ceremony_timeout_ms: int    # hint passed to the browser
    challenge_bytes: int
    # Passkeys / attestation
    passkeys_policy: Literal["compat", "strict"]
    # Logging
    log_level: str
    # Informational
    cfg_file_used: Optional[str] = None

    @property
    def user_verification(self) -> str:
        return "required" if self.passkeys_policy == "strict" else "preferred"

    @property
    def attestation(self) -> str:
        return "direct" if self.passkeys_policy == "strict" else "none"


_DEFAULTS: Dict[str, Any] = {
    "relying_party": {
        "id": "localhost",
        "origin": "http://localhost:8000",
        "name": "Passkeys Demo",
    },
    "db": {"path": "data/passkeys.db"},
    "ceremony": {"ttl_seconds": 300, "timeout_ms": 60000, "challenge_bytes": 32},
    "passkeys": {"policy": "compat"},
    "logging": {"level": "INFO"},
}

_SEARCH_ORDER = (
    "passkeys.yaml",
    "passkeys.yml",
    "passkeys.dev.yaml",
)

MIN_CHALLENGE_BYTES = 16


def _merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def _resolve_path(s: str, base_dir: Path) -> Optional[Path]:
    """
    Try multiple resolution strategies for a relative path:
    - as given relative to CWD
    - relative to the project root
    - relative to the parent of the project root
    Return first existing path; else None.
    """
    p = Path(s)
    if p.is_absolute():
        return p if p.exists() else None
    candidates = [
        Path.cwd() / p,
        base_dir / p,
        base_dir.parent / p,
        p,  # raw relative
    ]
    for c in candidates:
        if c.exists():
            return c
    return None


def _substitute_env_vars(obj: Any) -> Any:
    """Replace "${VAR_NAME}" string values with the environment value, if set."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        env_value = os.getenv(obj[2:-1])
        if env_value:
            return env_value
        log.warning("Environment variable %s not set, keeping placeholder", obj[2:-1])
    return obj


def _normalize_origin(origin: str) -> str:
    parts = urlsplit(origin)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"relying_party.origin must be scheme://host[:port], got {origin!r}")
    if parts.path not in ("", "/") or parts.query or parts.fragment:
        raise ValueError(f"relying_party.origin must not carry a path, got {origin!r}")
    return f"{parts.scheme}://{parts.netloc.lower()}"


def load_settings(path: Optional[str] = None) -> Settings:
    """
    Load YAML settings with sensible overrides:

    Priority:
      1) explicit `path` arg (absolute or relative)
      2) env PASSKEYS_CONFIG (absolute or relative; robustly resolved)
      3) search order in project root: passkeys.yaml|yml|passkeys.dev.yaml
    """
    base_dir = Path(__file__).resolve().parent.parent.parent  # project root
    cfg_file_used: Optional[Path] = None

    if path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = _resolve_path(path, base_dir) or candidate
        if not candidate or not candidate.exists():
            raise FileNotFoundError(f"Config file not found: {candidate}")
        cfg_file_used = candidate
    else:
        env_cfg = os.getenv("PASSKEYS_CONFIG")
        if env_cfg:
            candidate = _resolve_path(env_cfg, base_dir)
            if not candidate:
                tried = [
                    str(Path(env_cfg)),
                    str(base_dir / env_cfg),
                    str(base_dir.parent / env_cfg),
                    str(Path.cwd() / env_cfg),
                ]
                raise FileNotFoundError(
                    "PASSKEYS_CONFIG not found. Tried: " + ", ".join(tried)
                )
            cfg_file_used = candidate
        else:
            for name in _SEARCH_ORDER:
                p = base_dir / name
                if p.exists():
                    cfg_file_used = p
                    break

    data: Dict[str, Any] = {}
    if cfg_file_used:
        with open(cfg_file_used, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        data = _substitute_env_vars(data)
        log.info("Loaded config from: %s", str(cfg_file_used))

    cfg = _merge(_DEFAULTS, data)
    rp = cfg.get("relying_party") or {}
    ceremony = cfg.get("ceremony") or {}

    # Normalize db path; ":memory:" is passed through untouched
    db_path = (cfg.get("db") or {}).get("path") or "data/passkeys.db"
    if db_path != ":memory:":
        dbp = Path(db_path)
        if not dbp.is_absolute():
            dbp = base_dir / dbp
        db_path = str(dbp)

    policy = str((cfg.get("passkeys") or {}).get("policy") or "compat").lower()
    if policy not in ("compat", "strict"):
        raise ValueError(f"passkeys.policy must be 'compat' or 'strict', got {policy!r}")

    challenge_bytes = int(ceremony.get("challenge_bytes", 32))
    if challenge_bytes < MIN_CHALLENGE_BYTES:
        raise ValueError(f"ceremony.challenge_bytes must be at least {MIN_CHALLENGE_BYTES}")

    rp_id = str(rp.get("id") or "localhost").lower()
    rp_origin = _normalize_origin(str(rp.get("origin") or "http://localhost:8000"))
    if urlsplit(rp_origin).hostname != rp_id and not urlsplit(rp_origin).hostname.endswith("." + rp_id):
        raise ValueError(f"relying_party.id {rp_id!r} is not a registrable suffix of origin {rp_origin!r}")

    return Settings(
        rp_id=rp_id,
        rp_origin=rp_origin,
        rp_name=str(rp.get("name") or "Passkeys Demo"),
        db_path=db_path,
        ceremony_ttl=int(ceremony.get("ttl_seconds", 300)),
        ceremony_timeout_ms=int(ceremony.get("timeout_ms", 60000)),
        challenge_bytes=challenge_bytes,
        passkeys_policy=policy,  # type: ignore[arg-type]
        log_level=str((cfg.get("logging") or {}).get("level") or "INFO").upper(),
        cfg_file_used=str(cfg_file_used) if cfg_file_used else None,
    )
