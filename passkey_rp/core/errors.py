# passkey_rp/core/errors.py
"""
Failure taxonomy for the ceremony core.

Every error is terminal for the ceremony attempt that raised it; callers
restart from the matching start_* operation. Messages are for logs only and
are never echoed to clients.
"""


class PasskeyError(Exception):
    pass


class MalformedRequest(PasskeyError):
    pass


class StorageUnavailable(PasskeyError):
    pass


class UnknownUser(PasskeyError):
    pass


class CeremonySessionNotFound(PasskeyError):
    """No live ceremony for the user: never started, expired, or already consumed."""


class CeremonyTypeMismatch(PasskeyError):
    pass


class VerificationFailed(PasskeyError):
    pass


class DuplicateCredential(PasskeyError):
    pass


class CredentialAlreadyRegistered(PasskeyError):
    pass


class CredentialNotFound(PasskeyError):
    pass


class CounterRegression(PasskeyError):
    def __init__(self, credential_id: str, stored: int, reported: int):
        super().__init__(
            f"signature counter did not advance for {credential_id[:16]}: stored={stored} reported={reported}"
        )
        self.credential_id = credential_id
        self.stored = stored
        self.reported = reported


class NoCredentialsRegistered(PasskeyError):
    pass
