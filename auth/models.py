"""
auth/models.py -- Domain dataclasses and enums for the OAuth token exchange.

Pattern: Data class (pure data container). Dataclasses own domain shape; the
store maps rows into them and the session/token modules do the work. The one
exception is Session, which carries the two "verified" queries because they
are pure functions of its own fields.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class OAuthState(str, Enum):
    """Protocol outcome of a single validated call.

    The value is the problem name from the OAuth problem-reporting extension,
    so it can go straight into a WWW-Authenticate header or an error code.
    """

    OK = "ok"
    INVALID_SIGNATURE = "signature_invalid"
    BAD_NONCE = "nonce_used"
    BAD_TIMESTAMP = "timestamp_refused"
    CONSUMER_KEY_UNKNOWN = "consumer_key_unknown"
    CONSUMER_KEY_REFUSED = "consumer_key_refused"
    TOKEN_REJECTED = "token_rejected"
    TOKEN_EXPIRED = "token_expired"
    VERIFIER_INVALID = "verifier_invalid"


class ValidationMode(str, Enum):
    REGISTER = "register"
    INVALIDATE = "invalidate"
    REQUEST = "request"
    AUTHORIZE = "authorize"
    ACCESS = "access"
    USE = "use"

    @classmethod
    def parse(cls, value: str | ValidationMode | None) -> ValidationMode:
        """Map a mode string to a member. Unknown or empty values mean USE."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.USE


class VerificationMode(str, Enum):
    AUTO = "auto"
    USER_AUTHORIZED = "user-authorized"


class TokenScope(str, Enum):
    """Which token table a nonce record belongs to."""

    REQUEST = "request"
    ACCESS = "access"


@dataclass
class Consumer:
    """A registered calling application.

    consumer_secret is kept in clear text: HMAC-SHA1 and PLAINTEXT signature
    verification both need the raw secret. rsa_public_key is only set for
    consumers that sign with RSA-SHA1.
    """

    consumer_key: str
    consumer_secret: str
    verification_mode: VerificationMode = VerificationMode.AUTO
    id: int | None = None
    rsa_public_key: str | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class User:
    """A resource owner that can authorize request tokens.

    password_hash is sha1(email + password) as a hex string. Consumers derive
    the credential proof from it, so the storage format is part of the wire
    contract and cannot be swapped for a salted hash without breaking them.
    """

    email: str
    password_hash: str
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class RequestToken:
    consumer_key: str
    token: str
    secret: str
    id: int | None = None
    created_at: str | None = None
    authorized_user_id: int | None = None
    verification_code: str | None = None

    @property
    def ready_for_exchange(self) -> bool:
        return self.authorized_user_id is not None and self.verification_code is not None


@dataclass
class AccessToken:
    consumer_key: str
    token: str
    secret: str
    user_id: int
    id: int | None = None
    created_at: str | None = None  # refreshed on every successful use


@dataclass
class NonceRecord:
    """One used nonce, scoped to exactly one request or access token of a consumer."""

    nonce: str
    consumer_id: int
    scope: TokenScope
    token_id: int


@dataclass
class Session:
    """Per-call protocol state. Created by SessionStateMachine, discarded after the call.

    Nothing here is persisted or shared between calls; the store is the only
    shared resource.
    """

    mode: ValidationMode = ValidationMode.USE
    state: OAuthState = OAuthState.OK
    consumer: Consumer | None = None
    request_token: RequestToken | None = None
    access_token: AccessToken | None = None
    user_id: int | None = None
    verification_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is OAuthState.OK

    def request_verified(self) -> bool:
        """True when the call validated a request token that a user has authenticated against."""
        rt = self.request_token
        return (
            self.ok
            and rt is not None
            and bool(rt.token)
            and bool(rt.secret)
            and self.user_id is not None
            and self.user_id > 0
        )

    def access_verified(self) -> bool:
        """True when the call validated an access token bound to a resolved user."""
        at = self.access_token
        return (
            self.ok
            and at is not None
            and bool(at.token)
            and bool(at.secret)
            and isinstance(self.user_id, int)
            and self.user_id > 0
        )

    def request_token_pair(self) -> dict[str, str]:
        rt = self.request_token
        if rt is None or not rt.token or not rt.secret:
            return {}
        return {"oauth_token": rt.token, "oauth_token_secret": rt.secret}

    def access_token_pair(self) -> dict[str, str]:
        at = self.access_token
        if at is None or not at.token or not at.secret:
            return {}
        return {"oauth_token": at.token, "oauth_token_secret": at.secret}
