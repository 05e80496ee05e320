"""
auth/tokens.py -- Token generation, user proof checks, and token lifecycle.

Security design decisions:
  Randomness: every token, secret and verification code is hex-encoded output
       of secrets.token_bytes(). Lengths come from Settings and have hard
       floors there (4 / 12 / 8 bytes).

  User proof: a consumer proves the user's password without sending it:

           password_hash = sha1(email + password)              (stored)
           proof         = sha1(request_token_secret + consumer_secret + password_hash)

       Both email and proof are used verbatim. Trimming would change the
       bytes the consumer hashed and break the comparison. The construction
       is kept for compatibility with existing consumers; an HMAC keyed with
       the token secret would be the natural replacement.

  Timing: unknown emails still run the proof comparison against
       _DUMMY_HASH, and the comparison itself is hmac.compare_digest, so
       response time does not reveal whether an email is registered.

  Expiry: tokens older than TIMEOUT_DELTA are deleted when seen, together
       with their nonces (one store transaction). Access tokens slide: every
       successful use moves their timestamp to now.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

from auth.models import OAuthState, Session, TokenScope
from auth.store import CredentialStore, parse_timestamp
from core.config import get_settings

logger = logging.getLogger("handshake.tokens")


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------


def generate_token(nbytes: int) -> str:
    """Return nbytes of CSPRNG output as lowercase hex."""
    return secrets.token_bytes(nbytes).hex()


def password_hash(email: str, password: str) -> str:
    """Stored password format: sha1(email + password) hex. Inputs must already be trimmed by the caller."""
    return hashlib.sha1((email + password).encode("utf-8")).hexdigest()  # noqa: S324 -- wire-compatible format


def credential_proof(request_token_secret: str, consumer_secret: str, stored_password_hash: str) -> str:
    """The proof a consumer submits when authenticating a user against a request token."""
    material = request_token_secret + consumer_secret + stored_password_hash
    return hashlib.sha1(material.encode("utf-8")).hexdigest()  # noqa: S324 -- wire-compatible format


# Timing equalization for unknown emails. Never matches a real proof because
# no stored hash is 40 'x' characters.
_DUMMY_HASH: str = "x" * 40


# ---------------------------------------------------------------------------
# Identity lookup
# ---------------------------------------------------------------------------


class IdentityVerifier(Protocol):
    def lookup(self, email: str) -> tuple[int, str] | None:
        """Return (user_id, stored_password_hash) for an active user, None otherwise."""
        ...


class StoreIdentityVerifier:
    """Resolve users from the credential store's users table."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def lookup(self, email: str) -> tuple[int, str] | None:
        user = self.store.find_user_by_email(email)
        if user is None or not user.is_active or user.id is None:
            return None
        return user.id, user.password_hash


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """Issue, bind, exchange, expire and revoke request and access tokens.

    Every method takes the per-call Session and updates it in place; the store
    is the only state shared between calls.
    """

    def __init__(
        self,
        store: CredentialStore,
        identity: IdentityVerifier | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.identity = identity or StoreIdentityVerifier(store)
        self.timeout = timedelta(seconds=settings.timeout_delta)
        self.token_bytes = settings.token_bytes
        self.secret_bytes = settings.secret_bytes
        self.verifier_bytes = settings.verifier_bytes
        self._clock = clock

    def _is_stale(self, created_at: str | None) -> bool:
        if not created_at:
            return False
        return self._clock() - parse_timestamp(created_at) > self.timeout

    # ------------------------------------------------------------------
    # Request tokens
    # ------------------------------------------------------------------

    def issue_request_token(self, session: Session) -> dict[str, str]:
        """Create and persist a request token for the session's consumer.

        Returns the oauth_token / oauth_token_secret pair for the response.
        """
        if session.consumer is None:
            raise ValueError("cannot issue a request token without a resolved consumer")
        token = generate_token(self.token_bytes)
        secret = generate_token(self.secret_bytes)
        token_id = self.store.insert_request_token(session.consumer.consumer_key, token, secret)
        session.request_token = self.store.find_request_token(session.consumer.consumer_key, token)
        if session.request_token is None or session.request_token.id != token_id:
            raise RuntimeError(f"request token {token_id} vanished right after insert")
        logger.info("Issued request token %d for consumer %s", token_id, session.consumer.consumer_key)
        return session.request_token_pair()

    def bind_user(self, session: Session, email: str, proof: str) -> bool:
        """Authenticate a user against the session's request token and persist the binding.

        Returns True on a matching proof. The session's user_id is set only on
        success; a failed attempt leaves any earlier binding untouched.
        """
        rt = session.request_token
        if session.consumer is None or rt is None or rt.id is None:
            return False

        identity = self.identity.lookup(email)
        stored_hash = identity[1] if identity is not None else _DUMMY_HASH
        expected = credential_proof(rt.secret, session.consumer.consumer_secret, stored_hash)
        matched = hmac.compare_digest(expected.encode("utf-8"), proof.encode("utf-8"))
        if identity is None or not matched:
            logger.info("User proof rejected for request token %d", rt.id)
            return False

        user_id = identity[0]
        self.store.bind_user(rt.id, user_id)
        rt.authorized_user_id = user_id
        session.user_id = user_id
        logger.info("User %d authenticated against request token %d", user_id, rt.id)
        return True

    def issue_verification_code(self, session: Session) -> str | None:
        """Generate the single active verification code for a user-bound request token.

        Returns None when no user is bound. Re-issuing replaces the old code.
        """
        rt = session.request_token
        user_id = session.user_id or (rt.authorized_user_id if rt is not None else None)
        if rt is None or rt.id is None or not user_id or user_id <= 0:
            return None
        code = generate_token(self.verifier_bytes)
        if not self.store.set_verification_code(rt.id, user_id, code):
            logger.info("Request token %d disappeared before a verifier could be stored", rt.id)
            return None
        rt.verification_code = code
        rt.authorized_user_id = user_id
        session.user_id = user_id
        session.verification_code = code
        return code

    def exchange_for_access_token(self, session: Session, verifier: str | None) -> OAuthState:
        """Swap a ready request token for a new access token.

        A verifier mismatch leaves the request token in place so the consumer
        can retry. On success the request token and its nonces are gone and
        the session carries the new access token.
        """
        rt = session.request_token
        if session.consumer is None or rt is None or rt.id is None:
            return OAuthState.TOKEN_REJECTED
        if (
            not verifier
            or not rt.ready_for_exchange
            or not hmac.compare_digest(str(rt.verification_code).encode("utf-8"), verifier.encode("utf-8"))
        ):
            logger.info("Verifier mismatch on request token %d", rt.id)
            return OAuthState.VERIFIER_INVALID

        user_id = rt.authorized_user_id
        token = generate_token(self.token_bytes)
        secret = generate_token(self.secret_bytes)
        access_id = self.store.exchange_request_token(
            rt.id, verifier, session.consumer.consumer_key, token, secret, user_id
        )
        if access_id is None:
            # Another call consumed the token, or the code was re-issued meanwhile.
            logger.info("Request token %d was consumed concurrently", rt.id)
            return OAuthState.VERIFIER_INVALID

        session.access_token = self.store.find_access_token(session.consumer.consumer_key, token)
        session.user_id = user_id
        logger.info("Exchanged request token %d for access token %d (user %d)", rt.id, access_id, user_id)
        return OAuthState.OK

    def revoke_request_token(self, request_token_id: int) -> bool:
        return self.store.delete_request_token(request_token_id)

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def revoke_access_token(self, consumer_key: str, token: str) -> bool:
        """Logout. Idempotent: revoking a missing token is a no-op that returns False."""
        removed = self.store.delete_access_token(consumer_key, token)
        if removed:
            logger.info("Revoked access token for consumer %s", consumer_key)
        return removed

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def expire_if_stale(self, session: Session) -> OAuthState:
        """Delete the session's token if it outlived TIMEOUT_DELTA; renew access tokens otherwise.

        Checks the access token when the session has one, else the request token.
        """
        at = session.access_token
        if at is not None and at.id is not None:
            if self._is_stale(at.created_at) and self.store.expire_access_token(at.id, at.created_at):
                logger.info("Access token %d expired", at.id)
                session.access_token = None
                return OAuthState.TOKEN_EXPIRED
            renewed = self.store.touch_access_token(at.id)
            if renewed is None:
                # Deleted between lookup and renewal (logout or expiry elsewhere).
                session.access_token = None
                return OAuthState.TOKEN_REJECTED
            at.created_at = renewed
            return OAuthState.OK

        rt = session.request_token
        if rt is not None and rt.id is not None:
            if self._is_stale(rt.created_at):
                self.store.expire_request_token(rt.id, rt.created_at)
                logger.info("Request token %d expired", rt.id)
                session.request_token = None
                return OAuthState.TOKEN_EXPIRED
        return OAuthState.OK

    def purge_expired(self) -> tuple[int, int]:
        """Sweep every token older than TIMEOUT_DELTA. Returns (request, access) counts."""
        return self.store.purge_expired(self._clock() - self.timeout)

    def scope_for(self, session: Session) -> tuple[TokenScope, int] | None:
        """The nonce scope for the token the session resolved, if any."""
        if session.access_token is not None and session.access_token.id is not None:
            return TokenScope.ACCESS, session.access_token.id
        if session.request_token is not None and session.request_token.id is not None:
            return TokenScope.REQUEST, session.request_token.id
        return None
