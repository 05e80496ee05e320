"""
auth/session.py -- The OAuth session state machine.

One call to SessionStateMachine.validate() handles one inbound request:

    resolve_consumer -> resolve_token -> check_replay -> signature -> transition

The three pipeline steps are always invoked in that order. Consumer
resolution precedes token resolution because tokens are looked up by
(consumer_key, token). The replay guard precedes the signature check so a
stale or replayed request never reaches the signature path.

Mode transitions after a passing signature:
  REQUEST    issue a request token
  AUTHORIZE  nothing; the caller binds a user (TokenManager.bind_user) and
             issues the verification code
  ACCESS     exchange the request token for an access token
  USE        expire-or-renew the access token
REGISTER and INVALIDATE skip the pipeline entirely.

INVALIDATE revokes the access token named by (consumer_key, token) without a
nonce or signature check. Anyone who knows a token value and its consumer key
can therefore log that token out. Token values are never exposed outside the
signed responses that issue them, and logout cannot grant access, so the
exposure is limited to a forced re-authorization.

Outcomes are OAuthState values on the returned Session. Store errors are
faults and propagate as exceptions.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from authlib.oauth1.rfc5849.errors import OAuth1Error

from auth.models import OAuthState, Session, ValidationMode
from auth.replay import ReplayGuard
from auth.signature import SignatureVerifier, SignedCall
from auth.store import CredentialStore
from auth.tokens import TokenManager

logger = logging.getLogger("handshake.session")

RegisterHook = Callable[[Session, SignedCall], OAuthState]


class SessionStateMachine:
    """Drive consumer lookup, replay guarding, signature checks and token transitions.

    Usage:
        machine = SessionStateMachine(store, OAuth1SignatureVerifier())
        session = machine.validate(ValidationMode.USE, signed_call)
        if session.access_verified(): ...
    """

    def __init__(
        self,
        store: CredentialStore,
        signatures: SignatureVerifier,
        tokens: TokenManager | None = None,
        replay: ReplayGuard | None = None,
        register_hook: RegisterHook | None = None,
    ) -> None:
        self.store = store
        self.signatures = signatures
        self.tokens = tokens or TokenManager(store)
        self.replay = replay or ReplayGuard(store)
        self.register_hook = register_hook

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def validate(self, mode: ValidationMode | str | None, call: SignedCall) -> Session:
        session = Session(mode=ValidationMode.parse(mode))

        if session.mode is ValidationMode.REGISTER:
            session.state = self.register_hook(session, call) if self.register_hook else OAuthState.OK
            return session
        if session.mode is ValidationMode.INVALIDATE:
            self._invalidate(session, call)
            return session

        for step in (self.resolve_consumer, self.resolve_token, self.check_replay, self.verify_signature):
            session.state = step(session, call)
            if session.state is not OAuthState.OK:
                logger.info(
                    "%s call from consumer %s stopped at %s: %s",
                    session.mode.value,
                    call.consumer_key,
                    step.__name__,
                    session.state.value,
                )
                return session

        session.state = self._transition(session, call)
        return session

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def resolve_consumer(self, session: Session, call: SignedCall) -> OAuthState:
        if not call.consumer_key:
            return OAuthState.CONSUMER_KEY_UNKNOWN
        consumer = self.store.find_consumer_by_key(call.consumer_key)
        if consumer is None:
            return OAuthState.CONSUMER_KEY_UNKNOWN
        if not consumer.is_active:
            return OAuthState.CONSUMER_KEY_REFUSED
        session.consumer = consumer
        return OAuthState.OK

    def resolve_token(self, session: Session, call: SignedCall) -> OAuthState:
        mode = session.mode
        if mode is ValidationMode.REQUEST:
            return OAuthState.OK
        if not call.token:
            return OAuthState.TOKEN_REJECTED

        consumer_key = session.consumer.consumer_key
        if mode is ValidationMode.USE:
            session.access_token = self.store.find_access_token(consumer_key, call.token)
            if session.access_token is None:
                return OAuthState.TOKEN_REJECTED
            session.user_id = session.access_token.user_id
            return OAuthState.OK

        # AUTHORIZE and ACCESS both operate on a pending request token.
        rt = self.store.find_request_token(consumer_key, call.token)
        if rt is None:
            return OAuthState.TOKEN_REJECTED
        session.request_token = rt
        state = self.tokens.expire_if_stale(session)
        if state is not OAuthState.OK:
            return state
        session.user_id = rt.authorized_user_id
        session.verification_code = rt.verification_code

        if mode is ValidationMode.ACCESS:
            verified = (
                self.store.find_request_token_by_verifier(consumer_key, call.token, call.verifier)
                if call.verifier
                else None
            )
            if verified is None or not verified.ready_for_exchange:
                return OAuthState.VERIFIER_INVALID
        return OAuthState.OK

    def check_replay(self, session: Session, call: SignedCall) -> OAuthState:
        scope = self.tokens.scope_for(session)
        return self.replay.check(session.consumer, call.nonce, call.timestamp, scope=scope)

    def verify_signature(self, session: Session, call: SignedCall) -> OAuthState:
        token_secret = None
        if session.access_token is not None:
            token_secret = session.access_token.secret
        elif session.request_token is not None:
            token_secret = session.request_token.secret
        try:
            authentic = self.signatures.verify(call, session.consumer, token_secret)
        except OAuth1Error as exc:
            logger.info("Signature check raised %s", exc)
            authentic = False
        return OAuthState.OK if authentic else OAuthState.INVALID_SIGNATURE

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, session: Session, call: SignedCall) -> OAuthState:
        mode = session.mode
        if mode is ValidationMode.REQUEST:
            self.tokens.issue_request_token(session)
            return OAuthState.OK
        if mode is ValidationMode.AUTHORIZE:
            return OAuthState.OK
        if mode is ValidationMode.ACCESS:
            return self.tokens.exchange_for_access_token(session, call.verifier)
        return self.tokens.expire_if_stale(session)

    def _invalidate(self, session: Session, call: SignedCall) -> None:
        # Logout skips the nonce and signature pipeline; revocation is idempotent.
        session.state = OAuthState.OK
        if call.consumer_key and call.token:
            self.tokens.revoke_access_token(call.consumer_key, call.token)

    # ------------------------------------------------------------------
    # Post-validation helpers for the AUTHORIZE step
    # ------------------------------------------------------------------

    def authenticate_user(self, session: Session, email: str, proof: str) -> bool:
        """Bind a user to a validated AUTHORIZE session. False unless the call validated OK."""
        if session.mode is not ValidationMode.AUTHORIZE or not session.ok:
            return False
        return self.tokens.bind_user(session, email, proof)

    def issue_verifier(self, session: Session) -> str | None:
        """Issue the verification code once the session's request token is user-bound."""
        if session.mode is not ValidationMode.AUTHORIZE or not session.request_verified():
            return None
        return self.tokens.issue_verification_code(session)
