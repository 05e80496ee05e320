"""
api/routes/v1/oauth.py -- OAuth 1.0a token endpoints and the protected identity route.

Routes:
  POST /oauth/request_token  -- consumer-signed; issues a request token
  POST /oauth/authorize      -- request-token-signed; form fields email + credential
                                bind a user; auto consumers get the verifier here
  POST /oauth/verify         -- request-token-signed; issues the verifier for a
                                user-bound token (user-authorized consumers).
                                Consumer-driven: the consumer calls it after its
                                own confirmation step with the user. The provider
                                only checks that the user already proved their
                                credential against this token; it collects no
                                second confirmation itself.
  POST /oauth/access_token   -- request-token-signed with oauth_verifier; exchange
  POST /oauth/invalidate     -- logout; revokes the named access token
  GET  /api/v1/me            -- access-token-signed; the user behind the token

Security:
  POST /oauth/authorize is rate-limited (AUTHORIZE_RATE_LIMIT, default 10/minute
  per IP). It is the only endpoint where a secret derived from a password is
  checked, so it is the only brute-force target.
  Cache-Control: no-store on every response that carries a secret or verifier.
  Wrong email and wrong credential return the same "bad_credentials" error.

Every handler is a plain def: the store is synchronous and FastAPI runs
sync handlers in its thread pool.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.limiter import authorize_limit, limiter
from api.models import AccessTokenResponse, AuthorizeResponse, MeResponse, MessageResponse, RequestTokenResponse
from auth.dependencies import get_state_machine, read_signed_call, require_access, validate_call
from auth.models import OAuthState, Session, ValidationMode, VerificationMode
from auth.session import SessionStateMachine
from auth.signature import SignedCall

router = APIRouter()


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"


# ---------------------------------------------------------------------------
# Three-legged flow
# ---------------------------------------------------------------------------


@router.post("/oauth/request_token", response_model=RequestTokenResponse)
def request_token(
    response: Response,
    call: SignedCall = Depends(read_signed_call),
    machine: SessionStateMachine = Depends(get_state_machine),
) -> RequestTokenResponse:
    """Validate the consumer signature and issue a fresh request token."""
    session = validate_call(ValidationMode.REQUEST, call, machine)
    _no_store(response)
    return RequestTokenResponse(**session.request_token_pair())


@limiter.limit(authorize_limit)
@router.post("/oauth/authorize", response_model=AuthorizeResponse)
def authorize(
    request: Request,
    response: Response,
    call: SignedCall = Depends(read_signed_call),
    machine: SessionStateMachine = Depends(get_state_machine),
) -> AuthorizeResponse:
    """Authenticate a user against the request token.

    email and credential are taken verbatim from the signed form body; the
    credential is sha1(request_token_secret + consumer_secret + password_hash).
    """
    email = call.params.get("email")
    credential = call.params.get("credential")
    if not email or not credential:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_request", "message": "email and credential are required."},
        )

    session = validate_call(ValidationMode.AUTHORIZE, call, machine)
    if not machine.authenticate_user(session, email, credential):
        raise HTTPException(
            status_code=401,
            detail={"code": "bad_credentials", "message": "Invalid email or credential."},
            headers={"Cache-Control": "no-store"},
        )

    _no_store(response)
    token = session.request_token.token
    if session.consumer.verification_mode is VerificationMode.USER_AUTHORIZED:
        return AuthorizeResponse(oauth_token=token, verification_required=True)
    return AuthorizeResponse(oauth_token=token, oauth_verifier=machine.issue_verifier(session))


@router.post("/oauth/verify", response_model=AuthorizeResponse)
def verify(
    response: Response,
    call: SignedCall = Depends(read_signed_call),
    machine: SessionStateMachine = Depends(get_state_machine),
) -> AuthorizeResponse:
    """Issue (or re-issue) the verification code for a user-bound request token.

    Only the consumer that owns the request token can call this, and only after
    a user bound it through /oauth/authorize.
    """
    session = validate_call(ValidationMode.AUTHORIZE, call, machine)
    code = machine.issue_verifier(session)
    if code is None:
        raise HTTPException(
            status_code=401,
            detail={"code": OAuthState.TOKEN_REJECTED.value, "message": "No user has authorized this token."},
        )
    _no_store(response)
    return AuthorizeResponse(oauth_token=session.request_token.token, oauth_verifier=code)


@router.post("/oauth/access_token", response_model=AccessTokenResponse)
def access_token(
    response: Response,
    call: SignedCall = Depends(read_signed_call),
    machine: SessionStateMachine = Depends(get_state_machine),
) -> AccessTokenResponse:
    """Exchange a verified request token (oauth_verifier) for an access token."""
    session = validate_call(ValidationMode.ACCESS, call, machine)
    _no_store(response)
    return AccessTokenResponse(**session.access_token_pair())


@router.post("/oauth/invalidate", response_model=MessageResponse)
def invalidate(
    call: SignedCall = Depends(read_signed_call),
    machine: SessionStateMachine = Depends(get_state_machine),
) -> MessageResponse:
    """Revoke the access token named in the call. Succeeds whether or not it existed."""
    machine.validate(ValidationMode.INVALIDATE, call)
    return MessageResponse(message="Token invalidated.")


# ---------------------------------------------------------------------------
# Protected resources
# ---------------------------------------------------------------------------


@router.get("/api/v1/me", response_model=MeResponse)
def me(session: Session = Depends(require_access)) -> MeResponse:
    """Return the user and consumer behind the access token."""
    return MeResponse(user_id=session.user_id, consumer_key=session.consumer.consumer_key)
