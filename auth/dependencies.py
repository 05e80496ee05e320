"""
auth/dependencies.py -- FastAPI Depends() helpers for OAuth-signed requests.

read_signed_call() parses the OAuth parameters of any request (Authorization
header, query string, or form body) into a SignedCall. It is async because
reading the body is; everything that touches the store is a plain def so
FastAPI runs it in the thread pool.

require_access() is the resource-protection dependency: it validates the call
in USE mode and raises HTTP 401 unless the session is access-verified.

Every protocol failure becomes the same 401 shape:
    WWW-Authenticate: OAuth realm="<realm>", oauth_problem="<state>"
    {"error": {"code": "<state>", "message": "..."}}

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system; it does not import from api/.
"""

from __future__ import annotations

from authlib.oauth1.rfc5849.errors import OAuth1Error
from fastapi import Depends, HTTPException, Request

from auth.models import OAuthState, Session, ValidationMode
from auth.session import SessionStateMachine
from auth.signature import SignedCall, signed_call_from_request
from core.config import get_settings

_PROBLEM_MESSAGES: dict[OAuthState, str] = {
    OAuthState.INVALID_SIGNATURE: "The request signature is invalid.",
    OAuthState.BAD_NONCE: "The nonce has already been used.",
    OAuthState.BAD_TIMESTAMP: "The timestamp is outside the accepted window.",
    OAuthState.CONSUMER_KEY_UNKNOWN: "Unknown consumer key.",
    OAuthState.CONSUMER_KEY_REFUSED: "The consumer key has been refused.",
    OAuthState.TOKEN_REJECTED: "The token is not valid.",
    OAuthState.TOKEN_EXPIRED: "The token has expired.",
    OAuthState.VERIFIER_INVALID: "The verification code is not valid.",
}


def get_state_machine(request: Request) -> SessionStateMachine:
    return request.app.state.oauth


async def read_signed_call(request: Request) -> SignedCall:
    """Parse the request's OAuth parameters.

    Malformed parameters or a body that is not UTF-8 are a 400, not a protocol outcome.
    """
    body = await request.body()
    try:
        return signed_call_from_request(request.method, str(request.url), body, request.headers)
    except (OAuth1Error, UnicodeDecodeError) as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_request", "message": "Malformed OAuth parameters.", "detail": str(exc)},
        ) from exc


def problem_exception(state: OAuthState) -> HTTPException:
    """Build the 401 for a failed protocol outcome."""
    realm = get_settings().realm
    return HTTPException(
        status_code=401,
        detail={"code": state.value, "message": _PROBLEM_MESSAGES.get(state, "Authentication failed.")},
        headers={"WWW-Authenticate": f'OAuth realm="{realm}", oauth_problem="{state.value}"'},
    )


def validate_call(
    mode: ValidationMode,
    call: SignedCall,
    machine: SessionStateMachine,
) -> Session:
    """Run the state machine and raise the protocol 401 unless the outcome is OK."""
    session = machine.validate(mode, call)
    if not session.ok:
        raise problem_exception(session.state)
    return session


def require_access(
    call: SignedCall = Depends(read_signed_call),
    machine: SessionStateMachine = Depends(get_state_machine),
) -> Session:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(session: Session = Depends(require_access)): ...
    """
    session = validate_call(ValidationMode.USE, call, machine)
    if not session.access_verified():
        raise problem_exception(OAuthState.TOKEN_REJECTED)
    return session
