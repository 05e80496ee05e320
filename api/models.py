"""
API response models for Handshake REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Token responses keep the OAuth parameter names (oauth_token,
oauth_token_secret, oauth_verifier) so consumer libraries can read them
without a mapping table.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

# ---------------------------------------------------------------------------
# Token exchange
# ---------------------------------------------------------------------------


class RequestTokenResponse(BaseModel):
    """Response for POST /oauth/request_token."""

    model_config = ConfigDict(frozen=True)

    oauth_token: str
    oauth_token_secret: str
    oauth_callback_confirmed: str = "true"


class AuthorizeResponse(BaseModel):
    """Response for POST /oauth/authorize and POST /oauth/verify.

    oauth_verifier is present when the code was issued in this call.
    verification_required is True for user-authorized consumers that must
    confirm through POST /oauth/verify before a code is issued.
    """

    model_config = ConfigDict(frozen=True)

    oauth_token: str
    oauth_verifier: Optional[str] = None
    verification_required: bool = False


class AccessTokenResponse(BaseModel):
    """Response for POST /oauth/access_token."""

    model_config = ConfigDict(frozen=True)

    oauth_token: str
    oauth_token_secret: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/me -- the identity behind the access token."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    consumer_key: str


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
