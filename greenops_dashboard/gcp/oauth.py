"""Google OAuth2 web flow: consent URL, code exchange, refresh, revoke and token storage."""

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from datetime import datetime, timedelta, timezone

import requests
from cryptography.fernet import Fernet, InvalidToken
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from greenops_dashboard.config import (
    GCP_REDIRECT_URI,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    OAUTH_STATE_SECRET,
    TOKEN_ENCRYPTION_KEY,
)

logger = logging.getLogger(__name__)

# Google may hand back more scopes than requested (include_granted_scopes)
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

SCOPES = [
    "https://www.googleapis.com/auth/cloud-billing",
    "https://www.googleapis.com/auth/cloud-billing.readonly",
    "https://www.googleapis.com/auth/bigquery.readonly",
    "https://www.googleapis.com/auth/monitoring.read",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/cloud-platform.read-only",
    "https://www.googleapis.com/auth/cloudplatformprojects.readonly",
]

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
REVOKE_URI = "https://oauth2.googleapis.com/revoke"

STATE_MAX_AGE_SECONDS = 10 * 60
EXPIRY_BUFFER = timedelta(minutes=5)


class OAuthConfigError(RuntimeError):
    """Google OAuth client credentials are not configured."""


class InvalidStateError(ValueError):
    """OAuth state parameter is malformed, forged, or expired."""


class TokenRefreshError(RuntimeError):
    """The stored refresh token could not be exchanged for a new access token."""


def oauth_configured() -> bool:
    return bool(GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET)


def _client_config() -> dict:
    if not oauth_configured():
        raise OAuthConfigError(
            "Google OAuth credentials are not configured. "
            "Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
        )
    return {
        "web": {
            "client_id": GOOGLE_CLIENT_ID,
            "client_secret": GOOGLE_CLIENT_SECRET,
            "auth_uri": AUTH_URI,
            "token_uri": TOKEN_URI,
            "redirect_uris": [GCP_REDIRECT_URI],
        }
    }


def _flow(state: str | None = None) -> Flow:
    return Flow.from_client_config(
        _client_config(),
        scopes=SCOPES,
        redirect_uri=GCP_REDIRECT_URI,
        state=state,
        autogenerate_code_verifier=False,
    )


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

def _state_secret() -> bytes:
    return (OAUTH_STATE_SECRET or TOKEN_ENCRYPTION_KEY or "fallback-dev-secret").encode()


def _sign(payload: str) -> str:
    return hmac.new(_state_secret(), payload.encode(), hashlib.sha256).hexdigest()[:32]


def encode_state(user_id: str, now: float | None = None) -> str:
    """Signed, URL-safe state carrying the user id and issue time."""
    body = json.dumps({
        "userId": user_id,
        "nonce": secrets.token_hex(16),
        "ts": int(now if now is not None else time.time()),
    }, separators=(",", ":"))
    payload = base64.urlsafe_b64encode(body.encode()).decode().rstrip("=")
    return f"{payload}.{_sign(payload)}"


def decode_state(state: str, now: float | None = None) -> str:
    """Return the user id from a state string. Raises InvalidStateError."""
    payload, _, signature = (state or "").partition(".")
    if not payload or not signature:
        raise InvalidStateError("invalid_state")
    if not hmac.compare_digest(_sign(payload), signature):
        raise InvalidStateError("invalid_state")

    try:
        padded = payload + "=" * (-len(payload) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except ValueError as e:
        raise InvalidStateError("invalid_state") from e

    current = now if now is not None else time.time()
    if current - data.get("ts", 0) > STATE_MAX_AGE_SECONDS:
        raise InvalidStateError("state_expired")
    if not data.get("userId"):
        raise InvalidStateError("invalid_state")
    return data["userId"]


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------

def generate_auth_url(user_id: str) -> str:
    """Google consent URL. Offline access + forced consent so we get a refresh token."""
    url, _ = _flow().authorization_url(
        access_type="offline",
        prompt="consent",
        include_granted_scopes="true",
        state=encode_state(user_id),
    )
    return url


def tokens_from_credentials(creds: Credentials, refresh_token: str = "") -> dict:
    """Serialize google-auth credentials to the stored token dict."""
    if creds.expiry:
        expires_at = creds.expiry.replace(tzinfo=timezone.utc)
    else:
        expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
    return {
        "access_token": creds.token,
        "refresh_token": creds.refresh_token or refresh_token,
        "token_type": "Bearer",
        "scope": " ".join(creds.scopes or SCOPES),
        "expires_at": expires_at.isoformat(),
    }


def exchange_code(code: str) -> dict:
    """Exchange an authorization code for tokens."""
    flow = _flow()
    flow.fetch_token(code=code)
    creds = flow.credentials
    if not creds.token:
        raise RuntimeError("No access token received from Google")
    return tokens_from_credentials(creds)


def _expiry(tokens: dict) -> datetime | None:
    raw = tokens.get("expires_at")
    if not raw:
        return None
    expires_at = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at


def is_token_expired(tokens: dict, now: datetime | None = None) -> bool:
    """True when the access token expires within the 5-minute buffer."""
    expires_at = _expiry(tokens)
    if expires_at is None:
        return True
    current = now or datetime.now(timezone.utc)
    return expires_at - EXPIRY_BUFFER < current


def build_credentials(tokens: dict) -> Credentials:
    """google-auth credentials usable with googleapiclient.discovery.build."""
    expires_at = _expiry(tokens)
    creds = Credentials(
        token=tokens.get("access_token"),
        refresh_token=tokens.get("refresh_token") or None,
        token_uri=TOKEN_URI,
        client_id=GOOGLE_CLIENT_ID or None,
        client_secret=GOOGLE_CLIENT_SECRET or None,
        scopes=(tokens.get("scope") or "").split() or SCOPES,
    )
    if expires_at is not None:
        # google-auth compares against naive UTC
        creds.expiry = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
    return creds


def refresh_tokens(tokens: dict) -> dict:
    """Refresh the access token, keeping the stored refresh token."""
    refresh_token = tokens.get("refresh_token")
    if not refresh_token:
        raise TokenRefreshError("No refresh token stored for this connection")

    creds = build_credentials(tokens)
    try:
        creds.refresh(GoogleAuthRequest())
    except RefreshError as e:
        raise TokenRefreshError(f"Token refresh failed: {e}") from e
    return tokens_from_credentials(creds, refresh_token=refresh_token)


def revoke_token(token: str) -> None:
    """Revoke an access or refresh token at Google."""
    resp = requests.post(
        REVOKE_URI,
        params={"token": token},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        timeout=10,
    )
    resp.raise_for_status()


# ---------------------------------------------------------------------------
# Storage encryption
# ---------------------------------------------------------------------------

def _fernet() -> Fernet:
    if not TOKEN_ENCRYPTION_KEY:
        raise RuntimeError("TOKEN_ENCRYPTION_KEY must be set")
    key = base64.urlsafe_b64encode(hashlib.sha256(TOKEN_ENCRYPTION_KEY.encode()).digest())
    return Fernet(key)


def encrypt_tokens(tokens: dict) -> str:
    return _fernet().encrypt(json.dumps(tokens).encode()).decode()


def decrypt_tokens(blob: str) -> dict:
    """Decrypt stored tokens. Plaintext JSON rows written before encryption are accepted."""
    if not blob:
        raise ValueError("No tokens stored")
    if blob.lstrip().startswith("{"):
        return json.loads(blob)
    try:
        return json.loads(_fernet().decrypt(blob.encode()))
    except InvalidToken as e:
        raise ValueError("Failed to decrypt OAuth tokens") from e
