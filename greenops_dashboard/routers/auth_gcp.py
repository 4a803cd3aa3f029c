"""GCP OAuth routes: start the consent flow and handle Google's callback.

The callback is reached by a browser redirect from Google, so it carries no
bearer token; the signed ``state`` identifies the user instead.
"""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from greenops_dashboard.auth import require_user
from greenops_dashboard.config import FRONTEND_URL
from greenops_dashboard.gcp import oauth
from greenops_dashboard.gcp.fetcher import GCPDataFetcher
from greenops_dashboard.services import connections

logger = logging.getLogger(__name__)

router = APIRouter()

RETURN_PATH = "/dashboard/cloud-providers"


def _frontend_redirect(**params) -> RedirectResponse:
    return RedirectResponse(f"{FRONTEND_URL}{RETURN_PATH}?{urlencode(params)}", status_code=302)


@router.get("/api/auth/gcp")
def start_oauth(user: dict = Depends(require_user)):
    return RedirectResponse(oauth.generate_auth_url(user["email"]), status_code=302)


@router.post("/api/auth/gcp")
def oauth_url(user: dict = Depends(require_user)):
    return {"success": True, "authUrl": oauth.generate_auth_url(user["email"])}


@router.get("/api/auth/gcp/callback")
def oauth_callback(
    code: str = Query(""),
    state: str = Query(""),
    error: str = Query(""),
):
    if error:
        logger.warning("GCP OAuth error returned by Google: %s", error)
        return _frontend_redirect(gcp_error=error)
    if not code or not state:
        return _frontend_redirect(gcp_error="missing_params")

    try:
        user_id = oauth.decode_state(state)
    except oauth.InvalidStateError as e:
        logger.warning("Rejected OAuth state: %s", e)
        return _frontend_redirect(gcp_error=str(e))

    try:
        tokens = oauth.exchange_code(code)
    except Exception as e:
        logger.error("Token exchange failed for %s: %s", user_id, e)
        return _frontend_redirect(gcp_error="token_exchange_failed")

    fetcher = GCPDataFetcher(oauth.build_credentials(tokens))
    result = fetcher.fetch_initial_data()
    if not result["success"]:
        logger.warning("Connected %s but initial fetch failed: %s", user_id, result["error"])

    try:
        connections.store_connection(user_id, tokens, result)
    except Exception as e:
        logger.error("Storing GCP connection failed for %s: %s", user_id, e)
        return _frontend_redirect(gcp_error="store_failed")

    return _frontend_redirect(gcp_status="connected", auto_open_wizard="true")
