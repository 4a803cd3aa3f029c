"""GCP connection lifecycle: store after OAuth, status, token refresh and disconnect."""

import logging

from greenops_dashboard import supabase_client as db
from greenops_dashboard.config import DEFAULT_CURRENCY, DEFAULT_MONTHLY_COST
from greenops_dashboard.gcp import oauth
from greenops_dashboard.gcp.fetcher import GCPDataFetcher, billing_account_id

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row builders
# ---------------------------------------------------------------------------

def project_record(user_id: str, project: dict, billing_accounts: list[dict]) -> dict:
    """gcp_projects row from a fetcher project dict."""
    account_name = project.get("billingAccountName") or ""
    display = next((a.get("displayName") for a in billing_accounts
                    if a.get("name") == account_name), "")
    return {
        "user_id": user_id,
        "project_id": project["projectId"],
        "project_name": project.get("name", ""),
        "project_number": project.get("projectNumber", ""),
        "billing_account_id": billing_account_id(account_name) if account_name else "",
        "billing_account_name": display or account_name,
        "lifecycle_state": project.get("lifecycleState", ""),
        "is_active": True,
        "is_archived": False,
        "sync_status": "connected",
        "updated_at": db.now_iso(),
    }


def billing_account_record(user_id: str, account: dict, projects: list[dict]) -> dict:
    """gcp_billing_accounts row from a fetcher billing account dict."""
    linked = [p for p in projects if p.get("billingAccountName") == account["name"]]
    return {
        "user_id": user_id,
        "billing_account_id": billing_account_id(account["name"]),
        "billing_account_name": account["name"],
        "display_name": account.get("displayName", ""),
        "is_open": bool(account.get("open")),
        "master_billing_account": account.get("masterBillingAccount") or "",
        "projects_count": len(linked) or account.get("projectCount", 0),
        "currency": DEFAULT_CURRENCY,
        "updated_at": db.now_iso(),
    }


# ---------------------------------------------------------------------------
# Connect
# ---------------------------------------------------------------------------

def store_connection(user_id: str, tokens: dict, fetch_result: dict) -> dict:
    """Persist a freshly authorized connection plus whatever data could be fetched."""
    data = fetch_result.get("data") or {}
    projects = data.get("projects", [])
    billing_accounts = data.get("billingAccounts", [])
    account = data.get("accountInfo") or {}

    connection = db.upsert_connection({
        "user_id": user_id,
        "connection_status": "connected",
        "account_info": {
            "email": account.get("email") or user_id,
            "name": account.get("name", ""),
            "billingAccounts": billing_accounts,
            "projects": projects,
            "oauthStatus": "connected",
            "lastOAuth": db.now_iso(),
            "note": ("Full data sync successful" if fetch_result.get("success")
                     else "OAuth connected but APIs not enabled"),
        },
        "tokens_encrypted": oauth.encrypt_tokens(tokens),
        "projects_count": len(projects),
        "billing_accounts_count": len(billing_accounts),
        "last_sync": db.now_iso(),
    })

    if projects:
        db.upsert_projects([project_record(user_id, p, billing_accounts) for p in projects])
    if billing_accounts:
        db.upsert_billing_accounts(
            [billing_account_record(user_id, a, projects) for a in billing_accounts]
        )

    db.log_action(user_id, "connect", {
        "projects": len(projects),
        "billingAccounts": len(billing_accounts),
        "dataFetched": bool(fetch_result.get("success")),
    })
    logger.info("Stored GCP connection for %s (%d projects, %d billing accounts)",
                user_id, len(projects), len(billing_accounts))
    return connection


# ---------------------------------------------------------------------------
# Status / credentials
# ---------------------------------------------------------------------------

def connection_status(user_id: str) -> dict:
    """Connection row without tokens, or a disconnected placeholder."""
    connection = db.get_connection(user_id)
    if not connection:
        return {"connection_status": "disconnected", "account_info": None}
    public = dict(connection)
    public.pop("tokens_encrypted", None)
    return public


def monthly_total(connection: dict | None) -> float:
    """Total monthly cost recorded on the connection, else the configured default."""
    if connection and connection.get("total_monthly_cost"):
        return float(connection["total_monthly_cost"])
    return DEFAULT_MONTHLY_COST


def get_credentials(connection: dict):
    """google-auth credentials for a connection, refreshing expired tokens.

    Raises oauth.TokenRefreshError (after marking the connection expired) when
    the refresh token is no longer accepted.
    """
    user_id = connection["user_id"]
    tokens = oauth.decrypt_tokens(connection.get("tokens_encrypted") or "")

    if oauth.is_token_expired(tokens):
        logger.info("Refreshing expired GCP tokens for %s", user_id)
        try:
            tokens = oauth.refresh_tokens(tokens)
        except oauth.TokenRefreshError:
            db.update_connection(user_id, {"connection_status": "expired"})
            raise
        db.update_connection(user_id, {"tokens_encrypted": oauth.encrypt_tokens(tokens)})

    return oauth.build_credentials(tokens)


def fetcher_for(connection: dict) -> GCPDataFetcher:
    return GCPDataFetcher(get_credentials(connection))


def refresh_connection(connection: dict) -> dict:
    """Re-fetch account data for a connected user and update stored rows."""
    user_id = connection["user_id"]
    fetcher = fetcher_for(connection)
    result = fetcher.fetch_initial_data()
    if not result["success"]:
        return result

    data = result["data"]
    account_info = dict(connection.get("account_info") or {})
    account_info.update({
        "billingAccounts": data["billingAccounts"],
        "projects": data["projects"],
    })
    db.update_connection(user_id, {
        "account_info": account_info,
        "projects_count": len(data["projects"]),
        "billing_accounts_count": len(data["billingAccounts"]),
        "last_sync": db.now_iso(),
    })
    if data["projects"]:
        db.upsert_projects([project_record(user_id, p, data["billingAccounts"])
                            for p in data["projects"]])
    if data["billingAccounts"]:
        db.upsert_billing_accounts([billing_account_record(user_id, a, data["projects"])
                                    for a in data["billingAccounts"]])
    return result


# ---------------------------------------------------------------------------
# Disconnect
# ---------------------------------------------------------------------------

def disconnect(user_id: str, user_agent: str = "", ip_address: str = "") -> dict | None:
    """Revoke tokens, archive the user's data and mark the connection disconnected.

    Returns the disconnection summary, or None if the user has no connection.
    """
    connection = db.get_connection(user_id)
    if not connection:
        return None

    now = db.now_iso()
    summary = {
        "connectionsRemoved": 0,
        "projectsArchived": 0,
        "billingDataArchived": 0,
        "recommendationsArchived": 0,
        "anomaliesArchived": 0,
        "carbonDataArchived": 0,
        "tokensRevoked": False,
        "disconnectedAt": now,
    }

    if connection.get("tokens_encrypted"):
        try:
            tokens = oauth.decrypt_tokens(connection["tokens_encrypted"])
            if tokens.get("access_token"):
                oauth.revoke_token(tokens["access_token"])
                summary["tokensRevoked"] = True
        except Exception as e:
            # Disconnection proceeds even when Google refuses the revoke
            logger.warning("Failed to revoke GCP tokens for %s: %s", user_id, e)

    projects = db.update("gcp_projects", {
        "is_active": False,
        "sync_status": "disconnected",
        "last_sync": None,
        "updated_at": now,
    }, {"user_id": user_id})
    summary["projectsArchived"] = len(projects)

    summary["billingDataArchived"] = db.count("gcp_services_usage", {"user_id": user_id})
    summary["carbonDataArchived"] = db.count("gcp_carbon_footprint", {"user_id": user_id})

    recommendations = db.update("gcp_optimization_recommendations", {
        "status": "obsolete",
        "updated_at": now,
    }, {"user_id": user_id, "status": "pending"})
    summary["recommendationsArchived"] = len(recommendations)

    anomalies = db.update("gcp_cost_anomalies", {
        "status": "resolved",
        "resolution_notes": "Account disconnected - anomaly tracking stopped",
        "resolved_at": now,
        "updated_at": now,
    }, {"user_id": user_id, "status": "open"})
    summary["anomaliesArchived"] = len(anomalies)

    account_info = dict(connection.get("account_info") or {})
    account_info.update({
        "disconnected_at": now,
        "disconnection_reason": "user_requested",
        "projects": [],
        "billingAccounts": [],
    })
    db.update_connection(user_id, {
        "connection_status": "disconnected",
        "tokens_encrypted": None,
        "account_info": account_info,
        "last_sync": None,
    })
    summary["connectionsRemoved"] = 1

    db.log_action(user_id, "disconnect", {
        "summary": summary,
        "user_agent": user_agent,
        "ip_address": ip_address,
    })
    logger.info("GCP disconnection completed for %s: %s", user_id, summary)
    return summary
