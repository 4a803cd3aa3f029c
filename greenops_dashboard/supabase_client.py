"""Supabase connection and query helpers for all gcp_* tables."""

import logging
import threading
from datetime import datetime, timezone

from supabase import Client, create_client

from greenops_dashboard.config import SUPABASE_SERVICE_KEY, SUPABASE_URL

logger = logging.getLogger(__name__)

_client: Client | None = None
_client_lock = threading.Lock()


def get_client() -> Client:
    """Return the Supabase client singleton (thread-safe)."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                if not SUPABASE_URL or not SUPABASE_SERVICE_KEY:
                    raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
                _client = create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY)
    return _client


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def today_iso() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def current_month() -> str:
    """YYYY-MM, the usage_month / trend_month key."""
    return datetime.now(timezone.utc).strftime("%Y-%m")


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def get_user(access_token: str) -> dict | None:
    """Resolve a Supabase access token to {id, email}, or None if rejected."""
    try:
        response = get_client().auth.get_user(access_token)
    except Exception as e:
        logger.warning("Supabase token verification failed: %s", e)
        return None
    user = getattr(response, "user", None)
    if not user or not user.email:
        return None
    return {"id": user.id, "email": user.email}


# ---------------------------------------------------------------------------
# Generic helpers
# ---------------------------------------------------------------------------

def _table(name: str):
    """Return a table query builder."""
    return get_client().table(name)


def _apply_match(q, match: dict | None):
    for k, v in (match or {}).items():
        if isinstance(v, (list, tuple, set)):
            q = q.in_(k, list(v))
        else:
            q = q.eq(k, v)
    return q


def insert(table: str, data: dict) -> dict:
    """Insert a row and return it."""
    result = _table(table).insert(data).execute()
    return result.data[0] if result.data else {}


def insert_many(table: str, rows: list[dict]) -> list[dict]:
    """Insert several rows in one request."""
    if not rows:
        return []
    result = _table(table).insert(rows).execute()
    return result.data or []


def upsert(table: str, data: dict, on_conflict: str = "") -> dict:
    """Upsert a row and return it."""
    if on_conflict:
        q = _table(table).upsert(data, on_conflict=on_conflict)
    else:
        q = _table(table).upsert(data)
    result = q.execute()
    return result.data[0] if result.data else {}


def upsert_many(table: str, rows: list[dict], on_conflict: str) -> list[dict]:
    """Batch upsert on a conflict target."""
    if not rows:
        return []
    result = _table(table).upsert(rows, on_conflict=on_conflict).execute()
    return result.data or []


def update(table: str, data: dict, match: dict) -> list[dict]:
    """Update rows matching conditions and return them."""
    q = _apply_match(_table(table).update(data), match)
    result = q.execute()
    return result.data or []


def delete(table: str, match: dict) -> list:
    """Delete rows matching conditions."""
    q = _apply_match(_table(table).delete(), match)
    result = q.execute()
    return result.data


def select(table: str, columns: str = "*", match: dict | None = None,
           order: str | None = None, order_desc: bool = False,
           limit: int | None = None) -> list[dict]:
    """Select rows with optional filtering and ordering."""
    q = _apply_match(_table(table).select(columns), match)
    if order:
        q = q.order(order, desc=order_desc)
    if limit:
        q = q.limit(limit)
    result = q.execute()
    return result.data or []


def select_one(table: str, columns: str = "*", match: dict | None = None) -> dict | None:
    """Select a single row."""
    rows = select(table, columns, match, limit=1)
    return rows[0] if rows else None


def count(table: str, match: dict | None = None) -> int:
    """Count rows matching conditions."""
    q = _apply_match(_table(table).select("*", count="exact"), match)
    result = q.execute()
    return result.count or 0


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

def get_connection(user_id: str) -> dict | None:
    """Get the GCP connection row for a user."""
    return select_one("gcp_connections", match={"user_id": user_id})


def get_active_connection(user_id: str) -> dict | None:
    """Get the connection only if it is currently connected."""
    return select_one("gcp_connections",
                      match={"user_id": user_id, "connection_status": "connected"})


def get_connected_users() -> list[str]:
    """User ids of every connected account."""
    rows = select("gcp_connections", columns="user_id",
                  match={"connection_status": "connected"})
    return [r["user_id"] for r in rows]


def upsert_connection(data: dict) -> dict:
    """Upsert a connection by user_id."""
    data["updated_at"] = now_iso()
    return upsert("gcp_connections", data, on_conflict="user_id")


def update_connection(user_id: str, data: dict) -> list[dict]:
    """Update a user's connection."""
    data["updated_at"] = now_iso()
    return update("gcp_connections", data, {"user_id": user_id})


# ---------------------------------------------------------------------------
# Projects / billing accounts
# ---------------------------------------------------------------------------

def get_projects(user_id: str, active_only: bool = False) -> list[dict]:
    """Projects for a user, most expensive first."""
    match = {"user_id": user_id}
    if active_only:
        match["is_archived"] = False
    return select("gcp_projects", match=match, order="monthly_cost", order_desc=True)


def upsert_projects(rows: list[dict]) -> list[dict]:
    return upsert_many("gcp_projects", rows, on_conflict="user_id,project_id")


def get_billing_accounts(user_id: str, open_only: bool = False) -> list[dict]:
    match = {"user_id": user_id}
    if open_only:
        match["is_open"] = True
    return select("gcp_billing_accounts", match=match)


def upsert_billing_accounts(rows: list[dict]) -> list[dict]:
    return upsert_many("gcp_billing_accounts", rows, on_conflict="user_id,billing_account_id")


# ---------------------------------------------------------------------------
# Usage / carbon
# ---------------------------------------------------------------------------

def get_services_usage(user_id: str, usage_month: str | None = None) -> list[dict]:
    match = {"user_id": user_id}
    if usage_month:
        match["usage_month"] = usage_month
    return select("gcp_services_usage", match=match, order="monthly_cost", order_desc=True)


def upsert_services_usage(rows: list[dict]) -> list[dict]:
    return upsert_many("gcp_services_usage", rows, on_conflict="user_id,service_id,usage_month")


def upsert_billing_data(rows: list[dict]) -> list[dict]:
    return upsert_many("gcp_billing_data", rows,
                       on_conflict="user_id,project_id,service_id,usage_date")


def upsert_carbon_footprint(rows: list[dict]) -> list[dict]:
    return upsert_many(
        "gcp_carbon_footprint", rows,
        on_conflict="user_id,project_id,service_id,location_region,usage_month",
    )


def upsert_monthly_trend(data: dict) -> dict:
    return upsert("gcp_monthly_trends", data, on_conflict="user_id,trend_month")


def get_monthly_trends(user_id: str, limit: int = 6) -> list[dict]:
    return select("gcp_monthly_trends", match={"user_id": user_id},
                  order="trend_month", order_desc=True, limit=limit)


# ---------------------------------------------------------------------------
# Recommendations / anomalies / budgets
# ---------------------------------------------------------------------------

def upsert_recommendations(rows: list[dict]) -> list[dict]:
    return upsert_many("gcp_optimization_recommendations", rows,
                       on_conflict="user_id,recommendation_id")


def replace_anomalies(user_id: str, rows: list[dict]) -> list[dict]:
    """Replace the user's open anomalies with a fresh set; resolved rows are kept."""
    delete("gcp_cost_anomalies", {"user_id": user_id, "status": ["open", "investigating"]})
    return insert_many("gcp_cost_anomalies", rows)


def upsert_budgets(rows: list[dict]) -> list[dict]:
    return upsert_many("gcp_budgets_tracking", rows, on_conflict="user_id,budget_name")


def get_budgets(user_id: str) -> list[dict]:
    return select("gcp_budgets_tracking", match={"user_id": user_id},
                  order="utilization_percentage", order_desc=True)


# ---------------------------------------------------------------------------
# Audit Log
# ---------------------------------------------------------------------------

def log_action(user_id: str, action: str, details: dict | None = None,
               result: str = "success") -> dict:
    """Append an entry to the audit log."""
    return insert("gcp_audit_log", {
        "user_id": user_id,
        "action": action,
        "result": result,
        "details": details or {},
        "created_at": now_iso(),
    })


def get_audit_log(user_id: str, limit: int = 50) -> list[dict]:
    """Get recent audit log entries for a user."""
    return select("gcp_audit_log", match={"user_id": user_id},
                  order="created_at", order_desc=True, limit=limit)
