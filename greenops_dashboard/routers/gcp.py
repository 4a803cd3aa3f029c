"""GCP FinOps routes: connection management, stored data, sync jobs, dashboard."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from greenops_dashboard import supabase_client as db
from greenops_dashboard.auth import require_user
from greenops_dashboard.services import (
    anomalies,
    budgets,
    carbon,
    connections,
    costs,
    dashboard,
    recommendations,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/gcp")

NO_CONNECTION = "No active GCP connection found"


def _active_connection(user_id: str) -> dict:
    connection = db.get_active_connection(user_id)
    if not connection:
        raise HTTPException(status_code=404, detail=NO_CONNECTION)
    return connection


def _optional_fetcher(user_id: str):
    """Fetcher for live lookups when connected; None falls back to stored data."""
    connection = db.get_active_connection(user_id)
    return connections.fetcher_for(connection) if connection else None


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

@router.get("/connection-status")
def connection_status(user: dict = Depends(require_user)):
    return {"success": True, "data": connections.connection_status(user["email"])}


@router.post("/refresh")
def refresh(user: dict = Depends(require_user)):
    connection = db.get_connection(user["email"])
    if not connection:
        raise HTTPException(status_code=404, detail="No GCP connection found")
    if connection.get("connection_status") != "connected":
        raise HTTPException(status_code=404,
                            detail="GCP connection is not active. Please reconnect.")

    result = connections.refresh_connection(connection)
    if not result["success"]:
        raise HTTPException(status_code=500, detail=f"Failed to refresh GCP data: {result['error']}")

    data = result["data"]
    return {
        "success": True,
        "message": "GCP data refreshed",
        "data": {
            "projects": len(data["projects"]),
            "billingAccounts": len(data["billingAccounts"]),
            "lastSync": db.now_iso(),
        },
    }


@router.post("/disconnect")
def disconnect(request: Request, user: dict = Depends(require_user)):
    summary = connections.disconnect(
        user["email"],
        user_agent=request.headers.get("user-agent", ""),
        ip_address=_client_ip(request),
    )
    if summary is None:
        raise HTTPException(status_code=404, detail="No GCP connection found")
    return {"success": True, "message": "GCP account disconnected", "data": summary}


@router.get("/audit-log")
def audit_log(limit: int = Query(50, ge=1, le=200), user: dict = Depends(require_user)):
    return {"success": True, "data": db.get_audit_log(user["email"], limit=limit)}


# ---------------------------------------------------------------------------
# Stored data
# ---------------------------------------------------------------------------

@router.get("/projects")
def list_projects(user: dict = Depends(require_user)):
    projects = db.get_projects(user["email"], active_only=True)
    return {"success": True, "data": projects, "count": len(projects)}


@router.get("/billing-accounts")
def list_billing_accounts(user: dict = Depends(require_user)):
    accounts = db.get_billing_accounts(user["email"])
    return {"success": True, "data": accounts, "count": len(accounts)}


@router.get("/budgets")
def list_budgets(user: dict = Depends(require_user)):
    result = budgets.list_budgets(user["email"])
    return {"success": True, "data": result["budgets"], "summary": result["summary"]}


@router.get("/finops-dashboard")
def finops_dashboard(user: dict = Depends(require_user)):
    result = dashboard.finops_dashboard(user["email"])
    if result is None:
        raise HTTPException(status_code=404, detail=NO_CONNECTION)
    return {"success": True, **result}


@router.post("/finops-dashboard")
def refresh_finops_dashboard(user: dict = Depends(require_user)):
    user_id = user["email"]
    _active_connection(user_id)
    anomalies.detect_anomalies(user_id)
    db.update_connection(user_id, {"last_finops_sync": db.now_iso()})

    result = dashboard.finops_dashboard(user_id)
    if result is None:
        raise HTTPException(status_code=404, detail=NO_CONNECTION)
    return {"success": True, **result}


# ---------------------------------------------------------------------------
# Sync jobs
# ---------------------------------------------------------------------------

@router.post("/sync-all")
def sync_all(user: dict = Depends(require_user)):
    stats = costs.sync_costs(user["email"])
    if stats is None:
        raise HTTPException(status_code=404, detail=NO_CONNECTION)
    return {
        "success": True,
        "message": f"Full sync: {len(stats['tablesUpdated'])} tables, {stats['totalRecords']} records",
        "data": stats,
    }


@router.post("/sync-bigquery-costs")
def sync_bigquery_costs(user: dict = Depends(require_user)):
    result = costs.sync_bigquery_costs(user["email"])
    if result is None:
        raise HTTPException(status_code=404, detail=NO_CONNECTION)
    return {"success": True, "data": result}


@router.post("/sync-carbon-footprint")
def sync_carbon_footprint(user: dict = Depends(require_user)):
    user_id = user["email"]
    result = carbon.sync_carbon_footprint(user_id, fetcher=_optional_fetcher(user_id))
    if result is None:
        raise HTTPException(status_code=404,
                            detail="No projects or services data found for carbon calculation")
    return {
        "success": True,
        "message": f"Carbon footprint sync: {result['carbonRecordsStored']} records stored",
        "data": result,
    }


@router.post("/sync-cost-anomalies")
def sync_cost_anomalies(user: dict = Depends(require_user)):
    result = anomalies.detect_anomalies(user["email"])
    if result is None:
        raise HTTPException(status_code=404,
                            detail="No projects or services data found for anomaly detection")
    return {
        "success": True,
        "message": f"Anomaly detection: {result['anomaliesDetected']} anomalies found",
        "data": result,
    }


@router.post("/sync-budgets")
def sync_budgets(user: dict = Depends(require_user)):
    user_id = user["email"]
    result = budgets.sync_budgets(user_id, fetcher=_optional_fetcher(user_id))
    if result is None:
        raise HTTPException(status_code=404, detail="No active billing accounts found")
    return {
        "success": True,
        "message": f"Budget sync: {result['budgetsStored']} budgets stored",
        "data": result,
    }


@router.post("/sync-recommendations")
def sync_recommendations(user: dict = Depends(require_user)):
    result = recommendations.sync_recommendations(user["email"])
    return {
        "success": True,
        "message": f"Recommendations sync: {result['recommendationsStored']} stored",
        "data": result,
    }


@router.get("/detect-bigquery-datasets")
def detect_bigquery_datasets(user: dict = Depends(require_user)):
    fetcher = connections.fetcher_for(_active_connection(user["email"]))
    datasets = fetcher.find_billing_export_tables()
    return {
        "success": True,
        "data": {
            "project": fetcher.export_project,
            "datasets": datasets,
            "billingTablesFound": sum(len(d["billingTables"]) for d in datasets),
        },
    }
