"""Diagnostic routes under /api/test: live GCP probes that store nothing."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from greenops_dashboard import supabase_client as db
from greenops_dashboard.auth import require_user
from greenops_dashboard.services import connections

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/test")


def _fetcher(user_id: str):
    connection = db.get_active_connection(user_id)
    if not connection:
        raise HTTPException(status_code=404, detail="No active GCP connection found")
    return connections.fetcher_for(connection)


@router.post("/bigquery-costs-direct")
def bigquery_costs_direct(user: dict = Depends(require_user)):
    fetcher = _fetcher(user["email"])
    probes = []
    for dataset in fetcher.find_billing_export_tables():
        for table in dataset["billingTables"]:
            probes.append(fetcher.probe_billing_table(dataset["datasetId"], table))

    with_data = [p for p in probes if p["status"] == "SUCCESS"]
    logger.info("Probed %d billing tables for %s, %d with data",
                len(probes), user["email"], len(with_data))
    return {
        "success": True,
        "data": {
            "project": fetcher.export_project,
            "tablesProbed": len(probes),
            "tablesWithData": len(with_data),
            "totalCost": sum(p["totalCost"] for p in with_data),
            "results": probes,
        },
    }


@router.post("/sync-real-data")
def sync_real_data(user: dict = Depends(require_user)):
    fetcher = _fetcher(user["email"])
    result = fetcher.fetch_initial_data()
    if not result["success"]:
        raise HTTPException(status_code=500, detail=f"GCP fetch failed: {result['error']}")

    data = result["data"]
    return {
        "success": True,
        "data": {
            "accountInfo": data["accountInfo"],
            "billingAccounts": data["billingAccounts"],
            "projects": data["projects"],
            "apiCallsUsed": fetcher.api_calls,
        },
    }
