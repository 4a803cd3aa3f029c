"""Cost sync: heuristic full sync and real costs from the BigQuery billing export.

The full sync writes every FinOps table in a fixed order. A failing step is
logged and reported in ``errors``; rows written by earlier steps stay.
"""

import logging

from greenops_dashboard import supabase_client as db
from greenops_dashboard.config import DEFAULT_CURRENCY
from greenops_dashboard.services import (
    anomalies,
    budgets,
    carbon,
    connections,
    recommendations,
)
from greenops_dashboard.services.cost_split import (
    SERVICE_SPLITS,
    billing_account_cost,
    carbon_for_cost,
    cost_trend,
    percentage,
    split_by_service,
    split_evenly,
)

logger = logging.getLogger(__name__)

SAVINGS_RATE = 0.15
CARBON_GRAMS_PER_EUR = 100


def service_usage_row(user_id: str, service_id: str, name: str, category: str,
                      cost: float, total: float, projects_count: int,
                      currency: str = DEFAULT_CURRENCY) -> dict:
    return {
        "user_id": user_id,
        "service_id": service_id,
        "service_name": name,
        "service_category": category,
        "usage_month": db.current_month(),
        "monthly_cost": round(cost, 4),
        "currency": currency,
        "cost_percentage": round(percentage(cost, total), 2),
        "projects_count": projects_count,
        "total_usage": round(cost, 4),
        "usage_unit": currency,
        "carbon_footprint_grams": round(cost * CARBON_GRAMS_PER_EUR, 2),
        "potential_savings": round(cost * SAVINGS_RATE, 4),
        "updated_at": db.now_iso(),
    }


def record_monthly_trend(user_id: str, total_cost: float, total_carbon: float) -> dict:
    """Upsert this month's totals, with change against the previous recorded month."""
    month = db.current_month()
    previous = next((t for t in db.get_monthly_trends(user_id, limit=2)
                     if t["trend_month"] != month), None)

    cost_change = carbon_change = 0.0
    if previous:
        prev_cost = float(previous.get("total_cost") or 0)
        prev_carbon = float(previous.get("total_carbon") or 0)
        cost_change = percentage(total_cost - prev_cost, prev_cost)
        carbon_change = percentage(total_carbon - prev_carbon, prev_carbon)

    return db.upsert_monthly_trend({
        "user_id": user_id,
        "trend_month": month,
        "total_cost": round(total_cost, 4),
        "total_carbon": round(total_carbon, 4),
        "cost_change_percentage": round(cost_change, 2),
        "carbon_change_percentage": round(carbon_change, 2),
        "currency": DEFAULT_CURRENCY,
        "updated_at": db.now_iso(),
    })


# ---------------------------------------------------------------------------
# Heuristic full sync
# ---------------------------------------------------------------------------

def _base_data(connection: dict, fetcher, stats: dict) -> tuple[list[dict], list[dict]]:
    """Live projects/billing accounts, else the lists stored at connect time."""
    result = fetcher.fetch_initial_data()
    if result["success"]:
        data = result["data"]
        return data["projects"], data["billingAccounts"]

    logger.warning("Live fetch failed for %s, using stored account info: %s",
                   connection["user_id"], result["error"])
    stats["errors"].append(f"fetch: {result['error']}")
    info = connection.get("account_info") or {}
    return info.get("projects") or [], info.get("billingAccounts") or []


def _run_step(stats: dict, table: str, step, *args) -> None:
    try:
        written = step(*args)
    except Exception as e:
        logger.error("Sync step %s failed: %s", table, e)
        stats["errors"].append(f"{table}: {e}")
        return
    if written is None:
        return
    stats["tablesUpdated"].append(table)
    stats["totalRecords"] += written


def _write_connection(user_id: str, total: float, projects: list, accounts: list) -> int:
    db.update_connection(user_id, {
        "total_monthly_cost": round(total, 4),
        "total_monthly_carbon": round(carbon_for_cost(total), 4),
        "currency": DEFAULT_CURRENCY,
        "last_finops_sync": db.now_iso(),
        "finops_sync_status": "completed",
        "projects_count": len(projects),
        "billing_accounts_count": len(accounts),
    })
    return 1


def _write_billing_accounts(user_id: str, total: float, projects: list, accounts: list) -> int:
    rows = []
    for account in accounts:
        row = connections.billing_account_record(user_id, account, projects)
        cost = billing_account_cost(total, row["is_open"])
        row["monthly_cost"] = round(cost, 4)
        row["monthly_carbon"] = round(carbon_for_cost(cost), 4)
        rows.append(row)
    return len(db.upsert_billing_accounts(rows))


def _write_projects(user_id: str, total: float, projects: list, accounts: list) -> int:
    stored = {p["project_id"]: p for p in db.get_projects(user_id)}
    each = split_evenly(total, len(projects))
    rows = []
    for project in projects:
        row = connections.project_record(user_id, project, accounts)
        share = percentage(each, total)
        row.update({
            "monthly_cost": round(each, 4),
            "monthly_carbon": round(carbon_for_cost(each), 4),
            "cost_percentage": round(share, 2),
            "carbon_percentage": round(share, 2),
            "cost_trend": cost_trend(each, total),
            "has_export_bigquery": bool(stored.get(row["project_id"], {}).get("has_export_bigquery")),
            "is_selected": True,
            "last_sync": db.now_iso(),
        })
        rows.append(row)
    return len(db.upsert_projects(rows))


def _write_billing_data(user_id: str, total: float, projects: list, accounts: list) -> int:
    each = split_evenly(total, len(projects))
    today = db.today_iso()
    rows = []
    for project in projects:
        row = connections.project_record(user_id, project, accounts)
        for service in split_by_service(each):
            rows.append({
                "user_id": user_id,
                "project_id": row["project_id"],
                "billing_account_id": row["billing_account_id"],
                "service_id": service["id"],
                "service_name": service["name"],
                "usage_date": today,
                "cost": round(service["cost"], 4),
                "currency": DEFAULT_CURRENCY,
                "carbon_footprint": round(carbon_for_cost(service["cost"]), 4),
                "updated_at": db.now_iso(),
            })
    return len(db.upsert_billing_data(rows))


def _write_services_usage(user_id: str, total: float, projects: list) -> int:
    rows = [service_usage_row(user_id, s["id"], s["name"], s["category"],
                              total * s["share"], total, len(projects))
            for s in SERVICE_SPLITS]
    return len(db.upsert_services_usage(rows))


def _write_trend(user_id: str, total: float) -> int:
    record_monthly_trend(user_id, total, carbon_for_cost(total))
    return 1


def _count(key: str):
    """Adapt a service returning a stats dict (or None) to a row count."""
    def run(service, *args):
        result = service(*args)
        return None if result is None else result.get(key, 0)
    return run


def sync_costs(user_id: str) -> dict | None:
    """Heuristic full sync across every FinOps table.

    Returns None when the user has no active connection. Raises
    oauth.TokenRefreshError when the stored tokens can no longer be refreshed.
    """
    connection = db.get_active_connection(user_id)
    if not connection:
        return None

    stats = {"tablesUpdated": [], "totalRecords": 0, "apiCallsUsed": 0, "errors": []}
    fetcher = connections.fetcher_for(connection)
    projects, accounts = _base_data(connection, fetcher, stats)
    total = connections.monthly_total(connection)

    logger.info("Full sync for %s: %d projects, %d billing accounts, total %.2f",
                user_id, len(projects), len(accounts), total)

    _run_step(stats, "gcp_connections", _write_connection, user_id, total, projects, accounts)
    _run_step(stats, "gcp_billing_accounts", _write_billing_accounts,
              user_id, total, projects, accounts)
    _run_step(stats, "gcp_projects", _write_projects, user_id, total, projects, accounts)
    _run_step(stats, "gcp_billing_data", _write_billing_data, user_id, total, projects, accounts)
    _run_step(stats, "gcp_services_usage", _write_services_usage, user_id, total, projects)
    _run_step(stats, "gcp_monthly_trends", _write_trend, user_id, total)
    _run_step(stats, "gcp_optimization_recommendations",
              _count("recommendationsStored"), recommendations.sync_recommendations, user_id)
    _run_step(stats, "gcp_carbon_footprint",
              _count("carbonRecordsStored"), carbon.sync_carbon_footprint, user_id, fetcher)
    _run_step(stats, "gcp_cost_anomalies",
              _count("rowsStored"), anomalies.detect_anomalies, user_id)
    _run_step(stats, "gcp_budgets_tracking",
              _count("budgetsStored"), budgets.sync_budgets, user_id, fetcher)

    stats["apiCallsUsed"] = fetcher.api_calls
    db.log_action(user_id, "optimized_full_sync", {
        "tablesUpdated": stats["tablesUpdated"],
        "totalRecords": stats["totalRecords"],
        "apiCallsUsed": stats["apiCallsUsed"],
        "errors": stats["errors"],
    }, result="partial" if stats["errors"] else "success")
    return stats


# ---------------------------------------------------------------------------
# BigQuery billing export
# ---------------------------------------------------------------------------

def sync_bigquery_costs(user_id: str) -> dict | None:
    """Pull real costs from the billing export and store them.

    Returns None when the user has no active connection.
    """
    connection = db.get_active_connection(user_id)
    if not connection:
        return None

    fetcher = connections.fetcher_for(connection)
    report = fetcher.fetch_billing_export_costs()
    total = report["totalMonthlyCost"]
    currency = report["currency"]

    projects_updated = 0
    for project in report["costsByProject"]:
        updated = db.update("gcp_projects", {
            "monthly_cost": round(project["totalCost"], 4),
            "monthly_carbon": round(carbon_for_cost(project["totalCost"]), 4),
            "cost_percentage": round(percentage(project["totalCost"], total), 2),
            "has_export_bigquery": True,
            "updated_at": db.now_iso(),
        }, {"user_id": user_id, "project_id": project["projectId"]})
        projects_updated += len(updated)

    rows = [service_usage_row(user_id, s["serviceId"], s["serviceName"], "billing_export",
                              s["totalCost"], total, s["projectsCount"], currency)
            for s in report["costsByService"]]
    services_stored = len(db.upsert_services_usage(rows))

    if total > 0:
        db.update_connection(user_id, {
            "total_monthly_cost": round(total, 4),
            "total_monthly_carbon": round(carbon_for_cost(total), 4),
            "currency": currency,
            "last_finops_sync": db.now_iso(),
            "finops_sync_status": "bigquery_synced",
        })
        record_monthly_trend(user_id, total, carbon_for_cost(total))
    else:
        db.update_connection(user_id, {"finops_sync_status": "no_export_data"})

    db.log_action(user_id, "sync_bigquery_costs", {
        "totalMonthlyCost": total,
        "projectsUpdated": projects_updated,
        "servicesStored": services_stored,
        "tablesFound": len(report["tablesFound"]),
    })
    logger.info("BigQuery cost sync for %s: %.2f %s over %d tables",
                user_id, total, currency, len(report["tablesFound"]))

    return {
        "totalMonthlyCost": total,
        "currency": currency,
        "projectsUpdated": projects_updated,
        "servicesStored": services_stored,
        "costsByProject": report["costsByProject"],
        "costsByService": report["costsByService"],
        "datasetsAnalyzed": report["datasetsAnalyzed"],
        "tablesFound": report["tablesFound"],
        "processingTimeMs": report["processingTimeMs"],
        "apiCallsUsed": fetcher.api_calls,
    }
