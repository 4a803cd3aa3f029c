"""Carbon footprint estimates per project, service and region."""

import logging

from greenops_dashboard import supabase_client as db
from greenops_dashboard.services import connections
from greenops_dashboard.services.cost_split import carbon_for_cost, percentage, split_by_service

logger = logging.getLogger(__name__)

# kg CO2e per currency unit, by service
CARBON_FACTORS = {
    "compute-engine": 0.15,
    "cloud-storage": 0.05,
    "bigquery": 0.08,
    "networking": 0.03,
}
DEFAULT_CARBON_FACTOR = 0.10

REGIONS = [
    {"name": "europe-west1", "zone": "europe-west1-b", "renewable": 85},
    {"name": "europe-west4", "zone": "europe-west4-a", "renewable": 95},
    {"name": "us-central1", "zone": "us-central1-a", "renewable": 60},
]

GLOBAL_LOCATION_UPLIFT = 1.2
SUMMARY_LOCATION_UPLIFT = 1.15


def carbon_factor(service_id: str) -> float:
    return CARBON_FACTORS.get(service_id, DEFAULT_CARBON_FACTOR)


def regional_rows(project_id: str, project_cost: float, total: float) -> list[dict]:
    """One row per service split x region for a single project."""
    reference = carbon_for_cost(total)
    rows = []
    for service in split_by_service(project_cost):
        factor = carbon_factor(service["id"])
        regional_cost = service["cost"] / len(REGIONS)
        for region in REGIONS:
            location_based = regional_cost * factor
            market_based = location_based * (1 - region["renewable"] / 100)
            rows.append({
                "project_id": project_id,
                "service_id": service["id"],
                "service_name": service["name"],
                "location_region": region["name"],
                "location_zone": region["zone"],
                "monthly_carbon": round(market_based, 6),
                "carbon_location_based": round(location_based, 6),
                "carbon_percentage": round(percentage(market_based, reference), 4),
                "projects_count": 1,
            })
    return rows


def global_service_row(service: dict, total: float, projects_count: int) -> dict:
    cost = float(service.get("monthly_cost") or total * 0.25)
    carbon = cost * carbon_factor(service["service_id"])
    return {
        "project_id": "",
        "service_id": service["service_id"],
        "service_name": service.get("service_name", ""),
        "location_region": "global",
        "location_zone": "multi-zone",
        "monthly_carbon": round(carbon, 6),
        "carbon_location_based": round(carbon * GLOBAL_LOCATION_UPLIFT, 6),
        "carbon_percentage": round(percentage(carbon, carbon_for_cost(total)), 4),
        "projects_count": projects_count,
    }


def summary_row(total: float, projects_count: int) -> dict:
    carbon = carbon_for_cost(total)
    return {
        "project_id": "summary",
        "service_id": "monthly-total",
        "service_name": "Monthly Total",
        "location_region": "all-regions",
        "location_zone": "all-zones",
        "monthly_carbon": round(carbon, 6),
        "carbon_location_based": round(carbon * SUMMARY_LOCATION_UPLIFT, 6),
        "carbon_percentage": 100.0,
        "projects_count": projects_count,
    }


def sync_carbon_footprint(user_id: str, fetcher=None) -> dict | None:
    """Upsert this month's carbon estimates.

    When a fetcher is given and the Carbon Footprint export has data for an
    open billing account, the export total replaces the cost-based estimate
    on the connection. Returns None when there are no projects or services.
    """
    projects = db.get_projects(user_id, active_only=True)
    services = db.get_services_usage(user_id, db.current_month())
    if not projects and not services:
        return None

    connection = db.get_connection(user_id)
    total = connections.monthly_total(connection)
    avg_project = total / len(projects) if projects else 0.0

    rows = []
    for project in projects:
        cost = float(project.get("monthly_cost") or avg_project)
        rows.extend(regional_rows(project["project_id"], cost, total))
    rows.extend(global_service_row(s, total, len(projects)) for s in services)
    rows.append(summary_row(total, len(projects)))

    month = db.current_month()
    now = db.now_iso()
    for row in rows:
        row.update({"user_id": user_id, "usage_month": month, "updated_at": now})

    stored = db.upsert_carbon_footprint(rows)
    total_carbon = carbon_for_cost(total)

    export_carbon = None
    if fetcher is not None:
        export_carbon = _export_carbon(user_id, fetcher)
        if export_carbon:
            total_carbon = export_carbon
            db.update_connection(user_id, {"total_monthly_carbon": round(export_carbon, 4)})

    logger.info("Carbon footprint for %s: %d rows, %.3f kg CO2e",
                user_id, len(stored), total_carbon)
    return {
        "carbonRecordsStored": len(stored),
        "projectsAnalyzed": len(projects),
        "servicesAnalyzed": len(services),
        "regionsAnalyzed": len(REGIONS),
        "totalCarbonEmissions": round(total_carbon, 4),
        "source": "carbon_footprint_export" if export_carbon else "estimate",
    }


def _export_carbon(user_id: str, fetcher) -> float:
    """Sum the Carbon Footprint export over the user's open billing accounts."""
    total = 0.0
    for account in db.get_billing_accounts(user_id, open_only=True):
        report = fetcher.fetch_carbon_footprint(account.get("billing_account_name")
                                                or account["billing_account_id"])
        total += report["totalMonthlyCarbon"]
    return total
