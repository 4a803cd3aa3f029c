"""Cost anomaly detection over stored projects and services usage."""

import logging

from greenops_dashboard import supabase_client as db
from greenops_dashboard.config import ANOMALY_COST_THRESHOLD, DEFAULT_CURRENCY
from greenops_dashboard.services import connections
from greenops_dashboard.services.cost_split import percentage

logger = logging.getLogger(__name__)

HEALTH_CHECK_ID = "system-check"


def _variance(current: float, expected: float) -> float:
    return round(percentage(current - expected, expected), 2)


def _anomaly(anomaly_type: str, severity: str, current: float, expected: float,
             description: str, actions: list[str], project_id: str = "",
             service_id: str = "all-services", service_name: str = "All Services",
             variance: float | None = None) -> dict:
    return {
        "project_id": project_id,
        "service_id": service_id,
        "service_name": service_name,
        "anomaly_type": anomaly_type,
        "severity": severity,
        "current_cost": round(current, 4),
        "expected_cost": round(expected, 4),
        "variance_percentage": _variance(current, expected) if variance is None else variance,
        "currency": DEFAULT_CURRENCY,
        "description": description,
        "suggested_actions": actions,
        "status": "open",
    }


def find_anomalies(total: float, projects: list[dict], services: list[dict],
                   threshold: float = ANOMALY_COST_THRESHOLD) -> list[dict]:
    """Apply the project, service, global and trend rules. Pure; no storage."""
    found = []

    avg_project = total / len(projects) if projects else 0.0
    for project in projects:
        cost = float(project.get("monthly_cost") or avg_project)
        name = project.get("project_name") or project["project_id"]
        if avg_project and cost > avg_project * 1.5:
            found.append(_anomaly(
                "spike", "high" if cost > avg_project * 2 else "medium", cost, avg_project,
                f'Project "{name}" costs {cost:.2f} {DEFAULT_CURRENCY}/month, '
                f"{_variance(cost, avg_project):.1f}% above the average "
                f"({avg_project:.2f} {DEFAULT_CURRENCY}).",
                ["Review the project's active resources",
                 "Check running instances",
                 "Rightsize over-provisioned resources",
                 "Configure budget alerts"],
                project_id=project["project_id"],
            ))
        if 0 < cost < avg_project * 0.1:
            found.append(_anomaly(
                "unusual_pattern", "low", cost, avg_project,
                f'Project "{name}" has a very low cost ({cost:.2f} {DEFAULT_CURRENCY}/month). '
                "It may be idle or under-used.",
                ["Check whether the project is still in use",
                 "Archive it if inactive"],
                project_id=project["project_id"],
                variance=round(percentage(avg_project - cost, avg_project), 2),
            ))

    avg_service = total / len(services) if services else 0.0
    for service in services:
        cost = float(service.get("monthly_cost") or avg_service)
        if total and cost > total * 0.5:
            found.append(_anomaly(
                "spike", "high", cost, avg_service,
                f'Service "{service.get("service_name")}" is '
                f"{percentage(cost, total):.1f}% of total cost "
                f"({cost:.2f} {DEFAULT_CURRENCY}/month).",
                ["Analyse detailed usage of the service",
                 "Check resource configuration",
                 "Configure service-specific alerts"],
                service_id=service["service_id"],
                service_name=service.get("service_name", ""),
            ))

    if total > threshold:
        found.append(_anomaly(
            "budget_exceeded", "high" if total > threshold * 1.5 else "medium",
            total, threshold,
            f"Total monthly cost ({total:.2f} {DEFAULT_CURRENCY}) exceeds the expected "
            f"ceiling of {threshold:.2f} {DEFAULT_CURRENCY}.",
            ["Review the most expensive projects",
             "Set strict budgets"],
            service_id="global",
            service_name="Global Account",
        ))

    if any(p.get("cost_trend") == "increasing" for p in projects):
        found.append(_anomaly(
            "unusual_pattern", "medium", total, total * 0.9,
            "Costs are trending upwards on several projects.",
            ["Monitor cost evolution",
             "Identify the cause of the increase",
             "Add preventive alerts"],
            service_id="trend-analysis",
            service_name="Trend Analysis",
            variance=10.0,
        ))

    return found


def health_check_entry(total: float) -> dict:
    """Stored when a run finds nothing, so the dashboard shows the check happened."""
    return _anomaly(
        "unusual_pattern", "low", total, total,
        f"No cost anomalies detected. All projects and services are within normal "
        f"limits ({total:.2f} {DEFAULT_CURRENCY}/month).",
        ["Keep monitoring regularly"],
        service_id=HEALTH_CHECK_ID,
        service_name="System Health Check",
        variance=0.0,
    )


def detect_anomalies(user_id: str) -> dict | None:
    """Replace the user's anomalies with a fresh detection run.

    Returns None when there is nothing to analyse (no projects, no services).
    """
    projects = db.get_projects(user_id, active_only=True)
    services = db.get_services_usage(user_id)
    if not projects and not services:
        return None

    total = connections.monthly_total(db.get_connection(user_id))
    found = find_anomalies(total, projects, services)
    rows = found or [health_check_entry(total)]

    today = db.today_iso()
    now = db.now_iso()
    for row in rows:
        row.update({"user_id": user_id, "anomaly_date": today, "created_at": now})

    stored = db.replace_anomalies(user_id, rows)
    logger.info("Anomaly detection for %s: %d anomalies", user_id, len(found))
    return {
        "anomaliesDetected": len(found),
        "rowsStored": len(stored),
        "projectsAnalyzed": len(projects),
        "servicesAnalyzed": len(services),
    }
