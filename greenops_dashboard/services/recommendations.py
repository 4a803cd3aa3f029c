"""Optimization recommendations derived from stored costs."""

import logging

from greenops_dashboard import supabase_client as db
from greenops_dashboard.config import DEFAULT_CURRENCY
from greenops_dashboard.services import connections
from greenops_dashboard.services.cost_split import carbon_for_cost

logger = logging.getLogger(__name__)

# (service id, service name, share of total, savings rate)
SERVICE_SAVINGS = [
    ("compute-engine", "Compute Engine", 0.4, 0.3),
    ("cloud-storage", "Cloud Storage", 0.2, 0.1),
    ("bigquery", "BigQuery", 0.2, 0.15),
]

MIN_SERVICE_COST = 0.5
HIGH_PRIORITY_COST = 1.0

PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def _recommendation(rec_id: str, rec_type: str, priority: str, effort: str,
                    title: str, description: str, savings: float, carbon: float,
                    project_id: str = "", service_id: str = "") -> dict:
    return {
        "recommendation_id": rec_id,
        "recommendation_type": rec_type,
        "priority": priority,
        "effort_level": effort,
        "title": title,
        "description": description,
        "project_id": project_id,
        "service_id": service_id,
        "potential_savings": round(savings, 2),
        "potential_carbon_reduction": round(carbon, 4),
        "currency": DEFAULT_CURRENCY,
        "status": "pending",
    }


def generate_recommendations(total: float, projects: list[dict]) -> list[dict]:
    """Build the recommendation set for a monthly total and the stored projects."""
    recs = [_recommendation(
        "cost-optimization-main", "cost", "high", "medium",
        f"Global cost optimization ({total:.2f} {DEFAULT_CURRENCY}/month)",
        f"Monthly costs of {total:.2f} {DEFAULT_CURRENCY} can typically be cut by 15-25% "
        "through rightsizing, committed use discounts and idle resource cleanup.",
        savings=total * 0.2,
        carbon=total * 0.02,
    )]

    for service_id, name, share, rate in SERVICE_SAVINGS:
        cost = total * share
        if cost <= MIN_SERVICE_COST:
            continue
        savings = cost * rate
        recs.append(_recommendation(
            f"{service_id}-optimization", "cost",
            "high" if cost > HIGH_PRIORITY_COST else "medium", "medium",
            f"Optimize {name} ({cost:.2f} {DEFAULT_CURRENCY}/month)",
            f"{name} accounts for {share * 100:.0f}% of spend. "
            f"Estimated savings: {savings:.2f} {DEFAULT_CURRENCY}/month.",
            savings=savings,
            carbon=carbon_for_cost(savings),
            service_id=service_id,
        ))

    for project in projects:
        if not project.get("has_export_bigquery"):
            continue
        project_id = project["project_id"]
        recs.append(_recommendation(
            f"bigquery-detailed-analysis-{project_id}", "performance", "high", "low",
            f"Detailed BigQuery analysis available for {project_id}",
            f"Project {project_id} exports billing data to BigQuery. Per-SKU and "
            "per-region queries can pinpoint specific savings.",
            savings=total * 0.1,
            carbon=0.05,
            project_id=project_id,
            service_id="bigquery",
        ))

    if total > 0:
        recs.append(_recommendation(
            "budget-governance", "cost", "medium", "low",
            "Tighten budget governance",
            "Create per-project budgets with alerts at 50%, 80% and 100%.",
            savings=total * 0.05,
            carbon=0.01,
            service_id="billing",
        ))
        recs.append(_recommendation(
            "carbon-optimization", "carbon", "medium", "medium",
            "Reduce carbon footprint",
            f"Move workloads of your {len(projects)} project(s) to low-carbon regions "
            "such as europe-west4.",
            savings=0.0,
            carbon=carbon_for_cost(total),
            service_id="carbon-footprint",
        ))

    return recs


def sync_recommendations(user_id: str) -> dict:
    """Replace the user's pending recommendations with a fresh set.

    Recommendations the user already moved out of ``pending`` keep their status.
    """
    connection = db.get_connection(user_id)
    total = connections.monthly_total(connection)
    projects = db.get_projects(user_id, active_only=True)

    recs = generate_recommendations(total, projects)
    actioned = {
        row["recommendation_id"]
        for row in db.select("gcp_optimization_recommendations", match={"user_id": user_id})
        if row.get("status") != "pending"
    }
    recs = [rec for rec in recs if rec["recommendation_id"] not in actioned]

    now = db.now_iso()
    for rec in recs:
        rec["user_id"] = user_id
        rec["updated_at"] = now

    db.delete("gcp_optimization_recommendations", {"user_id": user_id, "status": "pending"})
    stored = db.upsert_recommendations(recs)

    logger.info("Stored %d recommendations for %s", len(stored), user_id)
    return {
        "recommendationsStored": len(stored),
        "totalPotentialSavings": round(sum(r["potential_savings"] for r in recs), 2),
        "currency": DEFAULT_CURRENCY,
    }


def sort_recommendations(recs: list[dict]) -> list[dict]:
    """Priority high > medium > low, then biggest savings first."""
    return sorted(recs, key=lambda r: (PRIORITY_ORDER.get(r.get("priority"), 3),
                                       -float(r.get("potential_savings") or 0)))
