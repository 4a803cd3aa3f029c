"""FinOps dashboard aggregation over stored gcp_* tables."""

import time

from greenops_dashboard import supabase_client as db
from greenops_dashboard.config import DEFAULT_CURRENCY
from greenops_dashboard.services.cost_split import percentage
from greenops_dashboard.services.recommendations import sort_recommendations

TOP_N = 10
SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}


def _fill_trend_changes(trends: list[dict]) -> list[dict]:
    """Trends newest first; compute missing change % against the next-older month."""
    out = []
    for i, t in enumerate(trends):
        entry = {
            "month": t["trend_month"],
            "totalCost": float(t.get("total_cost") or 0),
            "totalCarbon": float(t.get("total_carbon") or 0),
            "costChangePercentage": t.get("cost_change_percentage"),
            "carbonChangePercentage": t.get("carbon_change_percentage"),
        }
        older = trends[i + 1] if i + 1 < len(trends) else None
        if older:
            prev_cost = float(older.get("total_cost") or 0)
            prev_carbon = float(older.get("total_carbon") or 0)
            if entry["costChangePercentage"] is None:
                entry["costChangePercentage"] = percentage(entry["totalCost"] - prev_cost, prev_cost)
            if entry["carbonChangePercentage"] is None:
                entry["carbonChangePercentage"] = percentage(
                    entry["totalCarbon"] - prev_carbon, prev_carbon)
        out.append(entry)
    return out


def finops_dashboard(user_id: str) -> dict | None:
    """Dashboard payload for a connected user, or None without an active connection."""
    started = time.monotonic()
    connection = db.get_active_connection(user_id)
    if not connection:
        return None

    total_cost = float(connection.get("total_monthly_cost") or 0)
    total_carbon = float(connection.get("total_monthly_carbon") or 0)

    projects = db.get_projects(user_id, active_only=True)
    services = db.get_services_usage(user_id, db.current_month())[:TOP_N]
    budgets = db.get_budgets(user_id)
    recs = db.select("gcp_optimization_recommendations",
                     match={"user_id": user_id, "status": ["pending", "in_progress"]})
    anomalies = db.select("gcp_cost_anomalies",
                          match={"user_id": user_id, "status": ["open", "investigating"]})
    trends = db.get_monthly_trends(user_id, limit=6)

    top_cost = [{
        "projectId": p["project_id"],
        "projectName": p.get("project_name", ""),
        "monthlyCost": float(p.get("monthly_cost") or 0),
        "costPercentage": p.get("cost_percentage")
        or percentage(float(p.get("monthly_cost") or 0), total_cost),
        "trend": p.get("cost_trend") or "stable",
    } for p in projects[:TOP_N]]

    carbon_projects = sorted((p for p in projects if float(p.get("monthly_carbon") or 0) > 0),
                             key=lambda p: float(p["monthly_carbon"]), reverse=True)
    top_carbon = [{
        "projectId": p["project_id"],
        "projectName": p.get("project_name", ""),
        "monthlyCarbon": float(p["monthly_carbon"]),
        "carbonPercentage": p.get("carbon_percentage")
        or percentage(float(p["monthly_carbon"]), total_carbon),
        "trend": p.get("carbon_trend") or "stable",
    } for p in carbon_projects[:TOP_N]]

    top_services = [{
        "serviceId": s["service_id"],
        "serviceName": s.get("service_name", ""),
        "monthlyCost": float(s.get("monthly_cost") or 0),
        "costPercentage": s.get("cost_percentage")
        or percentage(float(s.get("monthly_cost") or 0), total_cost),
        "projectsCount": s.get("projects_count", 0),
    } for s in services]

    anomalies = sorted(anomalies, key=lambda a: SEVERITY_ORDER.get(a.get("severity"), 4))

    data = {
        "totalMonthlyCost": total_cost,
        "totalMonthlyCarbon": total_carbon,
        "currency": connection.get("currency") or DEFAULT_CURRENCY,
        "totalProjects": len(projects),
        "topCostProjects": top_cost,
        "topCarbonProjects": top_carbon,
        "topCostServices": top_services,
        "budgets": [{
            "budgetName": b.get("budget_display_name") or b["budget_name"],
            "budgetAmount": b.get("budget_amount"),
            "currentSpend": b.get("current_spend"),
            "utilizationPercentage": b.get("utilization_percentage"),
            "status": b.get("status"),
            "projectedSpend": b.get("projected_spend"),
        } for b in budgets],
        "recommendations": [{
            "id": r["recommendation_id"],
            "type": r.get("recommendation_type"),
            "title": r.get("title"),
            "description": r.get("description"),
            "potentialSavings": r.get("potential_savings"),
            "potentialCarbonReduction": r.get("potential_carbon_reduction"),
            "priority": r.get("priority"),
            "status": r.get("status"),
        } for r in sort_recommendations(recs)[:20]],
        "costAnomalies": [{
            "id": str(a.get("id", "")),
            "projectId": a.get("project_id"),
            "serviceName": a.get("service_name"),
            "anomalyType": a.get("anomaly_type"),
            "severity": a.get("severity"),
            "currentCost": a.get("current_cost"),
            "expectedCost": a.get("expected_cost"),
            "variancePercentage": a.get("variance_percentage"),
            "date": a.get("anomaly_date"),
            "status": a.get("status"),
        } for a in anomalies[:TOP_N]],
        "monthlyTrends": _fill_trend_changes(trends),
    }

    return {
        "data": data,
        "metadata": {
            "lastSync": connection.get("last_sync"),
            "lastFinopsSync": connection.get("last_finops_sync"),
            "processingTime": int((time.monotonic() - started) * 1000),
            "dataFreshness": db.now_iso(),
            "totalProjects": len(projects),
            "totalCost": total_cost,
            "totalCarbon": total_carbon,
        },
    }
