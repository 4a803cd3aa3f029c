"""Budget tracking: heuristic budgets per billing account plus real GCP budgets."""

import logging
from datetime import datetime, timezone

from greenops_dashboard import supabase_client as db
from greenops_dashboard.config import DEFAULT_CURRENCY
from greenops_dashboard.services import connections
from greenops_dashboard.services.cost_split import OPEN_ACCOUNT_SHARE, percentage

logger = logging.getLogger(__name__)

ACCOUNT_BUDGET_MARGIN = 1.2
GLOBAL_BUDGET_MARGIN = 1.3
GLOBAL_PROJECTION = 1.1
ALERT_THRESHOLDS = [50, 80, 100]
BILLING_MONTH_DAYS = 30

THRESHOLD_RULES = [{"threshold": t, "type": "email", "enabled": True} for t in ALERT_THRESHOLDS]


def budget_status(utilization: float) -> str:
    if utilization >= 100:
        return "over_budget"
    if utilization >= 90:
        return "critical"
    if utilization >= 75:
        return "warning"
    return "on_track"


def next_threshold(utilization: float, thresholds: list[float] | None = None) -> float | None:
    """First alert threshold strictly above the current utilization."""
    for t in thresholds if thresholds is not None else ALERT_THRESHOLDS:
        if t > utilization:
            return t
    return None


def _alerts(utilization: float) -> list[str]:
    return [f"threshold_{t}" for t in ALERT_THRESHOLDS if utilization >= t]


def _tracking_row(name: str, display: str, amount: float, spend: float,
                  projected: float, budget_filter: dict) -> dict:
    utilization = percentage(spend, amount)
    return {
        "budget_name": name,
        "budget_display_name": display,
        "budget_amount": round(amount, 2),
        "currency": DEFAULT_CURRENCY,
        "current_spend": round(spend, 2),
        "utilization_percentage": round(utilization, 2),
        "projected_spend": round(projected, 2),
        "status": budget_status(utilization),
        "next_threshold": next_threshold(utilization),
        "alerts_triggered": _alerts(utilization),
        "threshold_rules": THRESHOLD_RULES,
        "budget_filter": budget_filter,
    }


def heuristic_budgets(total: float, open_accounts: list[dict]) -> list[dict]:
    """One budget per open billing account plus a global one."""
    rows = []
    for account in open_accounts:
        spend = float(account.get("monthly_cost") or total * OPEN_ACCOUNT_SHARE)
        rows.append(_tracking_row(
            f"budget-{account['billing_account_id']}",
            f"Budget {account.get('display_name') or account['billing_account_id']}",
            amount=total * ACCOUNT_BUDGET_MARGIN,
            spend=spend,
            projected=total,
            budget_filter={"billingAccount": account.get("billing_account_name", ""),
                           "projects": "all"},
        ))
    rows.append(_tracking_row(
        "budget-global",
        "Global Budget - All Accounts",
        amount=total * GLOBAL_BUDGET_MARGIN,
        spend=total,
        projected=total * GLOBAL_PROJECTION,
        budget_filter={"scope": "all_billing_accounts", "type": "global"},
    ))
    return rows


def budget_utilization(budgets: list[dict], total_cost: float,
                       cost_by_project: list[dict], day: int | None = None) -> list[dict]:
    """Utilization of budgets returned by the Billing Budgets API.

    A budget filtered on projects is compared against the summed cost of those
    projects, otherwise against the account total. Spend is projected linearly
    over a 30-day month.
    """
    day = day or datetime.now(timezone.utc).day
    results = []
    for budget in budgets:
        specified = (budget.get("amount") or {}).get("specifiedAmount") or {}
        amount = float(specified.get("units") or 0)

        filtered = (budget.get("budgetFilter") or {}).get("projects") or []
        if filtered:
            spend = sum(p["totalCost"] for p in cost_by_project
                        if f"projects/{p['projectId']}" in filtered)
        else:
            spend = total_cost

        utilization = percentage(spend, amount)
        thresholds = [r.get("thresholdPercent", 0) * 100
                      for r in budget.get("thresholdRules") or []]
        results.append({
            "budgetName": budget.get("displayName") or budget.get("name", ""),
            "resourceName": budget.get("name", ""),
            "budgetAmount": amount,
            "currency": specified.get("currencyCode") or DEFAULT_CURRENCY,
            "currentSpend": spend,
            "utilizationPercentage": utilization,
            "projectedSpend": spend * (BILLING_MONTH_DAYS / day),
            "daysRemaining": max(BILLING_MONTH_DAYS - day, 0),
            "status": budget_status(utilization),
            "nextThreshold": next_threshold(utilization, thresholds),
        })
    return results


def _gcp_budget_rows(user_id: str, fetcher, open_accounts: list[dict], total: float) -> list[dict]:
    """Tracking rows for budgets actually configured in Cloud Billing."""
    cost_by_project = [{"projectId": p["project_id"], "totalCost": float(p.get("monthly_cost") or 0)}
                       for p in db.get_projects(user_id, active_only=True)]
    rows = []
    for account in open_accounts:
        budgets = fetcher.fetch_budgets(account.get("billing_account_name")
                                        or f"billingAccounts/{account['billing_account_id']}")
        for u in budget_utilization(budgets, total, cost_by_project):
            row = _tracking_row(
                u["resourceName"] or u["budgetName"],
                u["budgetName"],
                amount=u["budgetAmount"],
                spend=u["currentSpend"],
                projected=u["projectedSpend"],
                budget_filter={"billingAccount": account.get("billing_account_name", ""),
                               "source": "gcp"},
            )
            row["currency"] = u["currency"]
            row["next_threshold"] = u["nextThreshold"]
            rows.append(row)
    return rows


def sync_budgets(user_id: str, fetcher=None) -> dict | None:
    """Upsert budget tracking rows. Returns None when no billing account is open."""
    open_accounts = db.get_billing_accounts(user_id, open_only=True)
    if not open_accounts:
        return None

    total = connections.monthly_total(db.get_connection(user_id))
    rows = heuristic_budgets(total, open_accounts)
    if fetcher is not None:
        rows.extend(_gcp_budget_rows(user_id, fetcher, open_accounts, total))

    now = db.now_iso()
    for row in rows:
        row.update({"user_id": user_id, "updated_at": now})
    stored = db.upsert_budgets(rows)

    logger.info("Stored %d budgets for %s", len(stored), user_id)
    return {
        "budgetsStored": len(stored),
        "billingAccountsAnalyzed": len(open_accounts),
        "totalBudgetAmount": round(sum(r["budget_amount"] for r in rows), 2),
    }


def list_budgets(user_id: str) -> dict:
    """Stored budgets with an aggregate summary."""
    budgets = db.get_budgets(user_id)
    utilizations = [float(b.get("utilization_percentage") or 0) for b in budgets]
    return {
        "budgets": budgets,
        "summary": {
            "totalBudgets": len(budgets),
            "totalBudgetAmount": sum(float(b.get("budget_amount") or 0) for b in budgets),
            "totalCurrentSpend": sum(float(b.get("current_spend") or 0) for b in budgets),
            "averageUtilization": sum(utilizations) / len(utilizations) if utilizations else 0,
            "budgetsOverThreshold": sum(1 for u in utilizations if u > 80),
        },
    }
