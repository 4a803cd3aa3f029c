"""Cost-splitting heuristics used when per-resource billing data is unavailable."""

# Fixed share of a cost attributed to each service
SERVICE_SPLITS = [
    {"id": "compute-engine", "name": "Compute Engine", "category": "compute", "share": 0.4},
    {"id": "cloud-storage", "name": "Cloud Storage", "category": "storage", "share": 0.2},
    {"id": "bigquery", "name": "BigQuery", "category": "database", "share": 0.2},
    {"id": "networking", "name": "Networking", "category": "networking", "share": 0.2},
]

# kg CO2e per currency unit spent
CARBON_PER_EUR = 0.1

OPEN_ACCOUNT_SHARE = 0.8


def percentage(part: float, total: float) -> float:
    """part as a percentage of total; 0 when total is 0."""
    return (part / total) * 100 if total else 0.0


def split_evenly(total: float, n: int) -> float:
    """Each of n projects gets an equal share."""
    return total / n if n else 0.0


def split_by_service(cost: float) -> list[dict]:
    """Apply SERVICE_SPLITS to one cost."""
    return [{
        "id": s["id"],
        "name": s["name"],
        "category": s["category"],
        "cost": cost * s["share"],
    } for s in SERVICE_SPLITS]


def billing_account_cost(total: float, is_open: bool) -> float:
    """Open accounts carry 80% of the total, closed ones nothing."""
    return total * OPEN_ACCOUNT_SHARE if is_open else 0.0


def carbon_for_cost(cost: float) -> float:
    return cost * CARBON_PER_EUR


def cost_trend(project_cost: float, total: float) -> str:
    if not total:
        return "stable"
    share = percentage(project_cost, total)
    if share > 40:
        return "increasing"
    if share < 20:
        return "decreasing"
    return "stable"
