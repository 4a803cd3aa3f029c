"""GCP data fetcher: Cloud Billing, Resource Manager, Budgets and BigQuery REST calls.

Every method returns plain dicts/lists shaped for the gcp_* tables. Calls are
sequential; ``api_calls`` counts requests issued for the sync summaries.
"""

import logging
import re
import time

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from greenops_dashboard.config import BILLING_EXPORT_PROJECT, DEFAULT_CURRENCY

logger = logging.getLogger(__name__)

BILLING_TABLE_MARKERS = ("gcp_billing_export", "billing_export", "gcp_billing")
CARBON_DATASET = "carbon_footprint"
QUERY_TIMEOUT_MS = 30000


def slugify(name: str) -> str:
    """'Compute Engine' -> 'compute-engine'."""
    return re.sub(r"\s+", "-", (name or "").strip().lower())


def _cell(row: dict, index: int, default=None):
    """Value of column ``index`` in a BigQuery REST row ({"f": [{"v": ...}]})."""
    cells = row.get("f") or []
    if index >= len(cells):
        return default
    value = cells[index].get("v")
    return default if value is None else value


def _float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def billing_account_id(name: str) -> str:
    """'billingAccounts/0123-4567' -> '0123-4567'."""
    return (name or "").split("/")[-1]


class GCPDataFetcher:
    """Issues Google API calls on behalf of one connected user."""

    def __init__(self, credentials, export_project: str | None = None):
        self.credentials = credentials
        self.export_project = export_project or BILLING_EXPORT_PROJECT
        self.api_calls = 0
        self._services = {}

    def _service(self, name: str, version: str):
        key = (name, version)
        if key not in self._services:
            self._services[key] = build(name, version, credentials=self.credentials,
                                        cache_discovery=False)
        return self._services[key]

    def _execute(self, request) -> dict:
        self.api_calls += 1
        return request.execute()

    def _paginate(self, collection, request, key: str) -> list[dict]:
        items = []
        while request is not None:
            response = self._execute(request)
            items.extend(response.get(key, []))
            request = collection.list_next(previous_request=request, previous_response=response)
        return items

    # -----------------------------------------------------------------------
    # Base data
    # -----------------------------------------------------------------------

    def fetch_account_info(self) -> dict:
        data = self._execute(self._service("oauth2", "v2").userinfo().get())
        return {"email": data.get("email", ""), "name": data.get("name", "")}

    def fetch_billing_accounts(self) -> list[dict]:
        billing = self._service("cloudbilling", "v1")
        accounts_api = billing.billingAccounts()
        raw = self._paginate(accounts_api, accounts_api.list(), "billingAccounts")

        accounts = []
        for account in raw:
            projects_api = accounts_api.projects()
            try:
                linked = self._paginate(projects_api, projects_api.list(name=account["name"]),
                                        "projectBillingInfo")
            except HttpError as e:
                logger.warning("Could not list projects for %s: %s", account.get("name"), e)
                linked = []
            accounts.append({
                "name": account.get("name", ""),
                "displayName": account.get("displayName", ""),
                "open": bool(account.get("open", False)),
                "masterBillingAccount": account.get("masterBillingAccount", ""),
                "projectCount": len(linked),
            })
        return accounts

    def fetch_projects(self) -> list[dict]:
        projects_api = self._service("cloudresourcemanager", "v1").projects()
        raw = self._paginate(projects_api, projects_api.list(), "projects")
        billing = self._service("cloudbilling", "v1")

        projects = []
        for project in raw:
            project_id = project.get("projectId", "")
            billing_account_name = ""
            try:
                info = self._execute(
                    billing.projects().getBillingInfo(name=f"projects/{project_id}")
                )
                billing_account_name = info.get("billingAccountName", "")
            except HttpError:
                logger.warning("No billing info for project %s", project_id)

            projects.append({
                "projectId": project_id,
                "name": project.get("name", ""),
                "projectNumber": project.get("projectNumber", ""),
                "lifecycleState": project.get("lifecycleState", ""),
                "createTime": project.get("createTime", ""),
                "billingAccountName": billing_account_name,
            })
        return projects

    def fetch_budgets(self, billing_account_name: str) -> list[dict]:
        """Budgets defined on one billing account. Errors yield an empty list."""
        budgets_api = self._service("billingbudgets", "v1").billingAccounts().budgets()
        try:
            raw = self._paginate(budgets_api, budgets_api.list(parent=billing_account_name),
                                 "budgets")
        except HttpError as e:
            logger.warning("Error fetching budgets for %s: %s", billing_account_name, e)
            return []

        return [{
            "name": b.get("name", ""),
            "displayName": b.get("displayName", ""),
            "amount": b.get("amount", {}),
            "budgetFilter": b.get("budgetFilter", {}),
            "thresholdRules": b.get("thresholdRules", []),
        } for b in raw]

    def fetch_initial_data(self) -> dict:
        """Account info, billing accounts and projects. Never raises."""
        try:
            data = {
                "accountInfo": self.fetch_account_info(),
                "billingAccounts": self.fetch_billing_accounts(),
                "projects": self.fetch_projects(),
            }
        except HttpError as e:
            logger.warning("GCP initial data fetch failed: %s", e)
            return {"success": False, "data": None, "error": str(e)}
        return {"success": True, "data": data, "error": None}

    # -----------------------------------------------------------------------
    # BigQuery
    # -----------------------------------------------------------------------

    def list_datasets(self, project: str) -> list[str]:
        datasets_api = self._service("bigquery", "v2").datasets()
        raw = self._paginate(datasets_api, datasets_api.list(projectId=project), "datasets")
        return [d["datasetReference"]["datasetId"] for d in raw if d.get("datasetReference")]

    def list_tables(self, project: str, dataset: str) -> list[str]:
        tables_api = self._service("bigquery", "v2").tables()
        raw = self._paginate(tables_api, tables_api.list(projectId=project, datasetId=dataset),
                             "tables")
        return [t["tableReference"]["tableId"] for t in raw if t.get("tableReference")]

    def run_query(self, sql: str, project: str | None = None,
                  timeout_ms: int = QUERY_TIMEOUT_MS,
                  params: dict | None = None) -> list[dict]:
        """Run standard SQL and return the raw REST rows.

        ``params`` are bound as named STRING parameters (``@name`` in the SQL).
        """
        target = project or self.export_project
        body = {"query": sql, "useLegacySql": False, "timeoutMs": timeout_ms}
        if params:
            body["parameterMode"] = "NAMED"
            body["queryParameters"] = [{
                "name": name,
                "parameterType": {"type": "STRING"},
                "parameterValue": {"value": value},
            } for name, value in params.items()]

        logger.info("Executing BigQuery query on project %s", target)
        response = self._execute(
            self._service("bigquery", "v2").jobs().query(projectId=target, body=body)
        )
        return response.get("rows", [])

    def find_billing_export_tables(self, project: str | None = None) -> list[dict]:
        """Every dataset, with the billing export tables it holds."""
        target = project or self.export_project
        found = []
        for dataset in self.list_datasets(target):
            try:
                tables = self.list_tables(target, dataset)
            except HttpError as e:
                logger.warning("Could not analyze dataset %s: %s", dataset, e)
                continue
            billing_tables = [t for t in tables if any(m in t for m in BILLING_TABLE_MARKERS)]
            found.append({
                "datasetId": dataset,
                "totalTables": len(tables),
                "billingTables": billing_tables,
                "tableNames": tables[:5],
            })
        return found

    def probe_billing_table(self, dataset: str, table: str, project: str | None = None) -> dict:
        """Row count, total cost and date range of one billing export table."""
        target = project or self.export_project
        sql = f"""
            SELECT
              COUNT(*) AS total_records,
              SUM(cost) AS total_cost,
              currency,
              MIN(usage_start_time) AS earliest_date,
              MAX(usage_start_time) AS latest_date
            FROM `{target}.{dataset}.{table}`
            WHERE cost > 0
            GROUP BY currency
            LIMIT 5
        """
        try:
            rows = self.run_query(sql, target, timeout_ms=15000)
        except HttpError as e:
            logger.error("Query error on %s.%s: %s", dataset, table, e)
            return {"dataset": dataset, "table": table, "status": "QUERY_ERROR", "error": str(e)}

        if not rows:
            return {"dataset": dataset, "table": table, "status": "NO_DATA",
                    "message": "Table exists but no cost data found"}

        row = rows[0]
        total_cost = _float(_cell(row, 1))
        return {
            "dataset": dataset,
            "table": table,
            "status": "SUCCESS",
            "totalRecords": _int(_cell(row, 0)),
            "totalCost": total_cost,
            "currency": _cell(row, 2, DEFAULT_CURRENCY),
            "dataRange": {"earliestDate": _cell(row, 3, ""), "latestDate": _cell(row, 4, "")},
            "hasRealCosts": total_cost > 0,
        }

    def fetch_billing_export_costs(self, project: str | None = None) -> dict:
        """Last 30 days of billing export costs aggregated by project and service."""
        target = project or self.export_project
        started = time.monotonic()
        report = {
            "totalMonthlyCost": 0.0,
            "currency": DEFAULT_CURRENCY,
            "costsByProject": {},
            "costsByService": {},
            "datasetsAnalyzed": [],
            "tablesFound": [],
        }

        for dataset in self.find_billing_export_tables(target):
            report["datasetsAnalyzed"].append({
                "datasetId": dataset["datasetId"],
                "totalTables": dataset["totalTables"],
                "billingTables": len(dataset["billingTables"]),
                "tableNames": dataset["tableNames"],
            })
            for table in dataset["billingTables"]:
                self._aggregate_table(report, target, dataset["datasetId"], table)

        report["costsByProject"] = sorted(report["costsByProject"].values(),
                                          key=lambda p: p["totalCost"], reverse=True)
        report["costsByService"] = sorted(report["costsByService"].values(),
                                          key=lambda s: s["totalCost"], reverse=True)
        report["processingTimeMs"] = int((time.monotonic() - started) * 1000)
        return report

    def _aggregate_table(self, report: dict, project: str, dataset: str, table: str) -> None:
        sql = f"""
            SELECT
              project.id AS project_id,
              project.name AS project_name,
              service.description AS service_name,
              SUM(cost) AS total_cost,
              currency,
              COUNT(*) AS record_count
            FROM `{project}.{dataset}.{table}`
            WHERE cost > 0
              AND usage_start_time >= TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL 30 DAY)
            GROUP BY project_id, project_name, service_name, currency
            ORDER BY total_cost DESC
        """
        try:
            rows = self.run_query(sql, project)
        except HttpError as e:
            logger.warning("Could not query table %s.%s: %s", dataset, table, e)
            report["tablesFound"].append({"dataset": dataset, "table": table,
                                          "error": str(e), "hasRecentData": False})
            return

        report["tablesFound"].append({"dataset": dataset, "table": table,
                                      "recordsFound": len(rows), "hasRecentData": bool(rows)})

        for row in rows:
            cost = _float(_cell(row, 3))
            if cost <= 0:
                continue
            project_id = _cell(row, 0, "")
            service_name = _cell(row, 2, "Unknown")
            currency = _cell(row, 4, DEFAULT_CURRENCY)
            records = _int(_cell(row, 5))

            report["totalMonthlyCost"] += cost
            report["currency"] = currency

            p = report["costsByProject"].setdefault(project_id, {
                "projectId": project_id,
                "projectName": _cell(row, 1, project_id),
                "totalCost": 0.0,
                "currency": currency,
                "services": [],
                "recordCount": 0,
            })
            p["totalCost"] += cost
            p["recordCount"] += records
            p["services"].append({"serviceName": service_name, "cost": cost, "recordCount": records})

            s = report["costsByService"].setdefault(service_name, {
                "serviceId": slugify(service_name),
                "serviceName": service_name,
                "totalCost": 0.0,
                "currency": currency,
                "projects": [],
                "projectsCount": 0,
            })
            s["totalCost"] += cost
            if project_id not in s["projects"]:
                s["projects"].append(project_id)
                s["projectsCount"] += 1

    def fetch_carbon_footprint(self, billing_account: str, project: str | None = None) -> dict:
        """Previous month's market-based kgCO2e per project from the Carbon Footprint export."""
        target = project or self.export_project
        account_id = billing_account_id(billing_account)
        sql = f"""
            SELECT
              project.id AS project_id,
              project.name AS project_name,
              SUM(carbon_footprint_total_kgCO2e.market_based) AS total_carbon
            FROM `{target}.{CARBON_DATASET}.carbon_footprint`
            WHERE billing_account_id = @account_id
              AND usage_month = DATE_TRUNC(DATE_SUB(CURRENT_DATE(), INTERVAL 1 MONTH), MONTH)
            GROUP BY project_id, project_name
            ORDER BY total_carbon DESC
        """
        try:
            rows = self.run_query(sql, target, params={"account_id": account_id})
        except HttpError as e:
            logger.warning("Could not fetch carbon data for %s: %s", billing_account, e)
            return {"totalMonthlyCarbon": 0.0, "carbonByProject": []}

        by_project = [{
            "projectId": _cell(row, 0, ""),
            "projectName": _cell(row, 1, _cell(row, 0, "")),
            "totalCarbon": _float(_cell(row, 2)),
        } for row in rows]
        total = sum(p["totalCarbon"] for p in by_project)
        for p in by_project:
            p["percentageOfTotal"] = (p["totalCarbon"] / total * 100) if total else 0.0
        return {"totalMonthlyCarbon": total, "carbonByProject": by_project}
