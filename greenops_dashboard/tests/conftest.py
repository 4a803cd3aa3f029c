"""Shared fixtures for GreenOps Dashboard tests.

Provides:
- fake_db: patches supabase_client with an in-memory fake
- client: FastAPI TestClient with the scheduler disabled
- auth_headers: a bearer token accepted as USER_EMAIL
- fake_fetcher: a MagicMock GCPDataFetcher returned by fetcher_for
- sample data factories for connections, projects, billing accounts
"""

import os
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

# Set env vars before any app imports
os.environ.setdefault("SUPABASE_URL", "https://fake.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "fake-key")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("OAUTH_STATE_SECRET", "test-state-secret")
os.environ.setdefault("DEFAULT_MONTHLY_COST", "0")

USER_EMAIL = "owner@example.com"


# ---------------------------------------------------------------------------
# In-memory fake Supabase
# ---------------------------------------------------------------------------

class FakeQueryResult:
    def __init__(self, data=None, count=None):
        self.data = data or []
        self.count = count


class FakeQueryBuilder:
    """Mimics the supabase-py query builder chain."""

    def __init__(self, store, table_name):
        self._store = store
        self._table = table_name
        self._filters = []
        self._order_col = None
        self._order_desc = False
        self._limit_val = None
        self._count_mode = None
        self._upsert_data = None
        self._upsert_conflict = None
        self._update_data = None
        self._delete_mode = False
        self._insert_data = None

    def select(self, columns="*", count=None):
        self._count_mode = count
        return self

    def insert(self, data):
        self._insert_data = data
        return self

    def upsert(self, data, on_conflict=None):
        self._upsert_data = data
        self._upsert_conflict = on_conflict
        return self

    def update(self, data):
        self._update_data = data
        return self

    def delete(self):
        self._delete_mode = True
        return self

    def eq(self, col, val):
        self._filters.append(("eq", col, val))
        return self

    def in_(self, col, values):
        self._filters.append(("in", col, list(values)))
        return self

    def order(self, col, desc=False):
        self._order_col = col
        self._order_desc = desc
        return self

    def limit(self, n):
        self._limit_val = n
        return self

    def _match(self, row):
        for op, col, val in self._filters:
            row_val = row.get(col)
            if op == "eq" and row_val != val:
                return False
            if op == "in" and row_val not in val:
                return False
        return True

    @staticmethod
    def _rows(data):
        return [dict(r) for r in (data if isinstance(data, list) else [data])]

    def _upsert_one(self, table, row):
        if "id" not in row:
            row["id"] = str(uuid.uuid4())
        if self._upsert_conflict:
            conflict_cols = [c.strip() for c in self._upsert_conflict.split(",")]
            for existing in table:
                if all(existing.get(c) == row.get(c) for c in conflict_cols):
                    row.pop("id")
                    existing.update(row)
                    return existing
        table.append(row)
        return row

    def execute(self):
        table = self._store[self._table]

        if self._insert_data is not None:
            rows = self._rows(self._insert_data)
            for row in rows:
                row.setdefault("id", str(uuid.uuid4()))
                table.append(row)
            return FakeQueryResult(data=rows)

        if self._upsert_data is not None:
            stored = [self._upsert_one(table, row) for row in self._rows(self._upsert_data)]
            return FakeQueryResult(data=stored)

        if self._update_data is not None:
            updated = []
            for row in table:
                if self._match(row):
                    row.update(self._update_data)
                    updated.append(row)
            return FakeQueryResult(data=updated)

        if self._delete_mode:
            removed = [r for r in table if self._match(r)]
            table[:] = [r for r in table if not self._match(r)]
            return FakeQueryResult(data=removed)

        # SELECT
        rows = [r for r in table if self._match(r)]

        if self._order_col:
            col = self._order_col
            rows.sort(
                key=lambda r: (r.get(col) is not None, r.get(col) if r.get(col) is not None else 0),
                reverse=self._order_desc,
            )

        total = len(rows)
        if self._limit_val is not None:
            rows = rows[:self._limit_val]

        return FakeQueryResult(data=rows, count=total if self._count_mode else None)


class FakeDB:
    """In-memory store keyed by table name."""

    def __init__(self):
        self.store = defaultdict(list)

    def table(self, name):
        return FakeQueryBuilder(self.store, name)

    def rows(self, name, **match):
        return [r for r in self.store[name] if all(r.get(k) == v for k, v in match.items())]

    def clear(self):
        self.store.clear()


@pytest.fixture
def fake_db():
    """Provides a clean in-memory DB and patches supabase_client._table."""
    db = FakeDB()

    def fake_table(name):
        return FakeQueryBuilder(db.store, name)

    with patch("greenops_dashboard.supabase_client._table", side_effect=fake_table):
        with patch("greenops_dashboard.supabase_client.get_client", return_value=MagicMock()):
            yield db


@pytest.fixture
def client(fake_db):
    """Sync test client for the FastAPI app with mocked DB and no scheduler."""
    from fastapi.testclient import TestClient

    from greenops_dashboard.app import create_app

    @asynccontextmanager
    async def noop_lifespan(app):
        yield

    app = create_app()
    app.router.lifespan_context = noop_lifespan

    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers():
    """Bearer header that resolves to USER_EMAIL."""
    user = {"id": str(uuid.uuid4()), "email": USER_EMAIL}
    with patch("greenops_dashboard.supabase_client.get_user", return_value=user):
        yield {"Authorization": "Bearer test-access-token"}


@pytest.fixture
def fake_fetcher():
    """MagicMock fetcher handed out by connections.fetcher_for."""
    fetcher = MagicMock()
    fetcher.api_calls = 4
    fetcher.export_project = "billing-export-project"
    fetcher.fetch_initial_data.return_value = {
        "success": True,
        "data": {
            "accountInfo": {"email": USER_EMAIL, "name": "Owner"},
            "billingAccounts": [gcp_billing_account()],
            "projects": [gcp_project("alpha"), gcp_project("beta")],
        },
        "error": None,
    }
    fetcher.fetch_budgets.return_value = []
    fetcher.fetch_carbon_footprint.return_value = {"totalMonthlyCarbon": 0.0, "carbonByProject": []}
    with patch("greenops_dashboard.services.connections.fetcher_for", return_value=fetcher):
        yield fetcher


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------

def gcp_project(project_id="alpha", billing_account="billingAccounts/0000-AAAA-1111"):
    """A project dict as returned by GCPDataFetcher.fetch_projects."""
    return {
        "projectId": project_id,
        "name": project_id.title(),
        "projectNumber": "1234567890",
        "lifecycleState": "ACTIVE",
        "billingAccountName": billing_account,
    }


def gcp_billing_account(name="billingAccounts/0000-AAAA-1111", open_=True):
    """A billing account dict as returned by GCPDataFetcher.fetch_billing_accounts."""
    return {
        "name": name,
        "displayName": "Main Billing",
        "open": open_,
        "masterBillingAccount": "",
        "projectCount": 2,
    }


def make_connection(**overrides):
    from greenops_dashboard.gcp.oauth import encrypt_tokens

    defaults = {
        "id": str(uuid.uuid4()),
        "user_id": USER_EMAIL,
        "connection_status": "connected",
        "account_info": {
            "email": USER_EMAIL,
            "projects": [gcp_project("alpha"), gcp_project("beta")],
            "billingAccounts": [gcp_billing_account()],
        },
        "tokens_encrypted": encrypt_tokens({
            "access_token": "ya29.test",
            "refresh_token": "1//refresh",
            "expires_at": "2099-01-01T00:00:00+00:00",
        }),
        "total_monthly_cost": 10.0,
        "total_monthly_carbon": 1.0,
        "currency": "EUR",
        "last_sync": datetime.now(timezone.utc).isoformat(),
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }
    defaults.update(overrides)
    return defaults


def make_project(project_id="alpha", **overrides):
    defaults = {
        "id": str(uuid.uuid4()),
        "user_id": USER_EMAIL,
        "project_id": project_id,
        "project_name": project_id.title(),
        "billing_account_id": "0000-AAAA-1111",
        "monthly_cost": 5.0,
        "monthly_carbon": 0.5,
        "cost_percentage": 50.0,
        "carbon_percentage": 50.0,
        "cost_trend": "stable",
        "has_export_bigquery": False,
        "is_active": True,
        "is_archived": False,
        "sync_status": "connected",
    }
    defaults.update(overrides)
    return defaults


def make_billing_account(**overrides):
    defaults = {
        "id": str(uuid.uuid4()),
        "user_id": USER_EMAIL,
        "billing_account_id": "0000-AAAA-1111",
        "billing_account_name": "billingAccounts/0000-AAAA-1111",
        "display_name": "Main Billing",
        "is_open": True,
        "monthly_cost": 8.0,
    }
    defaults.update(overrides)
    return defaults


def make_service_usage(service_id="compute-engine", **overrides):
    from greenops_dashboard.supabase_client import current_month

    defaults = {
        "id": str(uuid.uuid4()),
        "user_id": USER_EMAIL,
        "service_id": service_id,
        "service_name": service_id.replace("-", " ").title(),
        "usage_month": current_month(),
        "monthly_cost": 4.0,
        "cost_percentage": 40.0,
        "projects_count": 2,
    }
    defaults.update(overrides)
    return defaults
