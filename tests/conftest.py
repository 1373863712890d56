import pytest
import os
from datetime import date
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DOCUMENT_SENDER_PROVIDER", "stub")
os.environ.setdefault("PAYMENT_GATEWAY_PROVIDER", "stub")

import isp_billing.models  # noqa: F401
from isp_billing.core.config import settings
from isp_billing.core.deps import get_db
from isp_billing.core.id_utils import new_id
from isp_billing.db.base import Base
from isp_billing.main import app
from isp_billing.models.account import BillingAccount, ServicePlan


@pytest.fixture()
def session_local(tmp_path):
    original_storage = settings.document_storage_dir
    settings.document_storage_dir = tmp_path / "documents"

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    yield factory

    Base.metadata.drop_all(bind=engine)
    settings.document_storage_dir = original_storage


@pytest.fixture()
def test_context(session_local):
    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()


def create_plan(db, *, price: str = "999.00", name: str | None = None) -> ServicePlan:
    plan = ServicePlan(id=new_id(), plan_name=name or f"Fiber {price}", price=Decimal(price))
    db.add(plan)
    db.flush()
    return plan


def create_account(
    db,
    plan: ServicePlan,
    *,
    account_no: str,
    billing_day: int,
    opening_balance: str = "0.00",
    email: str | None = "subscriber@example.com",
    date_installed: date | None = None,
    **extra,
) -> BillingAccount:
    account = BillingAccount(
        id=new_id(),
        account_no=account_no,
        customer_name=f"Subscriber {account_no}",
        email=email,
        plan_id=plan.id,
        billing_day=billing_day,
        date_installed=date_installed,
        opening_balance=Decimal(opening_balance),
        account_balance=Decimal(opening_balance),
        **extra,
    )
    db.add(account)
    db.flush()
    return account
