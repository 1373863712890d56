from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from isp_billing.core.api_docs import error_responses
from isp_billing.core.config import settings
from isp_billing.core.deps import get_db
from isp_billing.models.instruments import MassRebate, RebateUsage, StaggeredInstallation, StaggeredInstallment
from isp_billing.schemas.billing import (
    BillingDiagnosticsOut,
    DispatchEntryOut,
    MassRebateCreateIn,
    MassRebateOut,
    StaggeredInstallationCreateIn,
    StaggeredInstallationOut,
    StaggeredInstallmentOut,
)
from isp_billing.services.audit_service import log_audit_event
from isp_billing.services.diagnostics_service import get_billing_diagnostics
from isp_billing.services.dispatch_service import reset_document_to_pending
from isp_billing.services.instrument_service import create_staggered_installation, issue_mass_rebate

router = APIRouter(prefix="/billing", tags=["billing"])


def _rebate_out(db: Session, rebate: MassRebate) -> MassRebateOut:
    affected = db.execute(
        select(func.count(RebateUsage.id)).where(RebateUsage.rebate_id == rebate.id)
    ).scalar_one()
    return MassRebateOut(
        id=rebate.id,
        rebate_type=rebate.rebate_type,
        selected_rebate=rebate.selected_rebate,
        number_of_dates=rebate.number_of_dates,
        billing_period=rebate.billing_period,
        status=rebate.status,
        remarks=rebate.remarks,
        accounts_affected=int(affected or 0),
    )


def _installation_out(db: Session, installation: StaggeredInstallation) -> StaggeredInstallationOut:
    installments = db.execute(
        select(StaggeredInstallment)
        .where(StaggeredInstallment.installation_id == installation.id)
        .order_by(StaggeredInstallment.installment_no.asc())
    ).scalars().all()
    return StaggeredInstallationOut(
        id=installation.id,
        account_id=installation.account_id,
        staggered_balance=float(installation.staggered_balance),
        months_to_pay=installation.months_to_pay,
        monthly_payment=float(installation.monthly_payment),
        start_period=installation.start_period,
        status=installation.status,
        remarks=installation.remarks,
        installments=[StaggeredInstallmentOut.model_validate(item) for item in installments],
    )


@router.get(
    "/diagnostics",
    response_model=BillingDiagnosticsOut,
    summary="Billing cycle diagnostics for a day",
    responses=error_responses(422, 500),
)
def billing_diagnostics(
    on: date | None = Query(default=None, description="Day to inspect (defaults to today)"),
    db: Session = Depends(get_db),
):
    return get_billing_diagnostics(db, on=on or date.today())


@router.post(
    "/documents/{entry_id}/reset",
    response_model=DispatchEntryOut,
    summary="Reset a dispatch entry to pending",
    responses=error_responses(400, 404, 500),
)
def reset_dispatch_entry(entry_id: str, db: Session = Depends(get_db)):
    try:
        return reset_document_to_pending(db, entry_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Dispatch entry not found")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post(
    "/rebates",
    response_model=MassRebateOut,
    summary="Issue a mass rebate for an outage area",
    responses=error_responses(400, 422, 500),
)
def create_mass_rebate(payload: MassRebateCreateIn, db: Session = Depends(get_db)):
    try:
        rebate = issue_mass_rebate(
            db,
            rebate_type=payload.rebate_type,
            selected_rebate=payload.selected_rebate,
            number_of_dates=payload.number_of_dates,
            billing_period=payload.billing_period,
            remarks=payload.remarks,
        )
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc))

    out = _rebate_out(db, rebate)
    log_audit_event(
        db,
        actor_id=payload.operator_id or settings.billing_system_operator_id,
        action="rebate.issue",
        target_type="mass_rebate",
        target_id=rebate.id,
        metadata_json={
            "rebate_type": out.rebate_type,
            "selected_rebate": out.selected_rebate,
            "billing_period": out.billing_period,
            "accounts_affected": out.accounts_affected,
        },
    )
    db.commit()
    return out


@router.post(
    "/staggered-installations",
    response_model=StaggeredInstallationOut,
    summary="Spread an installation balance over monthly dues",
    responses=error_responses(400, 404, 422, 500),
)
def create_staggered(payload: StaggeredInstallationCreateIn, db: Session = Depends(get_db)):
    try:
        installation = create_staggered_installation(
            db,
            account_id=payload.account_id,
            staggered_balance=payload.staggered_balance,
            months_to_pay=payload.months_to_pay,
            start_period=payload.start_period,
            remarks=payload.remarks,
        )
    except LookupError:
        db.rollback()
        raise HTTPException(status_code=404, detail="Account not found")
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc))

    log_audit_event(
        db,
        actor_id=payload.operator_id or settings.billing_system_operator_id,
        action="staggered_installation.create",
        target_type="staggered_installation",
        target_id=installation.id,
        metadata_json={
            "account_id": installation.account_id,
            "staggered_balance": str(installation.staggered_balance),
            "months_to_pay": installation.months_to_pay,
        },
    )
    db.commit()
    return _installation_out(db, installation)
