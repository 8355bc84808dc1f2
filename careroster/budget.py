"""NDIS budget ledger: pricing a completed shift and deducting it from a client's budget.

The deduction is a single conditional UPDATE: the remaining balance only
changes when it still covers the full cost, so concurrent completions can
never push a category below zero and nothing is ever partially deducted.
Every outcome other than "not applicable" lands in the activity log, and no
failure here is allowed to fail the shift completion that triggered it.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update

from . import config
from .database import (
    STAFF_RATIOS,
    BudgetTransaction,
    ConflictError,
    NdisBudget,
    Shift,
    ensure_aware,
    get_client_in_tenant,
    get_tenant_record,
    record_activity,
)
from .logging_setup import get_logger
from .pricing import SHIFT_TYPES, lookup_rate


DEFAULT_RATIO = "1:1"
SLEEPOVER_MIN_HOURS = 8.0

CATEGORY_FIELDS: Dict[str, str] = {
    "SIL": "sil",
    "CommunityAccess": "community_access",
    "CapacityBuilding": "capacity_building",
}


def _remaining_column(category: str):
    return getattr(NdisBudget, f"{CATEGORY_FIELDS[category]}_remaining")


def _allowed_ratios(budget: NdisBudget, category: str) -> List[str]:
    return list(getattr(budget, f"{CATEGORY_FIELDS[category]}_allowed_ratios") or [])


def classify_shift_type(start: datetime.datetime, end: Optional[datetime.datetime] = None) -> str:
    """Band a shift by its local start hour.

    06:00-19:59 is AM, 20:00-23:59 is PM and 00:00-05:59 is ActiveNight. An
    evening or overnight start lasting at least eight hours is a Sleepover.
    """
    local_start = ensure_aware(start).astimezone(config.LOCAL_TIMEZONE)
    hour = local_start.hour
    if 6 <= hour < 20:
        return "AM"
    if end is not None:
        length = (ensure_aware(end) - ensure_aware(start)).total_seconds() / 3600.0
        if length >= SLEEPOVER_MIN_HOURS:
            return "Sleepover"
    if hour >= 20:
        return "PM"
    return "ActiveNight"


def default_category(shift_type: str) -> str:
    if shift_type in ("AM", "PM"):
        return "CommunityAccess"
    return "SIL"


def shift_hours(shift: Shift) -> float:
    """Elapsed hours, preferring the clocked times over the rostered ones."""
    start = shift.start_timestamp or shift.start_time
    end = shift.end_timestamp or shift.end_time
    if start is None or end is None:
        return 0.0
    elapsed = (ensure_aware(end) - ensure_aware(start)).total_seconds() / 3600.0
    return round(elapsed, 2)


def resolve_rate(session, budget: NdisBudget, shift_type: str, ratio: str) -> Optional[float]:
    overrides = budget.price_overrides or {}
    override = overrides.get(shift_type)
    if override is not None:
        try:
            return float(override)
        except (TypeError, ValueError):
            pass
    return lookup_rate(session, budget.tenant_id, shift_type, ratio)


def active_budget_for_client(session, tenant_id: int, client_id: int) -> Optional[NdisBudget]:
    return session.execute(
        select(NdisBudget)
        .where(
            NdisBudget.tenant_id == tenant_id,
            NdisBudget.client_id == client_id,
            NdisBudget.is_active.is_(True),
        )
        .order_by(NdisBudget.id.desc())
    ).scalars().first()


@dataclass
class DeductionResult:
    applied: bool
    reason: str
    shift_id: int
    budget_id: Optional[int] = None
    category: Optional[str] = None
    shift_type: Optional[str] = None
    ratio: Optional[str] = None
    hours: float = 0.0
    rate: float = 0.0
    amount: float = 0.0
    transaction_id: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "reason": self.reason,
            "shiftId": self.shift_id,
            "budgetId": self.budget_id,
            "category": self.category,
            "shiftType": self.shift_type,
            "ratio": self.ratio,
            "hours": self.hours,
            "rate": self.rate,
            "amount": self.amount,
            "transactionId": self.transaction_id,
        }


def deduct_for_shift(
    session,
    shift: Shift,
    actor_id: Optional[int] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> DeductionResult:
    """Charge a completed shift against its client's NDIS budget."""
    log = get_logger(__name__, logger)
    result = DeductionResult(applied=False, reason="", shift_id=shift.id)

    if shift.client_id is None:
        result.reason = "no_client"
        return result
    hours = shift_hours(shift)
    result.hours = hours
    if hours <= 0:
        result.reason = "no_hours"
        return result

    budget = active_budget_for_client(session, shift.tenant_id, shift.client_id)
    if budget is None:
        result.reason = "no_budget"
        log.info("no active budget for client", extra={"shift_id": shift.id, "client_id": shift.client_id})
        return result
    result.budget_id = budget.id

    shift_type = classify_shift_type(shift.start_time, shift.end_time)
    ratio = shift.staff_ratio or DEFAULT_RATIO
    category = shift.funding_category or default_category(shift_type)
    result.shift_type, result.ratio, result.category = shift_type, ratio, category

    if category not in CATEGORY_FIELDS:
        return _record_failure(session, shift, result, actor_id, "invalid_category", log)
    allowed = _allowed_ratios(budget, category)
    if allowed and ratio not in allowed:
        return _record_failure(session, shift, result, actor_id, "ratio_not_allowed", log)

    rate = resolve_rate(session, budget, shift_type, ratio)
    if rate is None or rate <= 0:
        result.reason = "no_rate"
        log.warning("no rate configured", extra={"shift_id": shift.id, "shift_type": shift_type, "ratio": ratio})
        return result
    amount = round(rate * hours, 2)
    result.rate, result.amount = rate, amount

    column = _remaining_column(category)
    outcome = session.execute(
        update(NdisBudget)
        .where(NdisBudget.id == budget.id, column >= amount)
        .values({column: column - amount})
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        return _record_failure(session, shift, result, actor_id, "insufficient_funds", log)

    transaction = BudgetTransaction(
        tenant_id=shift.tenant_id,
        budget_id=budget.id,
        shift_id=shift.id,
        category=category,
        shift_type=shift_type,
        ratio=ratio,
        hours=hours,
        rate=rate,
        amount=amount,
        description=f"{shift_type} shift ({ratio}) - {hours}h @ ${rate:.2f}/h",
        transaction_type="deduction",
        created_by_user_id=actor_id,
    )
    session.add(transaction)
    session.flush()
    record_activity(
        session,
        shift.tenant_id,
        actor_id,
        "budget_deduction",
        resource_type="budget",
        resource_id=budget.id,
        description=f"Deducted ${amount:.2f} from {category} for shift {shift.id}",
        details={"shiftId": shift.id, "category": category, "amount": amount, "transactionId": transaction.id},
        commit=False,
    )
    session.commit()
    session.refresh(budget)

    result.applied = True
    result.reason = "deducted"
    result.transaction_id = transaction.id
    log.info(
        "budget deduction applied",
        extra={"shift_id": shift.id, "budget_id": budget.id, "category": category, "amount": amount},
    )
    return result


def _record_failure(session, shift: Shift, result: DeductionResult, actor_id, reason: str, log) -> DeductionResult:
    result.reason = reason
    record_activity(
        session,
        shift.tenant_id,
        actor_id,
        "budget_deduction_failed",
        resource_type="budget",
        resource_id=result.budget_id,
        description=f"Budget deduction skipped for shift {shift.id}: {reason}",
        details={"shiftId": shift.id, "category": result.category, "amount": result.amount, "reason": reason},
    )
    log.warning(
        "budget deduction skipped",
        extra={"shift_id": shift.id, "budget_id": result.budget_id, "reason": reason, "amount": result.amount},
    )
    return result


# ---------------------------------------------------------------------------
# Budget records


def _validate_ratios(values: Any) -> List[str]:
    ratios = [str(value).strip() for value in (values or []) if str(value).strip()]
    invalid = [ratio for ratio in ratios if ratio not in STAFF_RATIOS]
    if invalid:
        raise ValueError(f"Unsupported staff ratio(s): {', '.join(invalid)}")
    return ratios


def _validate_overrides(values: Any) -> Dict[str, float]:
    overrides: Dict[str, float] = {}
    for shift_type, rate in (values or {}).items():
        if shift_type not in SHIFT_TYPES:
            raise ValueError(f"Unknown shift type in price overrides: {shift_type}")
        rate_value = float(rate)
        if rate_value < 0:
            raise ValueError("Price overrides cannot be negative")
        overrides[shift_type] = round(rate_value, 2)
    return overrides


def create_budget(session, tenant_id: int, client_id: int, payload: Dict[str, Any], actor_id: Optional[int] = None) -> NdisBudget:
    get_client_in_tenant(session, tenant_id, client_id)
    if active_budget_for_client(session, tenant_id, client_id) is not None:
        raise ConflictError("Client already has an active NDIS budget")
    budget = NdisBudget(tenant_id=tenant_id, client_id=client_id)
    for category, prefix in CATEGORY_FIELDS.items():
        total = round(float(payload.get(f"{prefix}_total") or 0.0), 2)
        if total < 0:
            raise ValueError(f"{category} total cannot be negative")
        setattr(budget, f"{prefix}_total", total)
        setattr(budget, f"{prefix}_remaining", total)
        setattr(budget, f"{prefix}_allowed_ratios", _validate_ratios(payload.get(f"{prefix}_allowed_ratios")))
    budget.price_overrides = _validate_overrides(payload.get("price_overrides"))
    session.add(budget)
    session.flush()
    record_activity(
        session,
        tenant_id,
        actor_id,
        "create_budget",
        resource_type="budget",
        resource_id=budget.id,
        description=f"Created NDIS budget for client {client_id}",
        commit=False,
    )
    session.commit()
    return budget


def update_budget(session, tenant_id: int, budget_id: int, payload: Dict[str, Any], actor_id: Optional[int] = None) -> NdisBudget:
    """Apply total, ratio and override changes. Changing a total moves the remaining balance by the same delta."""
    budget: NdisBudget = get_tenant_record(session, NdisBudget, tenant_id, budget_id)
    for category, prefix in CATEGORY_FIELDS.items():
        total_key = f"{prefix}_total"
        if payload.get(total_key) is not None:
            new_total = round(float(payload[total_key]), 2)
            if new_total < 0:
                raise ValueError(f"{category} total cannot be negative")
            delta = new_total - getattr(budget, total_key)
            setattr(budget, total_key, new_total)
            remaining = round(getattr(budget, f"{prefix}_remaining") + delta, 2)
            setattr(budget, f"{prefix}_remaining", max(0.0, remaining))
        if payload.get(f"{prefix}_allowed_ratios") is not None:
            setattr(budget, f"{prefix}_allowed_ratios", _validate_ratios(payload[f"{prefix}_allowed_ratios"]))
    if payload.get("price_overrides") is not None:
        budget.price_overrides = _validate_overrides(payload["price_overrides"])
    if payload.get("is_active") is not None:
        budget.is_active = bool(payload["is_active"])
    record_activity(
        session,
        tenant_id,
        actor_id,
        "update_budget",
        resource_type="budget",
        resource_id=budget.id,
        description=f"Updated NDIS budget {budget.id}",
        commit=False,
    )
    session.commit()
    return budget


def list_budgets(session, tenant_id: int) -> List[NdisBudget]:
    return list(
        session.scalars(select(NdisBudget).where(NdisBudget.tenant_id == tenant_id).order_by(NdisBudget.id.asc()))
    )


def list_transactions(session, tenant_id: int, *, budget_id: Optional[int] = None, limit: int = 200) -> List[BudgetTransaction]:
    stmt = select(BudgetTransaction).where(BudgetTransaction.tenant_id == tenant_id)
    if budget_id is not None:
        stmt = stmt.where(BudgetTransaction.budget_id == budget_id)
    stmt = stmt.order_by(BudgetTransaction.created_at.desc(), BudgetTransaction.id.desc()).limit(limit)
    return list(session.scalars(stmt))


def transaction_to_dict(transaction: BudgetTransaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "budgetId": transaction.budget_id,
        "shiftId": transaction.shift_id,
        "category": transaction.category,
        "shiftType": transaction.shift_type,
        "ratio": transaction.ratio,
        "hours": transaction.hours,
        "rate": transaction.rate,
        "amount": transaction.amount,
        "description": transaction.description,
        "transactionType": transaction.transaction_type,
        "createdByUserId": transaction.created_by_user_id,
        "createdAt": ensure_aware(transaction.created_at).isoformat(),
    }
