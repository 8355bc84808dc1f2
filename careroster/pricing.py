from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import select

from .database import STAFF_RATIOS, NdisPricing


SHIFT_TYPES = ("AM", "PM", "ActiveNight", "Sleepover")

# Standard hourly rates provisioned for every tenant. Shared-support ratios
# beyond 1:2 have no standard rate; tenants price them through the pricing
# table and shifts at those ratios are not charged until they do.
BASELINE_RATES: Dict[str, Dict[str, float]] = {
    "1:1": {"AM": 40.00, "PM": 60.00, "ActiveNight": 80.00, "Sleepover": 100.00},
    "1:2": {"AM": 25.00, "PM": 35.00, "ActiveNight": 45.00, "Sleepover": 55.00},
}


def baseline_pricing() -> Dict[str, Dict[str, float]]:
    """Return shift_type -> ratio -> rate for every standard combination."""
    payload: Dict[str, Dict[str, float]] = {shift_type: {} for shift_type in SHIFT_TYPES}
    for ratio, rates in BASELINE_RATES.items():
        for shift_type, rate in rates.items():
            payload[shift_type][ratio] = rate
    return payload


def validate_pricing_entry(shift_type: str, ratio: str, rate: Any) -> float:
    if shift_type not in SHIFT_TYPES:
        raise ValueError(f"shift_type must be one of {', '.join(SHIFT_TYPES)}")
    if ratio not in STAFF_RATIOS:
        raise ValueError(f"ratio must be one of {', '.join(STAFF_RATIOS)}")
    try:
        value = float(rate)
    except (TypeError, ValueError) as exc:
        raise ValueError("rate must be a number") from exc
    if value < 0:
        raise ValueError("rate cannot be negative")
    return round(value, 2)


def upsert_pricing(session, tenant_id: int, shift_type: str, ratio: str, rate: Any, *, is_active: bool = True) -> NdisPricing:
    value = validate_pricing_entry(shift_type, ratio, rate)
    record = session.execute(
        select(NdisPricing).where(
            NdisPricing.tenant_id == tenant_id,
            NdisPricing.shift_type == shift_type,
            NdisPricing.ratio == ratio,
        )
    ).scalar_one_or_none()
    if record is None:
        record = NdisPricing(tenant_id=tenant_id, shift_type=shift_type, ratio=ratio, rate=value, is_active=is_active)
        session.add(record)
    else:
        record.rate = value
        record.is_active = is_active
    session.commit()
    return record


def seed_tenant_pricing(session, tenant_id: int) -> int:
    """Insert baseline rates the tenant does not have yet. Returns rows added."""
    existing = {
        (row.shift_type, row.ratio)
        for row in session.scalars(select(NdisPricing).where(NdisPricing.tenant_id == tenant_id))
    }
    added = 0
    for shift_type, rates in baseline_pricing().items():
        for ratio, rate in rates.items():
            if (shift_type, ratio) in existing:
                continue
            session.add(NdisPricing(tenant_id=tenant_id, shift_type=shift_type, ratio=ratio, rate=rate))
            added += 1
    if added:
        session.commit()
    return added


def list_pricing(session, tenant_id: int) -> List[NdisPricing]:
    return list(
        session.scalars(
            select(NdisPricing)
            .where(NdisPricing.tenant_id == tenant_id)
            .order_by(NdisPricing.shift_type.asc(), NdisPricing.ratio.asc())
        )
    )


def lookup_rate(session, tenant_id: int, shift_type: str, ratio: str) -> Optional[float]:
    record = session.execute(
        select(NdisPricing).where(
            NdisPricing.tenant_id == tenant_id,
            NdisPricing.shift_type == shift_type,
            NdisPricing.ratio == ratio,
            NdisPricing.is_active.is_(True),
        )
    ).scalar_one_or_none()
    return record.rate if record else None


def pricing_to_dict(record: NdisPricing) -> Dict[str, Any]:
    return {
        "id": record.id,
        "shiftType": record.shift_type,
        "ratio": record.ratio,
        "rate": record.rate,
        "isActive": record.is_active,
    }
