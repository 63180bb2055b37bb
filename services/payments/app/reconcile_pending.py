"""Query the gateway for M-Pesa orders whose callback never arrived.

Usage: python -m app.reconcile_pending --minutes 10 --max 50

Only definitive failures are applied. A successful query answer carries no
receipt number, so paid orders are reported and left for the callback (or an
operator) to settle.
"""

import argparse
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.application.reconciler import CallbackReconciler, Outcome
from app.core_settings import Settings, get_settings
from app.domain.errors import GatewayAuthError, GatewayUnavailable, PersistenceError
from app.domain.models import MpesaOrder, PaymentStatus
from app.infrastructure.db import build_engine, build_session_factory
from app.infrastructure.mpesa import DarajaClient
from shared.core import get_logger, setup_logging

logger = get_logger(__name__)

QUERY_ACCEPTED = "0"
RESULT_SUCCESS = "0"

@dataclass
class SweepSummary:
    checked: int = 0
    failed: int = 0
    paid_awaiting_callback: List[str] = field(default_factory=list)
    still_processing: int = 0
    errors: int = 0

def find_stale_orders(db: Session, minutes: int, limit: int, now: Optional[datetime] = None) -> List[MpesaOrder]:
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=minutes)
    return list(db.scalars(
        select(MpesaOrder)
        .where(
            MpesaOrder.payment_status == PaymentStatus.PENDING.value,
            MpesaOrder.mpesa_request_id.is_not(None),
            # Set by the correlation write; an old order may have been pushed just now
            MpesaOrder.updated_at < cutoff,
        )
        .order_by(MpesaOrder.updated_at)
        .limit(limit)
    ).all())

def classify_query(data: Dict[str, Any]) -> str:
    """Map an STK query body to ``paid``, ``failed`` or ``processing``."""
    if str(data.get("ResponseCode")) != QUERY_ACCEPTED or "ResultCode" not in data:
        # e.g. errorCode 500.001.1001, "The transaction is being processed"
        return "processing"
    if str(data["ResultCode"]) == RESULT_SUCCESS:
        return "paid"
    return "failed"

def sweep(db: Session, gateway: DarajaClient, settings: Settings, minutes: int, limit: int, pause: float = 0.0) -> SweepSummary:
    summary = SweepSummary()
    reconciler = CallbackReconciler(db, settings)

    for order in find_stale_orders(db, minutes, limit):
        summary.checked += 1
        try:
            data = gateway.stk_query(order.mpesa_request_id)
        except (GatewayAuthError, GatewayUnavailable) as e:
            summary.errors += 1
            logger.warning(
                "STK query failed",
                extra={'extra_fields': {'order_id': order.id, 'error': str(e)}},
            )
            continue

        verdict = classify_query(data)
        if verdict == "failed":
            try:
                result = reconciler.apply_failure_result(
                    order, int(data["ResultCode"]), str(data.get("ResultDesc", ""))
                )
            except PersistenceError as e:
                summary.errors += 1
                logger.error(
                    "Could not mark order failed",
                    extra={'extra_fields': {'order_id': order.id, 'error': str(e)}},
                )
                continue
            if result.outcome == Outcome.FAILED:
                summary.failed += 1
        elif verdict == "paid":
            summary.paid_awaiting_callback.append(order.order_number)
            logger.error(
                "Gateway reports payment complete but no callback was received",
                extra={'extra_fields': {
                    'order_id': order.id,
                    'order_number': order.order_number,
                    'checkout_request_id': order.mpesa_request_id,
                }},
            )
        else:
            summary.still_processing += 1

        if pause:
            time.sleep(pause)

    logger.info(
        "Pending M-Pesa sweep finished",
        extra={'extra_fields': {
            'checked': summary.checked,
            'failed': summary.failed,
            'paid_awaiting_callback': len(summary.paid_awaiting_callback),
            'still_processing': summary.still_processing,
            'errors': summary.errors,
        }},
    )
    return summary

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--minutes", type=int, default=10, help="Only pushes sent more than N minutes ago")
    parser.add_argument("--max", type=int, default=50, help="Max orders to query")
    parser.add_argument("--sleep", type=float, default=0.5, help="Pause between gateway queries")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(service_name="payments-reconcile", level=settings.LOG_LEVEL, version=settings.SERVICE_VERSION)

    engine = build_engine(settings)
    session_factory = build_session_factory(engine)
    gateway = DarajaClient(settings)
    try:
        with session_factory() as db:
            summary = sweep(db, gateway, settings, args.minutes, args.max, args.sleep)
    finally:
        gateway.close()
        engine.dispose()

    print(
        f"checked={summary.checked} failed={summary.failed} "
        f"paid_awaiting_callback={len(summary.paid_awaiting_callback)} "
        f"still_processing={summary.still_processing} errors={summary.errors}"
    )
    return 1 if summary.errors else 0

if __name__ == "__main__":
    raise SystemExit(main())
