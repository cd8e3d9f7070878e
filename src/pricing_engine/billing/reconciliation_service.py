"""
Billing reconciliation service.

Resolves charge reservations left open by timeouts, processor errors or
failed commits by asking the processor what actually happened.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricing_engine.billing.collaborators import NotificationSink, PaymentProcessor, PaymentStatus
from pricing_engine.billing.config import BillingConfig, get_billing_config
from pricing_engine.billing.events import BillingEvents, EventDispatcher
from pricing_engine.billing.exceptions import BillingError, PaymentProcessorError
from pricing_engine.billing.models import BillingChargeReservationTable, BillingLedgerEntryTable
from pricing_engine.billing.subscriptions.models import ChargeReservation, ReservationStatus
from pricing_engine.logging import get_alert_logger

logger = structlog.get_logger(__name__)

OPEN_STATUSES = (
    ReservationStatus.RESERVED,
    ReservationStatus.CHARGED,
    ReservationStatus.UNKNOWN,
)


@dataclass
class ReconciliationOutcome:
    """What reconciliation decided for one reservation."""

    reservation_id: str
    previous_status: ReservationStatus
    status: ReservationStatus
    payment_status: PaymentStatus
    alerted: bool = False


class ReconciliationService:
    """
    Service for resolving open charge reservations.

    Handles:
    - Finding reservations stuck before commit
    - Checking their outcome with the payment processor
    - Alerting operators about charges with no ledger record
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payment_processor: PaymentProcessor,
        notification_sink: NotificationSink | None = None,
        config: BillingConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.processor = payment_processor
        self.config = config or get_billing_config()
        self.clock = clock or (lambda: datetime.now(UTC))
        self.dispatcher = EventDispatcher(
            notification_sink, timeout_seconds=self.config.timeouts.notification_seconds
        )
        self.alerts = get_alert_logger()

    async def find_stuck_reservations(
        self, older_than: timedelta | None = None
    ) -> list[ChargeReservation]:
        """Open reservations created before ``now - older_than``."""
        if older_than is None:
            older_than = timedelta(minutes=self.config.reservation_stale_minutes)
        cutoff = self.clock() - older_than
        table = BillingChargeReservationTable
        stmt = (
            select(table)
            .where(
                table.status.in_([s.value for s in OPEN_STATUSES]),
                table.created_at <= cutoff,
            )
            .order_by(table.created_at)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [ChargeReservation.model_validate(r) for r in rows]

    async def resolve_reservation(self, reservation_id: str) -> ReconciliationOutcome:
        """
        Settle one reservation from the processor's view of the charge.

        A succeeded charge with a ledger entry is committed. A succeeded charge
        without one stays ``charged`` and raises an operator alert. Failed and
        unknown-to-the-processor charges are closed as failed. Pending ones are
        left for a later run.

        Raises:
            PaymentProcessorError: The processor could not be asked
        """
        async with self.session_factory() as session:
            row = await session.get(BillingChargeReservationTable, reservation_id)
            if row is None:
                raise BillingError(
                    f"Reservation {reservation_id} not found",
                    "RESERVATION_NOT_FOUND",
                    status_code=404,
                    context={"reservation_id": reservation_id},
                )
            reservation = ChargeReservation.model_validate(row)

        reference = reservation.charge_ref or reservation.reservation_id
        try:
            payment_status = await asyncio.wait_for(
                self.processor.get_payment_status(reference),
                timeout=self.config.timeouts.payment_seconds,
            )
        except TimeoutError as e:
            raise PaymentProcessorError(
                "Payment status lookup timed out", reservation_id=reservation_id
            ) from e
        except Exception as e:
            raise PaymentProcessorError(
                "Payment status lookup failed", reservation_id=reservation_id
            ) from e

        previous = reservation.status
        alerted = False
        if payment_status == PaymentStatus.SUCCEEDED:
            if await self._has_ledger_record(reservation, reference):
                new_status = ReservationStatus.COMMITTED
            else:
                new_status = ReservationStatus.CHARGED
                alerted = True
                await self._alert_unrecorded_charge(reservation, reference)
        elif payment_status in (PaymentStatus.FAILED, PaymentStatus.NOT_FOUND):
            new_status = ReservationStatus.FAILED
        else:
            new_status = previous

        if new_status != previous:
            async with self.session_factory() as session:
                async with session.begin():
                    row = await session.get(BillingChargeReservationTable, reservation_id)
                    if row is not None:
                        row.status = new_status.value
                        if payment_status == PaymentStatus.SUCCEEDED:
                            row.charge_ref = reference
                        else:
                            row.failure_reason = f"processor reported {payment_status.value}"

        logger.info(
            "reservation.reconciled",
            reservation_id=reservation_id,
            subscription_id=reservation.subscription_id,
            previous_status=previous.value,
            status=new_status.value,
            payment_status=payment_status.value,
        )
        return ReconciliationOutcome(
            reservation_id=reservation_id,
            previous_status=previous,
            status=new_status,
            payment_status=payment_status,
            alerted=alerted,
        )

    async def reconcile(self, older_than: timedelta | None = None) -> dict[str, Any]:
        """Resolve every stuck reservation; processor errors are counted and skipped."""
        summary = {"checked": 0, "committed": 0, "failed": 0, "alerts": 0, "pending": 0, "errors": 0}
        for reservation in await self.find_stuck_reservations(older_than):
            summary["checked"] += 1
            try:
                outcome = await self.resolve_reservation(reservation.reservation_id)
            except PaymentProcessorError as e:
                summary["errors"] += 1
                logger.warning(
                    "reservation.reconcile_failed",
                    reservation_id=reservation.reservation_id,
                    error=e.message,
                )
                continue

            if outcome.alerted:
                summary["alerts"] += 1
            elif outcome.status == ReservationStatus.COMMITTED:
                summary["committed"] += 1
            elif outcome.status == ReservationStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["pending"] += 1

        logger.info("reservation.reconcile_completed", **summary)
        return summary

    async def _has_ledger_record(self, reservation: ChargeReservation, reference: str) -> bool:
        table = BillingLedgerEntryTable
        stmt = select(func.count()).where(
            table.subscription_id == reservation.subscription_id,
            table.charge_ref == reference,
        )
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar_one() > 0

    async def _alert_unrecorded_charge(self, reservation: ChargeReservation, reference: str) -> None:
        self.alerts.critical(
            "billing.integrity_alert",
            reservation_id=reservation.reservation_id,
            subscription_id=reservation.subscription_id,
            charge_ref=reference,
            amount_minor=reservation.amount_minor,
            currency=reservation.currency,
            reason="charge succeeded without a ledger record",
        )
        await self.dispatcher.alert(
            BillingEvents.INTEGRITY_ALERT,
            reservation_id=reservation.reservation_id,
            subscription_id=reservation.subscription_id,
            charge_ref=reference,
            amount_minor=reservation.amount_minor,
            currency=reservation.currency,
        )


__all__ = ["OPEN_STATUSES", "ReconciliationOutcome", "ReconciliationService"]
