"""Credit ledger: reservations against a user's balance in integer cents.

Every balance change is a single conditional UPDATE issued first in its
transaction, so concurrent reservations serialize on the database write
lock and the balance can never go negative. Transaction rows always sum to
the real balance movement:

* reserve  -> ``reservation`` (-reserved)
* consume  -> ``release`` (+reserved) then ``usage`` (-min(actual, reserved))
* release  -> ``release`` (+reserved)
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from scan_orchestrator.orchestrator.errors import (
    InsufficientCredits,
    ReservationCreationFailure,
    ReservationStateError,
)
from scan_orchestrator.orchestrator.models import (
    CreditTransactionView,
    ReservationStatus,
    ReservationView,
    TransactionType,
    UserTier,
)
from scan_orchestrator.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from scan_orchestrator.storage.sqlmodel_models import AppUser, CreditReservation, CreditTransaction

logger = logging.getLogger(__name__)

FREE_TIER_RESERVATION = "free-tier"
TEST_ACCOUNT_RESERVATION = "test-account"
ADMIN_ACCOUNT_RESERVATION = "admin-account"
SENTINEL_RESERVATIONS = frozenset(
    {FREE_TIER_RESERVATION, TEST_ACCOUNT_RESERVATION, ADMIN_ACCOUNT_RESERVATION},
)
DEFAULT_MAX_FREE_SCANS_PER_MONTH = 10


def is_sentinel_reservation(reservation_id: str | None) -> bool:
    return reservation_id in SENTINEL_RESERVATIONS


class CreditLedger:
    """Reservation lifecycle (reserve -> consume | release) per user balance."""

    def __init__(
        self,
        engine: Engine,
        *,
        max_free_scans_per_month: int = DEFAULT_MAX_FREE_SCANS_PER_MONTH,
    ) -> None:
        self.engine = engine
        self.max_free_scans_per_month = max_free_scans_per_month

    def tier_of(self, user_id: str) -> UserTier:
        with Session(self.engine) as session:
            tier = session.exec(
                select(AppUser.tier).where(AppUser.user_id == user_id),
            ).one_or_none()
        if tier is None:
            raise ReservationCreationFailure(f"Unknown user: {user_id}")
        return UserTier(tier)

    def reserve(
        self,
        *,
        user_id: str,
        amount_cents: int,
        project_id: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Hold `amount_cents` for a scan and return the reservation id.

        Test and admin accounts get sentinel ids without touching the
        balance; free users spend one of their monthly free scans instead.
        """

        if amount_cents < 0:
            raise ValueError(f"Reservation amount must be >= 0, got {amount_cents}")
        tier = self.tier_of(user_id)
        if tier is UserTier.TEST:
            return TEST_ACCOUNT_RESERVATION
        if tier is UserTier.ADMIN:
            return ADMIN_ACCOUNT_RESERVATION
        if tier is UserTier.FREE:
            self._use_free_scan(user_id=user_id, now=now or utc_now())
            return FREE_TIER_RESERVATION

        reservation_id = str(uuid4())
        created_at = now or utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AppUser)
                .where(
                    col(AppUser.user_id) == user_id,
                    col(AppUser.credit_balance_cents) >= amount_cents,
                )
                .values(credit_balance_cents=col(AppUser.credit_balance_cents) - amount_cents),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InsufficientCredits
            balance_after = self._balance_in(session=session, user_id=user_id)
            session.add(
                CreditReservation(
                    reservation_id=reservation_id,
                    user_id=user_id,
                    project_id=project_id,
                    amount_cents=amount_cents,
                    status=ReservationStatus.ACTIVE.value,
                    created_at=created_at,
                ),
            )
            self._add_transaction(
                session=session,
                user_id=user_id,
                transaction_type=TransactionType.RESERVATION,
                amount_cents=-amount_cents,
                balance_after_cents=balance_after,
                reference_type="reservation",
                reference_id=reservation_id,
                description="Credits reserved for scan",
                metadata={"project_id": project_id} if project_id else None,
            )
            session.commit()
        logger.info("Reserved %d cents for user %s (%s)", amount_cents, user_id, reservation_id)
        return reservation_id

    def _use_free_scan(self, *, user_id: str, now: datetime) -> None:
        limit = self.max_free_scans_per_month
        if limit <= 0:
            raise InsufficientCredits("Monthly free scan limit reached")
        month = now.strftime("%Y-%m")
        same_month = col(AppUser.free_scans_month) == month
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AppUser)
                .where(
                    col(AppUser.user_id) == user_id,
                    or_(
                        col(AppUser.free_scans_month).is_(None),
                        col(AppUser.free_scans_month) != month,
                        col(AppUser.free_scans_used) < limit,
                    ),
                )
                .values(
                    free_scans_used=case(
                        (same_month, col(AppUser.free_scans_used) + 1),
                        else_=1,
                    ),
                    free_scans_month=month,
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InsufficientCredits("Monthly free scan limit reached")
            session.commit()

    def free_scans_remaining(self, *, user_id: str, now: datetime | None = None) -> int:
        month = (now or utc_now()).strftime("%Y-%m")
        with Session(self.engine) as session:
            row = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
        if row is None:
            return 0
        used = row.free_scans_used if row.free_scans_month == month else 0
        return max(0, self.max_free_scans_per_month - used)

    def attach_scan(self, *, reservation_id: str, scan_id: str) -> bool:
        if is_sentinel_reservation(reservation_id):
            return False
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CreditReservation)
                .where(
                    col(CreditReservation.reservation_id) == reservation_id,
                    col(CreditReservation.status) == ReservationStatus.ACTIVE.value,
                )
                .values(scan_id=scan_id),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def consume(self, *, reservation_id: str, actual_cost_cents: int, scan_id: str | None) -> int:
        """Charge the actual cost and return the refunded amount.

        Cost above the reservation is recorded in metadata but not debited.
        """

        if is_sentinel_reservation(reservation_id):
            return 0
        actual = max(0, actual_cost_cents)
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CreditReservation)
                .where(
                    col(CreditReservation.reservation_id) == reservation_id,
                    col(CreditReservation.status) == ReservationStatus.ACTIVE.value,
                )
                .values(
                    status=ReservationStatus.CONSUMED.value,
                    consumed_cents=actual,
                    refunded_cents=func.max(0, col(CreditReservation.amount_cents) - actual),
                    scan_id=func.coalesce(scan_id, col(CreditReservation.scan_id)),
                    resolved_at=to_db_datetime(now),
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ReservationStateError(self._state_error_message(reservation_id))

            reservation = self._reservation_row(session=session, reservation_id=reservation_id)
            reserved = reservation.amount_cents
            charged = min(actual, reserved)
            refund = reserved - charged
            session.exec(
                sa_update(AppUser)
                .where(col(AppUser.user_id) == reservation.user_id)
                .values(credit_balance_cents=col(AppUser.credit_balance_cents) + refund),
            )
            balance_after = self._balance_in(session=session, user_id=reservation.user_id)
            self._add_transaction(
                session=session,
                user_id=reservation.user_id,
                transaction_type=TransactionType.RELEASE,
                amount_cents=reserved,
                balance_after_cents=balance_after + charged,
                reference_type="reservation",
                reference_id=reservation_id,
                description="Reservation settled",
                metadata=None,
            )
            self._add_transaction(
                session=session,
                user_id=reservation.user_id,
                transaction_type=TransactionType.USAGE,
                amount_cents=-charged,
                balance_after_cents=balance_after,
                reference_type="scan",
                reference_id=scan_id,
                description="Scan completed",
                metadata={
                    "reservation_id": reservation_id,
                    "reserved": reserved,
                    "actual": actual,
                    "refunded": refund,
                    "excess": max(0, actual - reserved),
                },
            )
            session.commit()
        if actual > reserved:
            logger.warning(
                "Scan %s cost %d cents, above its %d cent reservation %s",
                scan_id,
                actual,
                reserved,
                reservation_id,
            )
        return refund

    def release(self, *, reservation_id: str, reason: str) -> bool:
        """Refund an active reservation in full.

        Sentinel ids and already-processed reservations are a no-op; returns
        whether credits were actually returned.
        """

        if is_sentinel_reservation(reservation_id):
            return False
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CreditReservation)
                .where(
                    col(CreditReservation.reservation_id) == reservation_id,
                    col(CreditReservation.status) == ReservationStatus.ACTIVE.value,
                )
                .values(
                    status=ReservationStatus.RELEASED.value,
                    refunded_cents=col(CreditReservation.amount_cents),
                    consumed_cents=0,
                    reason=reason,
                    resolved_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            reservation = self._reservation_row(session=session, reservation_id=reservation_id)
            session.exec(
                sa_update(AppUser)
                .where(col(AppUser.user_id) == reservation.user_id)
                .values(
                    credit_balance_cents=col(AppUser.credit_balance_cents)
                    + reservation.amount_cents,
                ),
            )
            self._add_transaction(
                session=session,
                user_id=reservation.user_id,
                transaction_type=TransactionType.RELEASE,
                amount_cents=reservation.amount_cents,
                balance_after_cents=self._balance_in(session=session, user_id=reservation.user_id),
                reference_type="reservation",
                reference_id=reservation_id,
                description=reason,
                metadata=None,
            )
            session.commit()
        logger.info("Released reservation %s: %s", reservation_id, reason)
        return True

    def add_credits(
        self,
        *,
        user_id: str,
        amount_cents: int,
        transaction_type: TransactionType = TransactionType.TOP_UP,
        description: str | None = None,
    ) -> int:
        """Apply a top-up, bonus or signed admin adjustment; returns the new balance."""

        if transaction_type not in {
            TransactionType.TOP_UP,
            TransactionType.BONUS,
            TransactionType.ADMIN_ADJUSTMENT,
            TransactionType.REFUND,
        }:
            raise ValueError(f"Unsupported credit transaction type: {transaction_type.value}")
        if amount_cents < 0 and transaction_type is not TransactionType.ADMIN_ADJUSTMENT:
            raise ValueError("Only admin adjustments may be negative.")
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AppUser)
                .where(
                    col(AppUser.user_id) == user_id,
                    col(AppUser.credit_balance_cents) + amount_cents >= 0,
                )
                .values(credit_balance_cents=col(AppUser.credit_balance_cents) + amount_cents),
            )
            if result.rowcount != 1:
                session.rollback()
                if amount_cents < 0:
                    raise InsufficientCredits
                raise ValueError(f"Unknown user: {user_id}")
            balance_after = self._balance_in(session=session, user_id=user_id)
            self._add_transaction(
                session=session,
                user_id=user_id,
                transaction_type=transaction_type,
                amount_cents=amount_cents,
                balance_after_cents=balance_after,
                reference_type=None,
                reference_id=None,
                description=description,
                metadata=None,
            )
            session.commit()
            return balance_after

    def balance(self, user_id: str) -> int:
        with Session(self.engine) as session:
            return self._balance_in(session=session, user_id=user_id)

    def get_reservation(self, reservation_id: str) -> ReservationView | None:
        if is_sentinel_reservation(reservation_id):
            return None
        with Session(self.engine) as session:
            row = session.exec(
                select(CreditReservation).where(
                    CreditReservation.reservation_id == reservation_id,
                ),
            ).one_or_none()
            return _to_reservation_view(row) if row is not None else None

    def list_transactions(self, *, user_id: str, limit: int = 50) -> list[CreditTransactionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(col(CreditTransaction.id).desc())
                .limit(max(1, limit)),
            ).all()
            return [_to_transaction_view(row) for row in rows]

    def _state_error_message(self, reservation_id: str) -> str:
        if self.get_reservation(reservation_id) is None:
            return f"Reservation not found: {reservation_id}"
        return f"Reservation already processed: {reservation_id}"

    def _reservation_row(self, *, session: Session, reservation_id: str) -> CreditReservation:
        return session.exec(
            select(CreditReservation).where(CreditReservation.reservation_id == reservation_id),
        ).one()

    def _balance_in(self, *, session: Session, user_id: str) -> int:
        balance = session.exec(
            select(AppUser.credit_balance_cents).where(AppUser.user_id == user_id),
        ).one_or_none()
        if balance is None:
            raise ValueError(f"Unknown user: {user_id}")
        return int(balance)

    def _add_transaction(  # noqa: PLR0913
        self,
        *,
        session: Session,
        user_id: str,
        transaction_type: TransactionType,
        amount_cents: int,
        balance_after_cents: int,
        reference_type: str | None,
        reference_id: str | None,
        description: str | None,
        metadata: dict[str, Any] | None,
    ) -> None:
        session.add(
            CreditTransaction(
                user_id=user_id,
                transaction_type=transaction_type.value,
                amount_cents=amount_cents,
                balance_after_cents=balance_after_cents,
                reference_type=reference_type,
                reference_id=reference_id,
                description=description,
                metadata_json=json.dumps(metadata, ensure_ascii=False, sort_keys=True)
                if metadata
                else None,
                created_at=utc_now(),
            ),
        )


def _to_reservation_view(row: CreditReservation) -> ReservationView:
    return ReservationView(
        reservation_id=row.reservation_id,
        user_id=row.user_id,
        project_id=row.project_id,
        scan_id=row.scan_id,
        amount_cents=row.amount_cents,
        consumed_cents=row.consumed_cents,
        refunded_cents=row.refunded_cents,
        status=ReservationStatus(row.status),
        reason=row.reason,
        created_at=to_utc_aware_datetime(row.created_at),
        resolved_at=optional_utc(row.resolved_at),
    )


def _to_transaction_view(row: CreditTransaction) -> CreditTransactionView:
    return CreditTransactionView(
        transaction_id=row.id or 0,
        user_id=row.user_id,
        transaction_type=TransactionType(row.transaction_type),
        amount_cents=row.amount_cents,
        balance_after_cents=row.balance_after_cents,
        reference_type=row.reference_type,
        reference_id=row.reference_id,
        description=row.description,
        created_at=to_utc_aware_datetime(row.created_at),
        metadata=json.loads(row.metadata_json) if row.metadata_json else {},
    )
