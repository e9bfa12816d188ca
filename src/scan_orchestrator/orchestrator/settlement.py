"""Close out scans: fold scores, settle the reservation and record usage."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from scan_orchestrator.orchestrator.errors import ReservationStateError, UnknownModelError
from scan_orchestrator.orchestrator.ledger import CreditLedger
from scan_orchestrator.orchestrator.models import QueueItemView, ScanScores, ScanStatus, ScanTotals
from scan_orchestrator.orchestrator.providers import resolve_model
from scan_orchestrator.orchestrator.resilience import compute_scan_scores
from scan_orchestrator.orchestrator.scans import ScanRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SettledScan:
    totals: ScanTotals
    scores: ScanScores
    refunded_cents: int


class ScanSettlement:
    """Terminal bookkeeping shared by the worker and user-initiated cancels."""

    def __init__(self, *, scans: ScanRepository, ledger: CreditLedger) -> None:
        self.scans = scans
        self.ledger = ledger

    def settle(  # noqa: PLR0913
        self,
        *,
        scan_id: str,
        reservation_id: str | None,
        user_id: str,
        status: ScanStatus,
        follow_up_enabled: bool,
        evaluation_model_id: str | None,
    ) -> SettledScan:
        """Charge the persisted cost, record monthly usage and finalize the scan.

        Totals come from the stored results, so a scan run in one chunk or
        resumed across several invocations is charged the same amount.
        """

        totals = self.scans.refresh_totals(scan_id)
        scores = compute_scan_scores(
            self.scans.list_chains(scan_id),
            follow_up_enabled=follow_up_enabled,
        )
        refunded = 0
        if reservation_id is not None:
            refunded = self._charge(
                reservation_id=reservation_id,
                actual_cents=totals.total_cost_cents,
                scan_id=scan_id,
            )
        self.scans.record_monthly_usage(
            user_id=user_id,
            records=self.scans.usage_records(
                scan_id,
                evaluation_model_id=evaluation_model_id,
                evaluation_provider=_provider_of(evaluation_model_id),
            ),
        )
        self.scans.finalize_scan(scan_id=scan_id, status=status, scores=scores)
        return SettledScan(totals=totals, scores=scores, refunded_cents=refunded)

    def abandon(self, item: QueueItemView, *, reason: str) -> None:
        """A force-failed item: fail its scan and return its credits in full."""

        if item.scan_id is not None:
            self.scans.set_scan_status(scan_id=item.scan_id, status=ScanStatus.FAILED)
        if item.reservation_id is not None:
            self.ledger.release(reservation_id=item.reservation_id, reason=reason)

    def _charge(self, *, reservation_id: str, actual_cents: int, scan_id: str) -> int:
        try:
            refunded = self.ledger.consume(
                reservation_id=reservation_id,
                actual_cost_cents=actual_cents,
                scan_id=scan_id,
            )
        except ReservationStateError as error:
            logger.warning("Could not charge scan %s: %s", scan_id, error)
            return 0
        logger.info("Charged scan %s %d cents, refunded %d", scan_id, actual_cents, refunded)
        return refunded


def _provider_of(model_id: str | None) -> str | None:
    if not model_id:
        return None
    try:
        return resolve_model(model_id).provider.value
    except UnknownModelError:
        return None
