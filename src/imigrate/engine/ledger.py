# src/imigrate/engine/ledger.py
"""Attempt ledger: one append-only attempt per row per pass.

A row and its first attempt are written in a single transaction, and
every later attempt is written together with the row status it implies.
A crash therefore never leaves a row without an attempt, nor a row whose
status disagrees with its newest attempt.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from imigrate.contracts import Attempt, AttemptReason, InsertOutcome, Row, RowStatus

if TYPE_CHECKING:
    from imigrate.core.store import Persistence


def status_for(outcome: InsertOutcome) -> RowStatus:
    return RowStatus.SUCCESS if outcome.success else RowStatus.FAILED


class AttemptLedger:
    def __init__(self, persistence: Persistence) -> None:
        self._persistence = persistence

    def record_initial(self, job_id: str, row_index: int, encrypted_payload: str, outcome: InsertOutcome) -> Row:
        """Create the row with its ``initial`` attempt."""
        with self._persistence.transaction() as conn:
            row = self._persistence.create_row(
                job_id,
                row_index,
                encrypted_payload,
                status_for(outcome),
                outcome.identity_elements if outcome.success else None,
                conn=conn,
            )
            self._persistence.insert_attempt(
                row.id,
                AttemptReason.INITIAL,
                outcome.success,
                error_message=outcome.error_message,
                identity_elements=outcome.identity_elements,
                conn=conn,
            )
        return row

    def record_retry(self, row: Row, reason: AttemptReason, outcome: InsertOutcome) -> Attempt:
        """Append a retry attempt and move the row's status to match it.

        Identity elements are copied to the row only on success, so a
        failed retry never erases an identity recorded earlier.
        """
        if reason == AttemptReason.INITIAL:
            raise ValueError("record_retry requires a retry reason, got 'initial'")
        with self._persistence.transaction() as conn:
            attempt = self._persistence.insert_attempt(
                row.id,
                reason,
                outcome.success,
                error_message=outcome.error_message,
                identity_elements=outcome.identity_elements,
                conn=conn,
            )
            self._persistence.update_row_status(
                row.id,
                status_for(outcome),
                outcome.identity_elements if outcome.success else None,
                conn=conn,
            )
        return attempt
