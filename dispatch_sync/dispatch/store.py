"""
Reconciliation store: one session's in-memory view of its bookings.

Each record has two layers:
- ``confirmed``: the last server-confirmed Booking (REST response,
  snapshot, or channel delta)
- ``overlay``: an optional provisional patch applied locally before the
  server has answered (e.g. "I accepted this")

Reads merge overlay over baseline. A confirmation that changes status or
assignment replaces the baseline and clears the overlay.

Merging rules, in order:
1. Malformed payloads are discarded whole; nothing is partially applied.
2. Unknown ids are inserted.
3. Absorbing statuses (completed, cancelled, rejected) never change again.
4. A status that ranks below the baseline is stale and discarded.
5. An assignment to another worker while this session holds an optimistic
   claim is a lost race: the claim is dropped and subscribers are told.
6. Identical content is a duplicate and a no-op.

Usage:
    store = ReconciliationStore(worker_id="w-1")
    store.apply_snapshot(bookings)
    token = store.apply_optimistic("b1", {"status": BookingStatus.ACCEPTED,
                                          "assigned_worker_id": "w-1"})
    ...  # REST call fails
    store.rollback(token)
"""

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import ValidationError

from dispatch_sync.lifecycle.state_machine import (
    TerminalStateError,
    is_absorbing,
    status_rank,
)
from dispatch_sync.schemas.booking_schema import Booking, BookingPatch, BookingStatus

logger = logging.getLogger(__name__)

Payload = Union[Booking, BookingPatch, dict[str, Any]]


class DeltaOutcome(str, Enum):
    """What the store did with an incoming update."""

    INSERTED = "inserted"
    MERGED = "merged"
    DUPLICATE = "duplicate"
    STALE = "stale"
    TERMINAL_DISCARDED = "terminal_discarded"
    RACE_LOST = "race_lost"
    MALFORMED = "malformed"


class ChangeKind(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    RACE_LOST = "race_lost"
    REMOVED = "removed"


@dataclass(frozen=True)
class DeltaResult:
    outcome: DeltaOutcome
    booking_id: Optional[str] = None
    booking: Optional[Booking] = None

    @property
    def applied(self) -> bool:
        return self.outcome in (
            DeltaOutcome.INSERTED, DeltaOutcome.MERGED, DeltaOutcome.RACE_LOST,
        )


@dataclass(frozen=True)
class StoreChange:
    """Notification sent to subscribers after the store has changed."""

    kind: ChangeKind
    booking_id: str
    booking: Optional[Booking] = None
    winner_worker_id: Optional[str] = None


@dataclass(frozen=True)
class OptimisticToken:
    """Handle for undoing one optimistic mutation."""

    booking_id: str
    serial: int
    previous_overlay: Optional[dict[str, Any]] = None
    previous_hidden: bool = False


class OptimisticConflictError(Exception):
    """Raised when an optimistic patch would overwrite a confirmed assignment."""


@dataclass
class _Entry:
    confirmed: Booking
    overlay: Optional[dict[str, Any]] = None
    hidden: bool = False
    serial: int = 0
    dismissed: bool = False

    def view(self) -> Booking:
        if not self.overlay:
            return self.confirmed
        return self.confirmed.model_copy(update=self.overlay)

    def clear_overlay(self) -> None:
        self.overlay = None
        self.hidden = False
        self.serial = 0


Subscriber = Callable[[StoreChange], None]


class ReconciliationStore:
    """Merges REST snapshots, channel deltas, and local optimistic guesses."""

    def __init__(self, worker_id: Optional[str] = None) -> None:
        self._worker_id = worker_id
        self._entries: dict[str, _Entry] = {}
        self._subscribers: list[Subscriber] = []
        self._serials = itertools.count(1)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, booking_id: object) -> bool:
        return booking_id in self._entries

    def get(self, booking_id: str) -> Optional[Booking]:
        entry = self._entries.get(booking_id)
        return entry.view() if entry else None

    def get_confirmed(self, booking_id: str) -> Optional[Booking]:
        entry = self._entries.get(booking_id)
        return entry.confirmed if entry else None

    def has_optimistic(self, booking_id: str) -> bool:
        entry = self._entries.get(booking_id)
        return bool(entry and (entry.overlay or entry.hidden))

    def all(self) -> list[Booking]:
        return [entry.view() for entry in self._entries.values()]

    def pending_requests(self) -> list[Booking]:
        """Pending bookings still on offer to this session, in arrival order."""
        result = []
        for entry in self._entries.values():
            if entry.hidden or entry.dismissed:
                continue
            view = entry.view()
            if view.status == BookingStatus.PENDING:
                result.append(view)
        return result

    def active_jobs(self, worker_id: str) -> list[Booking]:
        """Non-final bookings assigned to ``worker_id`` (confirmed or optimistic)."""
        return [
            view for view in self.all()
            if view.assigned_worker_id == worker_id and not is_absorbing(view.status)
        ]

    def snapshot_state(self) -> dict[str, tuple[dict[str, Any], Optional[dict[str, Any]], bool, bool]]:
        """Comparable dump of every record, including overlays."""
        return {
            booking_id: (
                entry.confirmed.model_dump(),
                dict(entry.overlay) if entry.overlay else None,
                entry.hidden,
                entry.dismissed,
            )
            for booking_id, entry in self._entries.items()
        }

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register for change notifications. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, change: StoreChange) -> None:
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception:
                logger.exception("Store subscriber failed on %s", change.kind.value)

    # ------------------------------------------------------------------ #
    # Server-confirmed updates
    # ------------------------------------------------------------------ #

    def apply_snapshot(
        self,
        bookings: Iterable[Payload],
        *,
        authoritative_removal: bool = False,
    ) -> list[DeltaResult]:
        """
        Apply a full REST fetch.

        Every record in the snapshot replaces its baseline wholesale, subject
        to the terminal and monotonic rules. Ids the snapshot omits are only
        removed when the caller says the omission means removal, and never
        while they carry an optimistic overlay.
        """
        results: list[DeltaResult] = []
        seen: set[str] = set()
        for item in bookings:
            try:
                booking = item if isinstance(item, Booking) else Booking.model_validate(
                    item.model_dump() if isinstance(item, BookingPatch) else item
                )
            except ValidationError as exc:
                logger.warning("Discarding malformed snapshot record: %s", _summarize(exc))
                results.append(DeltaResult(DeltaOutcome.MALFORMED))
                continue
            seen.add(booking.id)
            results.append(self._merge(booking.id, _full_changes(booking)))

        if authoritative_removal:
            for booking_id in [i for i in self._entries if i not in seen]:
                entry = self._entries[booking_id]
                if entry.overlay or entry.hidden:
                    continue
                del self._entries[booking_id]
                self._notify(StoreChange(ChangeKind.REMOVED, booking_id))
        return results

    def apply_delta(self, payload: Payload) -> DeltaResult:
        """Merge one streamed update; apply-or-discard atomically."""
        try:
            if isinstance(payload, Booking):
                booking_id, changes = payload.id, _full_changes(payload)
            else:
                patch = payload if isinstance(payload, BookingPatch) else (
                    BookingPatch.model_validate(payload)
                )
                booking_id, changes = patch.id, patch.changes()
        except ValidationError as exc:
            logger.warning("Discarding malformed booking delta: %s", _summarize(exc))
            return DeltaResult(DeltaOutcome.MALFORMED)
        return self._merge(booking_id, changes)

    def confirm(self, booking: Booking) -> DeltaResult:
        """Adopt a REST response as confirmed state."""
        return self.apply_delta(booking)

    def remove(self, booking_id: str) -> bool:
        """Drop a record from presentation (e.g. ``booking:deleted``)."""
        if self._entries.pop(booking_id, None) is None:
            return False
        self._notify(StoreChange(ChangeKind.REMOVED, booking_id))
        return True

    def _merge(self, booking_id: str, changes: dict[str, Any]) -> DeltaResult:
        entry = self._entries.get(booking_id)

        if entry is None:
            try:
                booking = Booking.model_validate({"id": booking_id, **changes})
            except ValidationError as exc:
                logger.warning(
                    "Discarding malformed new booking %s: %s", booking_id, _summarize(exc)
                )
                return DeltaResult(DeltaOutcome.MALFORMED, booking_id)
            self._entries[booking_id] = _Entry(confirmed=booking)
            logger.debug("Inserted booking %s (%s)", booking_id, booking.status.value)
            self._notify(StoreChange(ChangeKind.INSERTED, booking_id, booking))
            return DeltaResult(DeltaOutcome.INSERTED, booking_id, booking)

        base = entry.confirmed
        try:
            merged = Booking.model_validate({**base.model_dump(), **changes, "id": booking_id})
        except ValidationError as exc:
            logger.warning(
                "Discarding malformed update for %s: %s", booking_id, _summarize(exc)
            )
            return DeltaResult(DeltaOutcome.MALFORMED, booking_id, entry.view())

        if merged.model_dump() == base.model_dump():
            return DeltaResult(DeltaOutcome.DUPLICATE, booking_id, entry.view())

        if is_absorbing(base.status):
            logger.info(
                "Ignoring update to %s booking %s (incoming status: %s)",
                base.status.value, booking_id, merged.status.value,
            )
            return DeltaResult(DeltaOutcome.TERMINAL_DISCARDED, booking_id, entry.view())

        if status_rank(merged.status) < status_rank(base.status):
            logger.debug(
                "Stale update for %s: %s is behind %s",
                booking_id, merged.status.value, base.status.value,
            )
            return DeltaResult(DeltaOutcome.STALE, booking_id, entry.view())

        claimed = self._holds_claim(entry)
        entry.confirmed = merged
        status_moved = merged.status != base.status
        assignment_moved = merged.assigned_worker_id != base.assigned_worker_id

        if (
            claimed
            and merged.assigned_worker_id is not None
            and merged.assigned_worker_id != self._worker_id
        ):
            entry.clear_overlay()
            logger.info(
                "Booking %s went to worker %s; dropping local claim",
                booking_id, merged.assigned_worker_id,
            )
            self._notify(StoreChange(
                ChangeKind.RACE_LOST, booking_id, merged,
                winner_worker_id=merged.assigned_worker_id,
            ))
            return DeltaResult(DeltaOutcome.RACE_LOST, booking_id, merged)

        if status_moved or assignment_moved or is_absorbing(merged.status):
            entry.clear_overlay()

        view = entry.view()
        self._notify(StoreChange(ChangeKind.UPDATED, booking_id, view))
        return DeltaResult(DeltaOutcome.MERGED, booking_id, view)

    def _holds_claim(self, entry: _Entry) -> bool:
        return bool(
            self._worker_id
            and entry.overlay
            and entry.overlay.get("assigned_worker_id") == self._worker_id
        )

    # ------------------------------------------------------------------ #
    # Optimistic layer
    # ------------------------------------------------------------------ #

    def apply_optimistic(
        self,
        booking_id: str,
        patch: dict[str, Any],
        *,
        hidden: bool = False,
    ) -> OptimisticToken:
        """
        Apply a provisional local mutation on top of the confirmed record.

        Raises:
            KeyError: If the booking is unknown.
            TerminalStateError: If the booking is already final.
            OptimisticConflictError: If the patch would replace a confirmed
                assignment to another worker.
            ValueError: If the resulting view violates booking invariants.
        """
        entry = self._entries[booking_id]
        base = entry.confirmed
        if is_absorbing(base.status):
            raise TerminalStateError(
                f"Booking {booking_id} is '{base.status.value}'; no local changes allowed"
            )
        wanted_worker = patch.get("assigned_worker_id")
        if (
            "assigned_worker_id" in patch
            and base.assigned_worker_id is not None
            and wanted_worker != base.assigned_worker_id
        ):
            raise OptimisticConflictError(
                f"Booking {booking_id} is confirmed for worker {base.assigned_worker_id}"
            )

        overlay = {**(entry.overlay or {}), **patch}
        # Validates the combined view; ValidationError is a ValueError.
        Booking.model_validate({**base.model_dump(), **overlay, "id": booking_id})

        token = OptimisticToken(
            booking_id=booking_id,
            serial=next(self._serials),
            previous_overlay=dict(entry.overlay) if entry.overlay else None,
            previous_hidden=entry.hidden,
        )
        entry.overlay = overlay or None
        entry.hidden = entry.hidden or hidden
        entry.serial = token.serial
        logger.debug("Optimistic patch on %s: %s", booking_id, sorted(patch))
        self._notify(StoreChange(ChangeKind.UPDATED, booking_id, entry.view()))
        return token

    def rollback(self, token: OptimisticToken) -> bool:
        """Undo an optimistic mutation unless a confirmation already superseded it."""
        entry = self._entries.get(token.booking_id)
        if entry is None or entry.serial != token.serial:
            return False
        entry.overlay = token.previous_overlay
        entry.hidden = token.previous_hidden
        entry.serial = 0
        logger.debug("Rolled back optimistic patch on %s", token.booking_id)
        self._notify(StoreChange(ChangeKind.UPDATED, token.booking_id, entry.view()))
        return True

    def dismiss(self, booking_id: str) -> None:
        """Permanently hide a booking from this session's pending list."""
        entry = self._entries.get(booking_id)
        if entry is None:
            return
        entry.dismissed = True
        entry.clear_overlay()
        self._notify(StoreChange(ChangeKind.UPDATED, booking_id, entry.view()))


def _full_changes(booking: Booking) -> dict[str, Any]:
    return {name: getattr(booking, name) for name in Booking.model_fields if name != "id"}


def _summarize(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    )
