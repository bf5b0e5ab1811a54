import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from cargo_dispatch.core.clock import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingOffer:
    booking_id: str
    driver_id: str
    offer_sequence: int
    deadline: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.deadline


class OfferTimeoutManager:
    """Tracks the open offer of each booking against a wall-clock deadline.

    Nothing waits on a deadline. ``expire_due`` is polled by the timeout
    sweeper and hands back the offers whose window has closed; clearing or
    invalidating an offer simply forgets it, so a late sweep is a no-op.
    """

    def __init__(self, timeout_seconds: float = 15.0, clock: Clock = utc_now) -> None:
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self.pending_offers: dict[str, PendingOffer] = {}

    def start_offer_timeout(
        self, booking_id: str, driver_id: str, offer_sequence: int
    ) -> PendingOffer:
        offer = PendingOffer(
            booking_id=booking_id,
            driver_id=driver_id,
            offer_sequence=offer_sequence,
            deadline=self._clock() + timedelta(seconds=self.timeout_seconds),
        )
        with self._lock:
            self.pending_offers[booking_id] = offer
        return offer

    def get_offer(self, booking_id: str) -> PendingOffer | None:
        with self._lock:
            return self.pending_offers.get(booking_id)

    def clear_offer(self, booking_id: str, reason: str) -> PendingOffer | None:
        with self._lock:
            offer = self.pending_offers.pop(booking_id, None)
        if offer is not None:
            logger.debug(
                f"Cleared offer {offer.offer_sequence} of booking {booking_id} "
                f"to {offer.driver_id}: {reason}"
            )
        return offer

    def invalidate_offer(self, booking_id: str) -> PendingOffer | None:
        return self.clear_offer(booking_id, "invalidated")

    def expire_due(self, now: datetime | None = None) -> list[PendingOffer]:
        """Remove and return every offer whose deadline has passed."""
        now = now or self._clock()
        with self._lock:
            expired = [offer for offer in self.pending_offers.values() if offer.is_expired(now)]
            for offer in expired:
                del self.pending_offers[offer.booking_id]
        return sorted(expired, key=lambda offer: (offer.deadline, offer.booking_id))

    def clear(self) -> None:
        with self._lock:
            self.pending_offers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self.pending_offers)
