"""PendingMatch: a proposed pairing awaiting approval from both users."""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone

from carpool.services.search_registry import ActiveSearch


class MatchStatus(str, enum.Enum):
    PENDING_APPROVAL = "pending_approval"
    CONNECTED = "connected"
    CANCELLED = "cancelled"


class CancelReason(str, enum.Enum):
    DENIED = "denied"
    EXPIRED = "expired"
    DISCONNECTED = "disconnected"


CANCEL_MESSAGES = {
    CancelReason.DENIED: "Match was declined",
    CancelReason.EXPIRED: "Match expired",
    CancelReason.DISCONNECTED: "Your partner is no longer available",
}


@dataclass
class PendingMatch:
    match_id: str
    user_a: int
    user_b: int
    search_a: ActiveSearch
    search_b: ActiveSearch
    pickup_distance_m: float
    status: MatchStatus = MatchStatus.PENDING_APPROVAL
    approvals: set[int] = field(default_factory=set)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cancel_reason: CancelReason | None = None

    @property
    def users(self) -> tuple[int, int]:
        return (self.user_a, self.user_b)

    @property
    def fully_approved(self) -> bool:
        return self.user_a in self.approvals and self.user_b in self.approvals

    def has_member(self, user_id: int) -> bool:
        return user_id in (self.user_a, self.user_b)

    def partner_of(self, user_id: int) -> int:
        return self.user_b if user_id == self.user_a else self.user_a

    def search_of(self, user_id: int) -> ActiveSearch:
        return self.search_a if user_id == self.user_a else self.search_b
