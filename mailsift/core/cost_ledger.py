"""Cost ledger: per-user spend tracking with daily and monthly caps.

Work is admitted by reserving its estimated cost up front. A reservation is
either committed with the actual usage once the work settles, or released if
the work never ran. All mutations go through a single ``asyncio.Lock``, so
concurrent completions never lose an increment and the committed plus
reserved total never exceeds a cap.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from mailsift.core.exceptions import QuotaExceeded, ValidationError

logger = logging.getLogger(__name__)

_permit_ids = itertools.count(1)


def _get_settings() -> Any:
    """Lazy import to avoid circular dependency at module level."""
    from mailsift.core.config import get_settings

    return get_settings()


def estimate_cost(tokens: int) -> float:
    """Upper-bound USD cost of ``tokens``, all priced at the output rate."""
    return tokens * _get_settings().MODEL_OUTPUT_COST_PER_M / 1_000_000


@dataclass(frozen=True)
class Permit:
    """Admission ticket for one unit of work."""

    id: int
    user_id: str
    estimated_tokens: int
    estimated_cost_usd: float


class LedgerStatus(BaseModel):
    """Snapshot of a user's spend against their caps."""

    user_id: str
    daily_spent_usd: float
    monthly_spent_usd: float
    reserved_usd: float
    daily_limit_usd: float
    monthly_limit_usd: float
    daily_remaining_usd: float
    monthly_remaining_usd: float
    tokens_committed: int
    enforced: bool
    at_alert_threshold: bool
    exhausted: bool


class CostLedger:
    """Race-safe running totals for one user."""

    def __init__(
        self,
        user_id: str,
        daily_limit_usd: float | None = None,
        monthly_limit_usd: float | None = None,
        daily_spent_usd: float = 0.0,
        monthly_spent_usd: float = 0.0,
        alert_threshold: float | None = None,
        enforce: bool | None = None,
    ) -> None:
        s = _get_settings()
        self.user_id = user_id
        self.daily_limit_usd = s.COST_DAILY_LIMIT_USD if daily_limit_usd is None else daily_limit_usd
        self.monthly_limit_usd = s.COST_MONTHLY_LIMIT_USD if monthly_limit_usd is None else monthly_limit_usd
        self.alert_threshold = s.COST_ALERT_THRESHOLD if alert_threshold is None else alert_threshold
        self.enforce = s.COST_ENFORCE_LIMITS if enforce is None else enforce

        self._daily_spent = daily_spent_usd
        self._monthly_spent = monthly_spent_usd
        self._tokens_committed = 0
        self._reservations: dict[int, Permit] = {}
        self._alerted = False
        self._lock = asyncio.Lock()

    @classmethod
    async def load(cls, user_id: str, store: Any) -> "CostLedger":
        """Build a ledger from the user's settings row and today's recorded spend.

        Args:
            user_id: The user's UUID.
            store: An ``EmailStore`` (or anything with the same cost methods).
        """
        cost_settings = await store.get_cost_settings(user_id)
        daily_spent, monthly_spent = await store.get_spend(user_id)
        enforce = cost_settings.get("pause_on_limit_reached")
        return cls(
            user_id=user_id,
            daily_limit_usd=cost_settings.get("daily_cost_limit"),
            monthly_limit_usd=cost_settings.get("monthly_cost_limit"),
            alert_threshold=cost_settings.get("cost_alert_threshold"),
            enforce=None if enforce is None else bool(enforce),
            daily_spent_usd=daily_spent,
            monthly_spent_usd=monthly_spent,
        )

    # -- Reservations --------------------------------------------------------

    @property
    def _reserved(self) -> float:
        return sum(p.estimated_cost_usd for p in self._reservations.values())

    async def reserve(self, estimated_tokens: int) -> Permit:
        """Admit work expected to use ``estimated_tokens``.

        Raises:
            ValidationError: If the estimate is negative.
            QuotaExceeded: If committed + reserved + estimate would pass a cap.
        """
        if estimated_tokens < 0:
            raise ValidationError("estimated_tokens must be >= 0", field="estimated_tokens")
        cost = estimate_cost(estimated_tokens)
        async with self._lock:
            if self.enforce:
                projected_daily = self._daily_spent + self._reserved + cost
                projected_monthly = self._monthly_spent + self._reserved + cost
                if projected_daily > self.daily_limit_usd:
                    logger.warning(
                        "LEDGER: daily cap reached for user %s (%.4f > %.4f)",
                        self.user_id,
                        projected_daily,
                        self.daily_limit_usd,
                    )
                    raise QuotaExceeded(self.user_id, "daily", self.daily_limit_usd, projected_daily - cost)
                if projected_monthly > self.monthly_limit_usd:
                    logger.warning(
                        "LEDGER: monthly cap reached for user %s (%.4f > %.4f)",
                        self.user_id,
                        projected_monthly,
                        self.monthly_limit_usd,
                    )
                    raise QuotaExceeded(self.user_id, "monthly", self.monthly_limit_usd, projected_monthly - cost)
            permit = Permit(
                id=next(_permit_ids),
                user_id=self.user_id,
                estimated_tokens=estimated_tokens,
                estimated_cost_usd=cost,
            )
            self._reservations[permit.id] = permit
            return permit

    async def commit(self, permit: Permit, actual_tokens: int, actual_cost_usd: float) -> None:
        """Replace a reservation with the actual spend of the settled work."""
        async with self._lock:
            if self._reservations.pop(permit.id, None) is None:
                logger.warning("LEDGER: commit of unknown or settled permit %d ignored", permit.id)
                return
            cost = max(actual_cost_usd, 0.0)
            self._daily_spent += cost
            self._monthly_spent += cost
            self._tokens_committed += max(actual_tokens, 0)
            self._maybe_alert()

    async def release(self, permit: Permit) -> None:
        """Drop a reservation whose work never ran."""
        async with self._lock:
            self._reservations.pop(permit.id, None)

    def _maybe_alert(self) -> None:
        if self._alerted or self.daily_limit_usd <= 0:
            return
        if self._daily_spent >= self.daily_limit_usd * self.alert_threshold:
            self._alerted = True
            logger.warning(
                "LEDGER: user %s passed %.0f%% of daily cost limit",
                self.user_id,
                self.alert_threshold * 100,
                extra={"daily_spent_usd": round(self._daily_spent, 6), "daily_limit_usd": self.daily_limit_usd},
            )

    # -- Reporting -----------------------------------------------------------

    def status(self) -> LedgerStatus:
        """Current totals. Reads are unsynchronized snapshots."""
        reserved = self._reserved
        daily_remaining = max(self.daily_limit_usd - self._daily_spent - reserved, 0.0)
        monthly_remaining = max(self.monthly_limit_usd - self._monthly_spent - reserved, 0.0)
        return LedgerStatus(
            user_id=self.user_id,
            daily_spent_usd=round(self._daily_spent, 6),
            monthly_spent_usd=round(self._monthly_spent, 6),
            reserved_usd=round(reserved, 6),
            daily_limit_usd=self.daily_limit_usd,
            monthly_limit_usd=self.monthly_limit_usd,
            daily_remaining_usd=round(daily_remaining, 6),
            monthly_remaining_usd=round(monthly_remaining, 6),
            tokens_committed=self._tokens_committed,
            enforced=self.enforce,
            at_alert_threshold=self._daily_spent >= self.daily_limit_usd * self.alert_threshold,
            exhausted=self.enforce and (daily_remaining <= 0 or monthly_remaining <= 0),
        )
