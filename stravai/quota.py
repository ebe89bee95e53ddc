"""Advisory AI usage ledger persisted alongside the athlete profile.

The daily counter survives restarts through the cache record; the per-minute
counter is process-local and only observed, never used to gate calls. The
provider does not enforce these numbers, the ledger just keeps the sync from
burning the budget blindly.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from .config import GEMINI_DAILY_LIMIT, GEMINI_MINUTE_LIMIT, QUOTA_AUTO_RESET
from .errors import StravaAPIError
from .models import QuotaState
from .remote_state import RemoteStateStore
from .utils import Clock, utc_now

LOGGER = logging.getLogger(__name__)


class QuotaDecision(str, Enum):
    ALLOWED = "allowed"
    DAILY_EXHAUSTED = "daily_exhausted"


class ResetPolicy(Protocol):
    def apply(self, state: QuotaState, now: datetime) -> QuotaState: ...


class ManualResetPolicy:
    """Never reset automatically; an operator clears the counter."""

    def apply(self, state: QuotaState, now: datetime) -> QuotaState:
        return state


class ResetWhenDuePolicy:
    """Zero the daily counter once ``reset_at`` has passed."""

    def __init__(self, period: timedelta = timedelta(hours=24)) -> None:
        self.period = period

    def apply(self, state: QuotaState, now: datetime) -> QuotaState:
        if now < state.reset_at:
            return state
        LOGGER.info(
            "Daily AI quota window ended at %s; resetting dailyUsed=%s",
            state.reset_at.isoformat(),
            state.daily_used,
        )
        return state.copy(daily_used=0, reset_at=now + self.period)


def default_reset_policy() -> ResetPolicy:
    return ResetWhenDuePolicy() if QUOTA_AUTO_RESET else ManualResetPolicy()


class QuotaLedger:
    def __init__(
        self,
        store: RemoteStateStore,
        *,
        daily_limit: int = GEMINI_DAILY_LIMIT,
        minute_limit: int = GEMINI_MINUTE_LIMIT,
        reset_policy: Optional[ResetPolicy] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self.daily_limit = daily_limit
        self.minute_limit = minute_limit
        self._reset_policy = reset_policy or default_reset_policy()
        self._clock = clock
        self.profile: Dict[str, Any] = {}
        self.state = QuotaState.fresh(clock(), daily_limit, minute_limit)
        self._minute_key: Optional[str] = None

    def load(self) -> None:
        """Pull the persisted profile and daily counters from the cache record.

        Read failures leave fresh defaults in place; the pass can still run.
        """

        try:
            snapshot = self._store.read_cache()
        except StravaAPIError as exc:
            LOGGER.warning("Could not read remote state, using fresh quota: %s", exc)
            snapshot = None
        now = self._clock()
        if snapshot is None:
            self.profile = {}
            persisted = QuotaState.fresh(now, self.daily_limit, self.minute_limit)
        else:
            self.profile = dict(snapshot.profile)
            persisted = snapshot.quota
        # The minute counter is process-local and never restored.
        self.state = self._reset_policy.apply(
            persisted.copy(
                daily_limit=self.daily_limit,
                minute_limit=self.minute_limit,
                minute_used=self.state.minute_used,
            ),
            now,
        )
        LOGGER.info(
            "AI quota loaded dailyUsed=%s/%s resetAt=%s",
            self.state.daily_used,
            self.state.daily_limit,
            self.state.reset_at.isoformat(),
        )

    def check_and_reserve(self) -> QuotaDecision:
        """Return whether another AI call fits in the daily budget."""

        self._roll_minute()
        if self.state.daily_used >= self.daily_limit:
            LOGGER.warning(
                "Daily AI quota exhausted (%s/%s)", self.state.daily_used, self.daily_limit
            )
            return QuotaDecision.DAILY_EXHAUSTED
        if self.state.minute_used >= self.minute_limit:
            LOGGER.info(
                "Per-minute AI usage at %s/%s (advisory only)",
                self.state.minute_used,
                self.minute_limit,
            )
        return QuotaDecision.ALLOWED

    def record_usage(self, *, persist: bool = True) -> None:
        """Count one successful AI call and persist it with the profile.

        Pass ``persist=False`` when the caller writes the profile itself right
        after, so both land in a single update.
        """

        self._roll_minute()
        self.state = self.state.copy(
            daily_used=self.state.daily_used + 1,
            minute_used=self.state.minute_used + 1,
        )
        if persist:
            self.persist()

    def reset(self) -> None:
        """Operator reset of the daily counter."""

        now = self._clock()
        self.state = self.state.copy(daily_used=0, reset_at=now + timedelta(hours=24))
        LOGGER.info("Daily AI quota reset by operator")
        self.persist()

    def persist(self) -> None:
        try:
            self._store.write_cache(self.profile, self.state)
        except StravaAPIError as exc:
            # The in-memory count stays authoritative for the rest of the pass.
            LOGGER.warning("Failed to persist AI quota ledger: %s", exc)

    def snapshot(self) -> Dict[str, Any]:
        self._roll_minute()
        return self.state.to_dict()

    def _roll_minute(self) -> None:
        key = self._clock().strftime("%Y%m%d%H%M")
        if key != self._minute_key:
            self._minute_key = key
            if self.state.minute_used:
                self.state = self.state.copy(minute_used=0)
