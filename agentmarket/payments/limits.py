"""
Spending limit guard
Per-transaction, daily and monthly caps checked before any payment
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Optional, Protocol, Tuple

import structlog

from agentmarket.amounts import format_price, parse_limit
from agentmarket.errors import InputValidationError
from agentmarket.models import LimitCheckResult, SpendingLimits, SpendingStats, utcnow

logger = structlog.get_logger()


class SpendingLimitStore(Protocol):
    async def get_limits(self, identity: str) -> Optional[SpendingLimits]:
        ...

    async def set_limits(self, limits: SpendingLimits) -> SpendingLimits:
        ...

    async def delete_limits(self, identity: str) -> bool:
        ...

    async def get_spending_stats(self, identity: str, as_of: datetime) -> SpendingStats:
        ...


class SpendingLimitGuard:
    """
    Enforces spending caps per identity.

    Checks for one identity are serialized; an amount that lands exactly on a
    cap is allowed. Prepared but unsettled purchases hold a reservation that
    counts toward the daily and monthly caps until released or expired.
    """

    def __init__(
        self,
        store: SpendingLimitStore,
        default_per_transaction: str = "$5.00",
        default_daily: str = "$50.00",
        default_monthly: str = "$500.00",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.defaults = {
            "per_transaction": parse_limit(default_per_transaction, "perTransaction"),
            "daily": parse_limit(default_daily, "daily"),
            "monthly": parse_limit(default_monthly, "monthly"),
        }
        self._clock = clock or utcnow
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # identity -> reservation key -> (amount, expires_at)
        self._reservations: Dict[str, Dict[str, Tuple[Decimal, datetime]]] = defaultdict(dict)

    def _pending(self, identity: str, exclude: Optional[str] = None) -> Decimal:
        """Unexpired reservations for ``identity``; expired ones are dropped"""
        reservations = self._reservations.get(identity)
        if not reservations:
            return Decimal("0")
        now = self._clock()
        for key in [k for k, (_, expires_at) in reservations.items() if now > expires_at]:
            del reservations[key]
        return sum((amount for k, (amount, _) in reservations.items() if k != exclude), Decimal("0"))

    async def _evaluate(self, identity: str, amount: Decimal, exclude: Optional[str] = None) -> LimitCheckResult:
        # Caller holds the identity lock
        limits = await self.store.get_limits(identity)
        if limits is None or not limits.enabled:
            return LimitCheckResult(allowed=True, limits=limits)

        spending = await self.store.get_spending_stats(identity, self._clock())
        pending = self._pending(identity, exclude)

        exceeded = None
        reason = None
        if amount > limits.per_transaction:
            exceeded = "per-transaction"
            reason = (
                f"Amount {format_price(amount)} exceeds per-transaction limit "
                f"of {format_price(limits.per_transaction)}"
            )
        elif spending.total_today + pending + amount > limits.daily:
            exceeded = "daily"
            reason = (
                f"Would exceed daily limit. Spent today: {format_price(spending.total_today)}, "
                f"pending: {format_price(pending)} of {format_price(limits.daily)}"
            )
        elif spending.total_this_month + pending + amount > limits.monthly:
            exceeded = "monthly"
            reason = (
                f"Would exceed monthly limit. Spent this month: "
                f"{format_price(spending.total_this_month)}, pending: {format_price(pending)} "
                f"of {format_price(limits.monthly)}"
            )

        if exceeded:
            logger.warning(
                "spending_limit_exceeded",
                identity=identity,
                amount=str(amount),
                pending=str(pending),
                exceeded=exceeded,
            )

        return LimitCheckResult(
            allowed=exceeded is None,
            reason=reason,
            exceeded=exceeded,
            current_spending=spending,
            pending=pending,
            limits=limits,
        )

    async def check_limit(self, identity: str, amount: Decimal) -> LimitCheckResult:
        """
        Check whether ``identity`` may spend ``amount`` now. Amounts reserved
        by unsettled sessions count as already spent.

        Returns:
            LimitCheckResult naming the exceeded limit when denied
        """
        async with self._locks[identity]:
            return await self._evaluate(identity, amount)

    async def reserve(
        self, identity: str, amount: Decimal, key: str, expires_at: datetime
    ) -> LimitCheckResult:
        """
        Check ``amount`` and, when allowed, hold it against the limits until
        ``release`` or ``expires_at``. Check and hold happen under one lock.
        """
        async with self._locks[identity]:
            result = await self._evaluate(identity, amount, exclude=key)
            if result.allowed:
                self._reservations[identity][key] = (amount, expires_at)
        return result

    def pending(self, identity: str) -> Decimal:
        """Total currently reserved for ``identity``"""
        return self._pending(identity)

    def release(self, identity: str, key: str) -> None:
        """Drop a reservation once its session has settled"""
        reservations = self._reservations.get(identity)
        if reservations is not None:
            reservations.pop(key, None)
            if not reservations:
                del self._reservations[identity]

    async def set_limits(
        self,
        identity: str,
        per_transaction: Optional[str] = None,
        daily: Optional[str] = None,
        monthly: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> SpendingLimits:
        """
        Create or update limits. Omitted fields keep their current value, or
        the configured default for a new identity.
        """
        if not identity:
            raise InputValidationError("identity is required", field="identity")

        async with self._locks[identity]:
            existing = await self.store.get_limits(identity)
            now = self._clock()

            values = {
                "per_transaction": existing.per_transaction if existing else self.defaults["per_transaction"],
                "daily": existing.daily if existing else self.defaults["daily"],
                "monthly": existing.monthly if existing else self.defaults["monthly"],
            }
            if per_transaction is not None:
                values["per_transaction"] = parse_limit(per_transaction, "perTransaction")
            if daily is not None:
                values["daily"] = parse_limit(daily, "daily")
            if monthly is not None:
                values["monthly"] = parse_limit(monthly, "monthly")

            limits = SpendingLimits(
                identity=identity,
                enabled=enabled if enabled is not None else (existing.enabled if existing else True),
                created_at=existing.created_at if existing else now,
                updated_at=now,
                **values,
            )
            await self.store.set_limits(limits)

        logger.info("spending_limits_set", identity=identity, **limits.display())
        return limits

    async def get_limits(self, identity: str) -> Optional[SpendingLimits]:
        return await self.store.get_limits(identity)

    async def reset_limits(self, identity: str) -> bool:
        """Remove all limits for ``identity``"""
        async with self._locks[identity]:
            removed = await self.store.delete_limits(identity)
        logger.info("spending_limits_reset", identity=identity, removed=removed)
        return removed

    async def get_spending(self, identity: str) -> SpendingStats:
        return await self.store.get_spending_stats(identity, self._clock())
