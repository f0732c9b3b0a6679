"""Static mapping from Stripe price ids to StageFlow plan tiers."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum

from stageflow_api.config import APISettings
from stageflow_api.errors import FatalProcessingError

logger = logging.getLogger(__name__)


class PlanTier(str, Enum):
    """Plan labels stored on ``organizations.plan``."""

    FREE = "free"
    STARTUP = "startup"
    GROWTH = "growth"
    PRO = "pro"


class PlanTierMap:
    """Lookup of price id -> :class:`PlanTier`.

    Monthly and annual prices of the same plan map to the same tier.
    Unconfigured (empty) price ids are skipped, so an empty id on an
    event never matches.
    """

    def __init__(self, prices: Mapping[str, PlanTier]) -> None:
        self._prices = {price_id: tier for price_id, tier in prices.items() if price_id}

    @classmethod
    def from_settings(cls, settings: APISettings) -> PlanTierMap:
        prices: dict[str, PlanTier] = {}
        for price_id, tier in (
            (settings.stripe_price_id_startup, PlanTier.STARTUP),
            (settings.stripe_price_id_startup_annual, PlanTier.STARTUP),
            (settings.stripe_price_id_growth, PlanTier.GROWTH),
            (settings.stripe_price_id_growth_annual, PlanTier.GROWTH),
            (settings.stripe_price_id_pro, PlanTier.PRO),
            (settings.stripe_price_id_pro_annual, PlanTier.PRO),
        ):
            if not price_id:
                continue
            if price_id in prices and prices[price_id] != tier:
                raise ValueError(f"Price id {price_id} is configured for both {prices[price_id].value} and {tier.value}")
            prices[price_id] = tier
        if not prices:
            logger.warning("No Stripe price ids configured; every subscription event will fail tier mapping")
        return cls(prices)

    def __len__(self) -> int:
        return len(self._prices)

    def get(self, price_id: str | None) -> PlanTier | None:
        if not price_id:
            return None
        return self._prices.get(price_id)

    def resolve(self, price_id: str | None) -> PlanTier:
        """Return the tier for *price_id*.

        Raises
        ------
        FatalProcessingError
            If the price id is missing or not configured.  Unknown prices
            never fall back to a default tier.
        """
        tier = self.get(price_id)
        if tier is None:
            raise FatalProcessingError(f"Unrecognised price id: {price_id or '<missing>'}")
        return tier
