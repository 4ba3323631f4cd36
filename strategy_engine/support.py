"""
Strategy Engine - Support Level Analyzer.

============================================================
PURPOSE
============================================================
Finds price levels where candle lows cluster.

============================================================
METHOD
============================================================
1. Sort the window's lows and group them greedily into zones
   no wider than 0.5% of the zone's first low
2. Keep zones touched at least twice
3. Score each zone:
     0.3 x min(touches / 5, 1)
   + 0.4 x recency (position of the latest touch in the window)
   + 0.3 x volume  (touch volume vs window volume, capped at 1)
4. Return zones strongest first

Candles are expected oldest first.

============================================================
"""

import logging
from decimal import Decimal
from typing import List, Optional, Sequence

from execution_engine.types import Candle
from .types import SupportLevel


logger = logging.getLogger(__name__)


MIN_CANDLES = 10
MIN_TOUCHES = 2
ZONE_WIDTH_PERCENT = Decimal("0.5")
FALLBACK_MARKUP = Decimal("1.005")

TOUCH_WEIGHT = 0.3
RECENCY_WEIGHT = 0.4
VOLUME_WEIGHT = 0.3
FULL_TOUCH_COUNT = 5


class SupportLevelAnalyzer:
    """Detects and scores support zones from candle lows."""

    def __init__(
        self,
        zone_width_percent: Decimal = ZONE_WIDTH_PERCENT,
        min_touches: int = MIN_TOUCHES,
    ):
        self.zone_width_percent = zone_width_percent
        self.min_touches = min_touches

    def find_support_levels(self, candles: Sequence[Candle]) -> List[SupportLevel]:
        """
        Detect support zones.

        Args:
            candles: Candle window, oldest first

        Returns:
            Support levels sorted by strength (strongest first);
            empty when fewer than 10 candles are given
        """
        if len(candles) < MIN_CANDLES:
            return []

        indexed = sorted(enumerate(candles), key=lambda item: item[1].low)
        zones: List[List[int]] = []
        zone_floor: Optional[Decimal] = None

        for index, candle in indexed:
            if candle.low <= 0:
                continue
            if zone_floor is not None and candle.low <= zone_floor * (1 + self.zone_width_percent / 100):
                zones[-1].append(index)
            else:
                zones.append([index])
                zone_floor = candle.low

        levels = []
        for touch_indices in zones:
            if len(touch_indices) < self.min_touches:
                continue
            lows = [candles[i].low for i in touch_indices]
            levels.append(SupportLevel(
                price=sum(lows, Decimal("0")) / len(lows),
                touches=len(touch_indices),
                strength=self.calculate_support_strength(touch_indices, candles),
                last_touch_index=max(touch_indices),
            ))

        levels.sort(key=lambda level: (level.strength, level.touches), reverse=True)
        logger.debug(f"Support zones | candles={len(candles)} | zones={len(zones)} | levels={len(levels)}")
        return levels

    def fallback_level(self, candles: Sequence[Candle]) -> Optional[SupportLevel]:
        """Support 0.5% above the window's lowest low, scored as a single touch."""
        if len(candles) < MIN_CANDLES:
            return None
        index, lowest = min(enumerate(candles), key=lambda item: item[1].low)
        return SupportLevel(
            price=lowest.low * FALLBACK_MARKUP,
            touches=1,
            strength=self.calculate_support_strength([index], candles),
            last_touch_index=index,
            is_fallback=True,
        )

    @staticmethod
    def calculate_support_strength(touch_indices: Sequence[int], candles: Sequence[Candle]) -> float:
        """
        Composite strength of a zone, in [0, 1].

        Args:
            touch_indices: Window indices of the touching candles
            candles: Candle window, oldest first
        """
        if not touch_indices or not candles:
            return 0.0

        touch_score = min(len(touch_indices) / FULL_TOUCH_COUNT, 1.0)

        if len(candles) > 1:
            recency_score = max(touch_indices) / (len(candles) - 1)
        else:
            recency_score = 1.0

        window_volume = sum((c.volume for c in candles), Decimal("0")) / len(candles)
        if window_volume > 0:
            touch_volume = sum((candles[i].volume for i in touch_indices), Decimal("0")) / len(touch_indices)
            volume_score = min(float(touch_volume / window_volume), 1.0)
        else:
            volume_score = 0.0

        strength = (
            TOUCH_WEIGHT * touch_score
            + RECENCY_WEIGHT * recency_score
            + VOLUME_WEIGHT * volume_score
        )
        return min(strength, 1.0)
