"""
Bar aggregator for building OHLC bars from quote ticks.

Buckets each tick by the subscription's resolution and either widens the
subscription's current bar or starts a new one. Holds no timers; callers
drive it at whatever cadence their quotes arrive.
"""

from typing import TYPE_CHECKING

from arena_engine.logging import get_logger
from arena_engine.market_data.models import Bar, BarUpdate, QuoteTick, bucket_start, resolution_seconds

if TYPE_CHECKING:
    from arena_engine.market_data.registry import Subscription

logger = get_logger(__name__)


def start_bar(bucket: int, price: float) -> Bar:
    return Bar(time=bucket, open=price, high=price, low=price, close=price, volume=0.0)


def extend_bar(bar: Bar, price: float) -> Bar:
    """Return bar widened by price; the input bar is left untouched."""
    return bar.model_copy(
        update={
            "high": max(bar.high, price),
            "low": min(bar.low, price),
            "close": price,
        }
    )


class BarAggregator:
    """
    Turns ticks into bars on behalf of a subscription.

    Volume is not available from quotes, so realtime bars carry volume 0.
    """

    def __init__(self) -> None:
        self._volume_warned: set[str] = set()
        self._dropped: int = 0

    @property
    def dropped_ticks(self) -> int:
        return self._dropped

    def apply(self, subscription: "Subscription", tick: QuoteTick) -> BarUpdate | None:
        """
        Feed one tick into the subscription's current bar.

        Args:
            subscription: Subscription whose last_bar is updated
            tick: Incoming quote

        Returns:
            BarUpdate with the new bar state, or None if the tick belongs to a
            bucket older than the current bar (it would move time backwards)
        """
        width = resolution_seconds(subscription.resolution)
        bucket = bucket_start(tick.timestamp, width)
        last = subscription.last_bar

        if last is not None and bucket < last.time:
            self._dropped += 1
            logger.debug(
                "Dropping out-of-order tick for %s: bucket %d < current %d",
                subscription.id,
                bucket,
                last.time,
            )
            return None

        if last is not None and last.time == bucket:
            bar = extend_bar(last, tick.mid)
            is_new_bar = False
        else:
            bar = start_bar(bucket, tick.mid)
            is_new_bar = True
            if subscription.symbol not in self._volume_warned:
                logger.info(
                    "Volume not available for %s realtime bars (using 0)",
                    subscription.symbol,
                )
                self._volume_warned.add(subscription.symbol)

        subscription.last_bar = bar
        return BarUpdate(
            subscription_id=subscription.id,
            symbol=subscription.symbol,
            resolution=subscription.resolution,
            bar=bar,
            is_new_bar=is_new_bar,
        )
