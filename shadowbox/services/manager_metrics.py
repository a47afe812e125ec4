import logging
import time
from typing import Callable, Dict, Optional

from shadowbox.core.json_config import SubDocumentView

MS_PER_DAY = 24 * 60 * 60 * 1000
TRANSFER_WINDOW_DAYS = 30


class ManagerMetrics:
    """
    Per access-key data transfer, bucketed by day.

    Owns the ``transferStats`` sub-document:
    ``{"dailyBytesByUserId": {"<day>": {"<access key id>": bytes}}}``
    """

    def __init__(
        self,
        transfer_stats: SubDocumentView,
        clock_ms: Optional[Callable[[], int]] = None,
    ):
        self._view = transfer_stats
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))

    def record_bytes_transferred(self, access_key_id: str, num_bytes: int) -> None:
        stats = dict(self._view.read())
        daily = dict(stats.get("dailyBytesByUserId", {}))
        today = str(self._clock_ms() // MS_PER_DAY)
        day_bucket = dict(daily.get(today, {}))
        day_bucket[access_key_id] = day_bucket.get(access_key_id, 0) + num_bytes
        daily[today] = day_bucket
        stats["dailyBytesByUserId"] = self._prune(daily)
        self._view.write(stats)

    def get_outbound_byte_transfer(self) -> Dict[str, int]:
        """Bytes per access key over the last 30 days."""
        totals: Dict[str, int] = {}
        daily = self._prune(self._view.read().get("dailyBytesByUserId", {}))
        for day_bucket in daily.values():
            for access_key_id, num_bytes in day_bucket.items():
                totals[access_key_id] = totals.get(access_key_id, 0) + num_bytes
        return totals

    def forget_access_key(self, access_key_id: str) -> None:
        stats = dict(self._view.read())
        daily = stats.get("dailyBytesByUserId", {})
        if not any(access_key_id in bucket for bucket in daily.values()):
            return
        stats["dailyBytesByUserId"] = {
            day: {k: v for k, v in bucket.items() if k != access_key_id}
            for day, bucket in daily.items()
        }
        self._view.write(stats)
        logging.debug(f"Dropped transfer stats for access key {access_key_id}")

    def _prune(self, daily: Dict[str, Dict[str, int]]) -> Dict[str, Dict[str, int]]:
        oldest_day = self._clock_ms() // MS_PER_DAY - TRANSFER_WINDOW_DAYS + 1
        return {day: bucket for day, bucket in daily.items() if int(day) >= oldest_day}
