"""
Feeds proxy data transfer into the two metrics owners.

The proxy counts bytes per access key on ``shadowsocks_data_bytes``. Every
poll reads the counter totals, takes the growth since the previous poll and
records it in both ManagerMetrics and SharedMetrics, so one debounced flush
carries both sub-documents.
"""

import asyncio
import logging
from typing import Dict, Optional

from shadowbox.services.access_keys import ProxyMetrics
from shadowbox.services.manager_metrics import ManagerMetrics
from shadowbox.services.shared_metrics import SharedMetrics

USAGE_POLL_SECONDS = 60.0


class UsageCollector:
    def __init__(
        self,
        proxy_metrics: ProxyMetrics,
        manager_metrics: ManagerMetrics,
        shared_metrics: SharedMetrics,
    ):
        self._proxy_metrics = proxy_metrics
        self._manager_metrics = manager_metrics
        self._shared_metrics = shared_metrics
        self._last_totals: Dict[str, float] = {}
        self._poll_task: Optional[asyncio.Task] = None

    def read_totals(self) -> Dict[str, float]:
        """Current counter value per access key."""
        totals: Dict[str, float] = {}
        for family in self._proxy_metrics.data_bytes.collect():
            for sample in family.samples:
                if sample.name.endswith("_total"):
                    totals[sample.labels["access_key"]] = sample.value
        return totals

    def poll(self) -> Dict[str, int]:
        """Record the bytes transferred since the last poll. Returns them per key."""
        totals = self.read_totals()
        transferred: Dict[str, int] = {}
        for access_key_id, total in totals.items():
            previous = self._last_totals.get(access_key_id, 0.0)
            # A counter only shrinks when it was reset
            delta = int(total - previous) if total >= previous else int(total)
            if delta > 0:
                transferred[access_key_id] = delta
        self._last_totals = totals

        for access_key_id, num_bytes in transferred.items():
            self._manager_metrics.record_bytes_transferred(access_key_id, num_bytes)
            self._shared_metrics.record_usage(access_key_id, num_bytes)
        if transferred:
            logging.debug(f"Recorded transfer for {len(transferred)} access keys")
        return transferred

    def start(self, interval_seconds: float = USAGE_POLL_SECONDS) -> None:
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop(interval_seconds), name="usage-collector")

    async def stop(self) -> None:
        """Stop polling, recording whatever accumulated since the last poll."""
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        await asyncio.gather(self._poll_task, return_exceptions=True)
        self._poll_task = None
        self.poll()

    async def _poll_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.poll()
