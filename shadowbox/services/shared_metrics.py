"""
Opt-in hourly usage reports.

SharedMetrics owns the ``hourlyMetrics`` sub-document. When the operator has
enabled metrics sharing in the server config, an hourly task posts the
accumulated per-key usage to the metrics endpoint and starts a new hour.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from shadowbox.core.exceptions import TransientTaskError
from shadowbox.core.json_config import ConfigDocument, SubDocumentView

MS_PER_HOUR = 60 * 60 * 1000
REPORT_TIMEOUT_SECONDS = 30


class SharedMetrics:
    def __init__(
        self,
        hourly_metrics: SubDocumentView,
        server_config: ConfigDocument[Dict[str, Any]],
        metrics_url: str,
        clock_ms: Optional[Callable[[], int]] = None,
        session: Optional[requests.Session] = None,
    ):
        self._view = hourly_metrics
        self._server_config = server_config
        self._metrics_url = metrics_url.rstrip("/")
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))
        self._session = session or requests.Session()
        self._report_task: Optional[asyncio.Task] = None

        if "startUtcMs" not in self._view.read():
            self._start_new_hour()

    @property
    def report_url(self) -> str:
        return f"{self._metrics_url}/connections"

    def is_sharing_enabled(self) -> bool:
        return bool(self._server_config.read().get("metricsEnabled"))

    def set_sharing_enabled(self, enabled: bool) -> None:
        data = self._server_config.read()
        data["metricsEnabled"] = enabled
        self._server_config.write(data)
        self._server_config.persist()
        if enabled:
            # Usage from before the opt-in is never reported
            self._start_new_hour()
        logging.info(f"Metrics sharing {'enabled' if enabled else 'disabled'}")

    def record_usage(self, access_key_id: str, num_bytes: int) -> None:
        if not self.is_sharing_enabled():
            return
        hourly = dict(self._view.read())
        usage = dict(hourly.get("bytesByUserId", {}))
        usage[access_key_id] = usage.get(access_key_id, 0) + num_bytes
        hourly["bytesByUserId"] = usage
        self._view.write(hourly)

    def build_report(self) -> Dict[str, Any]:
        hourly = self._view.read()
        return {
            "serverId": self._server_config.read()["serverId"],
            "startUtcMs": hourly["startUtcMs"],
            "endUtcMs": self._clock_ms(),
            "userReports": [
                {"userId": user_id, "bytesTransferred": num_bytes}
                for user_id, num_bytes in hourly.get("bytesByUserId", {}).items()
            ],
        }

    async def report(self) -> None:
        """Send the current hour's report, then start a new hour."""
        if not self.is_sharing_enabled():
            return
        report = self.build_report()
        try:
            response = await asyncio.to_thread(
                self._session.post, self.report_url, json=report, timeout=REPORT_TIMEOUT_SECONDS
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransientTaskError("hourly-metrics-report", e) from e
        logging.debug(f"Reported usage for {len(report['userReports'])} access keys")
        self._start_new_hour()

    def start_hourly_reporting(self, interval_seconds: float = MS_PER_HOUR / 1000) -> None:
        if self._report_task is None:
            self._report_task = asyncio.create_task(
                self._report_loop(interval_seconds), name="hourly-metrics-report"
            )

    async def stop_hourly_reporting(self) -> None:
        if self._report_task is None:
            return
        self._report_task.cancel()
        await asyncio.gather(self._report_task, return_exceptions=True)
        self._report_task = None

    async def _report_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.report()
            except TransientTaskError as e:
                logging.warning(f"{e}")

    def _start_new_hour(self) -> None:
        self._view.write({"startUtcMs": self._clock_ms(), "bytesByUserId": {}})
