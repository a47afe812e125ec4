from pathlib import Path
from typing import Any, Dict, Optional, Union

from shadowbox.config import MAX_STATS_FILE_AGE_SECONDS
from shadowbox.core.exceptions import ConfigLoadError
from shadowbox.core.json_config import ConfigStore, DelayedWriteCoordinator, SubDocumentView
from shadowbox.core.timer import TimerScheduler

# WARNING: Renaming these fields breaks files written by older servers
TRANSFER_STATS_FIELD = "transferStats"
HOURLY_METRICS_FIELD = "hourlyMetrics"

MetricsConfigJson = Dict[str, Any]


def read_metrics_config(
    path: Union[str, Path],
    delay_seconds: float = MAX_STATS_FILE_AGE_SECONDS,
    scheduler: Optional[TimerScheduler] = None,
) -> DelayedWriteCoordinator[MetricsConfigJson]:
    """Load the metrics document, making sure both sub-documents are objects."""
    config = ConfigStore.load(path)
    data = config.read()
    if not isinstance(data, dict):
        raise ConfigLoadError(path, ValueError("metrics config must be a JSON object"))

    for field_name in (TRANSFER_STATS_FIELD, HOURLY_METRICS_FIELD):
        if not isinstance(data.get(field_name), dict):
            data[field_name] = {}

    return DelayedWriteCoordinator(config, delay_seconds, scheduler=scheduler)


def transfer_stats_view(metrics_config: DelayedWriteCoordinator[MetricsConfigJson]) -> SubDocumentView:
    return SubDocumentView(metrics_config, TRANSFER_STATS_FIELD)


def hourly_metrics_view(metrics_config: DelayedWriteCoordinator[MetricsConfigJson]) -> SubDocumentView:
    return SubDocumentView(metrics_config, HOURLY_METRICS_FIELD)
