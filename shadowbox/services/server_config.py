import logging
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Union

from shadowbox.core.exceptions import ConfigLoadError
from shadowbox.core.json_config import ConfigDocument, ConfigStore

ServerConfigJson = Dict[str, Any]


def read_server_config(path: Union[str, Path]) -> ConfigDocument[ServerConfigJson]:
    """Load the server document and fill in identity fields on first use."""
    config = ConfigStore.load(path)
    data = config.read()
    if not isinstance(data, dict):
        raise ConfigLoadError(path, ValueError("server config must be a JSON object"))

    data["serverId"] = data.get("serverId") or str(uuid.uuid4())
    data["metricsEnabled"] = data.get("metricsEnabled") or False
    data["createdTimestampMs"] = data.get("createdTimestampMs") or int(time.time() * 1000)
    try:
        config.persist()
    except OSError as e:
        raise ConfigLoadError(path, e) from e

    logging.debug(f"Server id: {data['serverId']}")
    return config
