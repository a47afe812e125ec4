import logging
from typing import Any, Dict, List

from shadowbox.core.json_config import ConfigDocument
from shadowbox.services.access_keys import AccessKey, AccessKeyRepository
from shadowbox.services.manager_metrics import ManagerMetrics
from shadowbox.services.shared_metrics import SharedMetrics


class ManagerService:
    """Operations behind the management API."""

    def __init__(
        self,
        default_server_name: str,
        server_config: ConfigDocument[Dict[str, Any]],
        access_keys: AccessKeyRepository,
        manager_metrics: ManagerMetrics,
        shared_metrics: SharedMetrics,
    ):
        self._default_server_name = default_server_name
        self._server_config = server_config
        self._access_keys = access_keys
        self._manager_metrics = manager_metrics
        self._shared_metrics = shared_metrics

    def get_server(self) -> Dict[str, Any]:
        data = self._server_config.read()
        return {
            "name": data.get("name") or self._default_server_name,
            "serverId": data["serverId"],
            "metricsEnabled": self._shared_metrics.is_sharing_enabled(),
            "createdTimestampMs": data["createdTimestampMs"],
            "portForNewAccessKeys": self._access_keys.port_for_new_access_keys,
        }

    def rename_server(self, name: str) -> None:
        data = self._server_config.read()
        data["name"] = name
        self._server_config.write(data)
        self._server_config.persist()
        logging.info(f"Server renamed to '{name}'")

    def list_access_keys(self) -> List[Dict[str, Any]]:
        return [self._to_json(k) for k in self._access_keys.list_access_keys()]

    def create_access_key(self) -> Dict[str, Any]:
        return self._to_json(self._access_keys.create_new_access_key())

    def rename_access_key(self, access_key_id: str, name: str) -> None:
        self._access_keys.rename_access_key(access_key_id, name)

    def remove_access_key(self, access_key_id: str) -> None:
        self._access_keys.remove_access_key(access_key_id)
        self._manager_metrics.forget_access_key(access_key_id)

    def get_data_usage(self) -> Dict[str, Any]:
        return {"bytesTransferredByUserId": self._manager_metrics.get_outbound_byte_transfer()}

    def get_metrics_enabled(self) -> bool:
        return self._shared_metrics.is_sharing_enabled()

    def set_metrics_enabled(self, enabled: bool) -> None:
        self._shared_metrics.set_sharing_enabled(enabled)

    def _to_json(self, access_key: AccessKey) -> Dict[str, Any]:
        return {
            "id": access_key.id,
            "name": access_key.name,
            "password": access_key.password,
            "port": access_key.port,
            "method": access_key.encryptionMethod,
            "accessUrl": access_key.access_url(self._access_keys.proxy_hostname),
        }
