"""
Access-key repository.

The repository is built asynchronously: it reads its document from disk and
picks a free port for new keys before the management API may use it.
"""

import asyncio
import base64
import json
import logging
import secrets
import socket
import uuid
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote

import aiofiles
import aiofiles.os
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge
from pydantic import BaseModel, Field

from shadowbox.core.json_config import ConfigDocument

DEFAULT_ENCRYPTION_METHOD = "chacha20-ietf-poly1305"


class AccessKeyNotFound(KeyError):
    def __init__(self, access_key_id: str):
        self.access_key_id = access_key_id
        super().__init__(access_key_id)

    def __str__(self) -> str:
        return f"Access key {self.access_key_id} not found"


class ProxyMetrics:
    """Proxy-side collectors registered next to the process metrics."""

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.data_bytes = Counter(
            "shadowsocks_data_bytes",
            "Bytes transferred by the proxy",
            ["access_key"],
            registry=registry,
        )
        self.access_keys = Gauge(
            "shadowsocks_keys",
            "Count of access keys",
            registry=registry,
        )


class AccessKey(BaseModel):
    id: str
    name: str = ""
    metricsId: str = Field(default_factory=lambda: str(uuid.uuid4()))
    password: str
    port: int
    encryptionMethod: str = DEFAULT_ENCRYPTION_METHOD

    def access_url(self, hostname: str) -> str:
        user_info = f"{self.encryptionMethod}:{self.password}".encode("utf-8")
        encoded = base64.urlsafe_b64encode(user_info).decode("ascii").rstrip("=")
        return f"ss://{encoded}@{hostname}:{self.port}/#{quote(self.name)}"


class AccessKeyRepository:
    def __init__(
        self,
        proxy_hostname: str,
        document: ConfigDocument[dict],
        proxy_metrics: ProxyMetrics,
    ):
        self._proxy_hostname = proxy_hostname
        self._document = document
        self._metrics = proxy_metrics
        self._keys: Dict[str, AccessKey] = {
            raw["id"]: AccessKey(**raw) for raw in document.read().get("accessKeys", [])
        }
        self._metrics.access_keys.set(len(self._keys))

    @property
    def proxy_hostname(self) -> str:
        return self._proxy_hostname

    @property
    def port_for_new_access_keys(self) -> int:
        return self._document.read()["portForNewAccessKeys"]

    def list_access_keys(self) -> List[AccessKey]:
        return list(self._keys.values())

    def get_access_key(self, access_key_id: str) -> AccessKey:
        try:
            return self._keys[access_key_id]
        except KeyError:
            raise AccessKeyNotFound(access_key_id) from None

    def create_new_access_key(self) -> AccessKey:
        data = self._document.read()
        next_id = data.get("nextId", 0)
        access_key = AccessKey(
            id=str(next_id),
            password=secrets.token_urlsafe(16),
            port=self.port_for_new_access_keys,
        )
        data["nextId"] = next_id + 1
        self._keys[access_key.id] = access_key
        self._save()
        logging.info(f"Created access key {access_key.id}")
        return access_key

    def rename_access_key(self, access_key_id: str, name: str) -> None:
        self.get_access_key(access_key_id).name = name
        self._save()

    def remove_access_key(self, access_key_id: str) -> None:
        self.get_access_key(access_key_id)
        del self._keys[access_key_id]
        self._save()
        logging.info(f"Removed access key {access_key_id}")

    def _save(self) -> None:
        data = self._document.read()
        data["accessKeys"] = [k.model_dump() for k in self._keys.values()]
        self._document.write(data)
        self._document.persist()
        self._metrics.access_keys.set(len(self._keys))


def _get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("", 0))
        return sock.getsockname()[1]


async def create_access_key_repository(
    proxy_hostname: str,
    path: Path,
    proxy_metrics: ProxyMetrics,
    port_for_new_access_keys: Optional[int] = None,
) -> AccessKeyRepository:
    """Read the access-key document and build the repository around it."""
    data: dict = {}
    if await aiofiles.os.path.exists(path):
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            text = await f.read()
        if text.strip():
            data = json.loads(text)
    else:
        logging.info(f"No access keys at {path}, starting with an empty repository")

    data.setdefault("accessKeys", [])
    data.setdefault("nextId", 0)
    if not data.get("portForNewAccessKeys"):
        data["portForNewAccessKeys"] = port_for_new_access_keys or await asyncio.to_thread(_get_free_port)

    document = ConfigDocument(path, data)
    await asyncio.to_thread(document.persist)
    return AccessKeyRepository(proxy_hostname, document, proxy_metrics)
