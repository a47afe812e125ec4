from pathlib import Path
from typing import Callable, Optional

from pydantic import Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from shadowbox.core.exceptions import ValidationError

DEFAULT_STATE_DIR = "/root/shadowbox/persisted-state"
DEFAULT_METRICS_URL = "https://metrics-prod.uproxy.org"
DEFAULT_API_PORT = 8081
DEFAULT_SERVER_NAME = "Outline Server"

# Persisted files, relative to the state directory
SERVER_CONFIG_FILENAME = "shadowbox_server_config.json"
METRICS_CONFIG_FILENAME = "shadowbox_stats.json"
ACCESS_KEYS_FILENAME = "shadowbox_config.json"
SCRAPER_CONFIG_FILENAME = "prometheus/config.yml"
SCRAPER_DATA_DIRNAME = "prometheus/data"

# Debounce window for the metrics document
MAX_STATS_FILE_AGE_SECONDS = 5.0

SCRAPER_LISTEN_ADDRESS = "localhost:9090"
SCRAPER_RETENTION = "31d"
SCRAPE_INTERVAL = "15s"


class RuntimeConfig(BaseSettings):
    # Proxy
    public_ip: str = Field(min_length=1)
    default_server_name: str = DEFAULT_SERVER_NAME

    # Metrics reporting
    metrics_url: str = DEFAULT_METRICS_URL

    # Management API
    api_port: int = Field(default=DEFAULT_API_PORT, ge=0, le=65535)
    api_prefix: Optional[str] = None
    certificate_file: Path
    private_key_file: Path

    # Persisted state
    state_dir: Path = Path(DEFAULT_STATE_DIR)

    # Logging, not prefixed
    log_level: str = Field(default="info", validation_alias="LOG_LEVEL")

    # An empty variable means "use the default", as if it were unset
    model_config = SettingsConfigDict(env_prefix="SB_", env_ignore_empty=True, frozen=True, extra="ignore")

    @property
    def verbose(self) -> bool:
        return self.log_level.lower() == "debug"

    @property
    def uses_default_metrics_url(self) -> bool:
        return "metrics_url" not in self.model_fields_set

    @property
    def api_path_prefix(self) -> str:
        """Mount path for the management routes, '' when unset."""
        if not self.api_prefix:
            return ""
        return "/" + self.api_prefix.strip("/")

    def persistent_path(self, name: str) -> Path:
        return self.state_dir / name


def _env_name(field_name: str) -> str:
    field = RuntimeConfig.model_fields.get(field_name)
    if field is None:
        # Aliased fields report their alias
        return field_name
    if isinstance(field.validation_alias, str):
        return field.validation_alias
    return f"SB_{field_name.upper()}"


def load_runtime_config(
    settings_factory: Callable[[], RuntimeConfig] = RuntimeConfig,
) -> RuntimeConfig:
    """Build the RuntimeConfig, turning pydantic errors into one ValidationError."""
    try:
        return settings_factory()
    except PydanticValidationError as e:
        err = e.errors()[0]
        field_name = str(err["loc"][0]) if err["loc"] else "unknown"
        env_name = _env_name(field_name)
        if field_name == "public_ip":
            message = f"Need to specify {env_name} for invite links"
        elif err["type"] == "missing":
            message = f"Need to specify {env_name}"
        else:
            message = f"Invalid {env_name}: {err.get('input')} ({err['msg']})"
        raise ValidationError(env_name, message) from e
