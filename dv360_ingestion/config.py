"""
Runtime configuration for the DV360 feature adoption pipelines.

Values are read once from dlt's config providers under ``sources.dv360``
(.dlt/config.toml, .dlt/secrets.toml or SOURCES__DV360__* environment
variables) and passed explicitly to every remote call site.

Example .dlt/secrets.toml:

    [sources.dv360]
    refresh_token = "..."
    client_id = "..."
    client_secret = "..."

    [destination.bigquery.credentials]
    project_id = "..."
"""

from dataclasses import dataclass, field, fields
from typing import Any, List, Optional

import dlt

from dv360_ingestion.utils.token_refresh import Credentials

CONFIG_SECTION = "sources.dv360"

DATASET_NAME = "dv360_feature_adoption"
BID_MANAGER_API_URL = "https://doubleclickbidmanager.googleapis.com/v2"
DISPLAY_VIDEO_API_URL = "https://displayvideo.googleapis.com/v3"
DISPLAY_VIDEO_DOWNLOAD_URL = "https://displayvideo.googleapis.com/download"
SDF_VERSION = "SDF_VERSION_7"


@dataclass
class Settings:
    credentials: Credentials = field(default_factory=Credentials)
    advertiser_ids: List[str] = field(default_factory=list)

    # Destination
    destination: str = "bigquery"
    dataset_name: str = DATASET_NAME
    report_table: str = "reports"
    sdf_table: str = "sdfs"
    location: str = "US"

    # Remote APIs
    bid_manager_url: str = BID_MANAGER_API_URL
    display_video_url: str = DISPLAY_VIDEO_API_URL
    download_url: str = DISPLAY_VIDEO_DOWNLOAD_URL
    sdf_version: str = SDF_VERSION
    http_timeout: float = 300.0

    # Polling: delay grows from poll_interval by poll_backoff up to
    # poll_max_interval; the whole wait is capped at poll_timeout seconds
    poll_interval: float = 30.0
    poll_backoff: float = 2.0
    poll_max_interval: float = 300.0
    poll_timeout: float = 3600.0

    # HTTP surface: deadline for submitting and polling a job. Loading is
    # not bounded by it and always runs to completion
    request_timeout: float = 3900.0
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_dlt(cls) -> "Settings":
        """Build settings from dlt config and secrets, falling back to defaults."""
        credentials = Credentials(
            access_token=_secret("access_token"),
            refresh_token=_secret("refresh_token"),
            client_id=_secret("client_id"),
            client_secret=_secret("client_secret"),
        )

        overrides = {}
        for settings_field in fields(cls):
            if settings_field.name in ("credentials", "advertiser_ids"):
                continue
            value = dlt.config.get(f"{CONFIG_SECTION}.{settings_field.name}")
            if value is not None:
                default = getattr(cls, settings_field.name)
                overrides[settings_field.name] = type(default)(value)

        return cls(
            credentials=credentials,
            advertiser_ids=_as_list(dlt.config.get(f"{CONFIG_SECTION}.advertiser_ids")),
            **overrides,
        )


def _secret(name: str) -> Optional[str]:
    return dlt.secrets.get(f"{CONFIG_SECTION}.{name}")


def _as_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part) for part in value]
