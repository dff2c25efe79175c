"""Settings resource for managing configuration from environment variables."""

import os
from pathlib import Path
from types import UnionType
from typing import Any, Union, get_args, get_origin

from dagster import ConfigurableResource, EnvVar

from stac_recipes.config.constants import (
    DEFAULT_CLOUD_COVER_THRESHOLD,
    DEFAULT_GDALWARP_BIN,
    DEFAULT_MAX_ITEMS,
    DEFAULT_STAC_API_URL,
    DEFAULT_TMP_DIR,
    PLANETARY_COMPUTER_HOST,
)

_DEFAULTS: dict[str, Any] = {
    "stac_api_url": DEFAULT_STAC_API_URL,
    "tmp_dir": DEFAULT_TMP_DIR,
    "cloud_cover_threshold": DEFAULT_CLOUD_COVER_THRESHOLD,
    "gdalwarp_bin": DEFAULT_GDALWARP_BIN,
    "max_items": DEFAULT_MAX_ITEMS,
}


class SettingsResource(ConfigurableResource[Any]):
    """Settings resource using EnvVar for runtime resolution in Dagster."""

    stac_api_url: str = EnvVar("STAC_API_URL")
    tmp_dir: str = EnvVar("TMP_DIR")
    cloud_cover_threshold: int = EnvVar("CLOUD_COVER_THRESHOLD")  # type: ignore[assignment]
    sign_requests: bool = False
    gdalwarp_bin: str = EnvVar("GDALWARP_BIN")
    max_items: int = EnvVar("MAX_ITEMS")  # type: ignore[assignment]
    gdal_http_headers: str | None = None

    @staticmethod
    def create(swallow_errors: bool = False) -> "SettingsResource":
        """Create SettingsResource from environment variables.

        :param swallow_errors: If True, ignore validation errors
        :returns: SettingsResource instance
        """
        env_values: dict[str, Any] = {}
        for attr_name, field in SettingsResource.model_fields.items():
            attr_type = field.annotation
            raw = os.environ.get(attr_name.upper())
            if raw is None:
                env_values[attr_name] = _DEFAULTS.get(attr_name)
            elif attr_type is bool:
                env_values[attr_name] = raw.strip().lower() in ("true", "1", "yes", "y", "on")
            elif attr_type is int:
                env_values[attr_name] = int(raw) if raw else _DEFAULTS.get(attr_name)
            else:
                env_values[attr_name] = raw

        if env_values.get("sign_requests") is None:
            env_values["sign_requests"] = False

        settings = SettingsResource(**env_values)
        try:
            settings._post_init()
        except (TypeError, ValueError):
            if not swallow_errors:
                raise
        return settings

    def create_tmp_dir(self) -> None:
        """Create temporary directory if missing."""
        tmp_dir_value = self.tmp_dir.get_value() if isinstance(self.tmp_dir, EnvVar) else self.tmp_dir
        if tmp_dir_value:
            Path(tmp_dir_value).mkdir(parents=True, exist_ok=True)

    def get_tmp_dir(self) -> Path:
        """Get temporary directory, resolving EnvVar if needed.

        :returns: Temporary directory path
        """
        value = self.tmp_dir.get_value() if isinstance(self.tmp_dir, EnvVar) else self.tmp_dir
        return Path(value or DEFAULT_TMP_DIR)

    def get_cloud_cover_threshold(self) -> int:
        """Get cloud cover threshold, resolving EnvVar if needed.

        :returns: Cloud cover threshold as integer
        """
        threshold = self.cloud_cover_threshold
        if isinstance(threshold, EnvVar):
            value = threshold.get_value()
            return int(value) if value else DEFAULT_CLOUD_COVER_THRESHOLD
        if threshold is None:
            return DEFAULT_CLOUD_COVER_THRESHOLD
        return int(threshold)

    def get_max_items(self) -> int:
        """Get maximum number of search results, resolving EnvVar if needed.

        :returns: Maximum item count
        """
        max_items = self.max_items
        if isinstance(max_items, EnvVar):
            value = max_items.get_value()
            return int(value) if value else DEFAULT_MAX_ITEMS
        if max_items is None:
            return DEFAULT_MAX_ITEMS
        return int(max_items)

    def gdal_env_overrides(self) -> dict[str, str]:
        """GDAL configuration options derived from settings.

        :returns: Mapping of GDAL config option to value
        """
        overrides: dict[str, str] = {}
        if self.gdal_http_headers:
            overrides["GDAL_HTTP_HEADERS"] = self.gdal_http_headers
        return overrides

    def hrefs_need_signing(self) -> bool:
        """Whether asset hrefs of the API are unreadable without a signing step.

        :returns: True for signed APIs such as Planetary Computer
        """
        return bool(self.sign_requests) or PLANETARY_COMPUTER_HOST in str(self.stac_api_url)

    def validate_settings(self) -> None:
        """Validate all required settings are present."""
        missing_vars = []
        for attr_name, field in self.__class__.model_fields.items():
            attr_type = field.annotation
            attr_value = getattr(self, attr_name, None)
            if isinstance(attr_value, EnvVar):
                is_optional = get_origin(attr_type) in (Union, UnionType) and type(None) in get_args(attr_type)
                if not is_optional and attr_value.get_value() is None:
                    missing_vars.append(attr_value.env_var_name)
        if missing_vars:
            raise ValueError(f"Missing mandatory environment variables: {', '.join(missing_vars)}")
        if not str(self.stac_api_url).startswith(("http://", "https://")):
            raise ValueError(f"STAC_API_URL must be an http(s) URL, got {self.stac_api_url!r}")

    def _post_init(self) -> None:
        self.create_tmp_dir()
        self.validate_settings()
