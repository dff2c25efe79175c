"""Storage operations for search results and mosaics on the local filesystem."""

import json
from pathlib import Path
from typing import Any

from dagster import AssetExecutionContext, FilesystemIOManager, OpExecutionContext
from pystac import ItemCollection

from stac_recipes.config.constants import ITEM_SEARCH_DIR, MOSAIC_DIR
from stac_recipes.connectors.settings import SettingsResource


def create_io_manager(settings: SettingsResource) -> FilesystemIOManager:
    """Create filesystem IO manager storing asset outputs under the tmp dir.

    :param settings: Settings resource
    :returns: Configured IO manager
    """
    return FilesystemIOManager(base_dir=str(settings.get_tmp_dir() / "dagster-storage"))


def item_collection_path(settings: SettingsResource, name: str) -> Path:
    """Path of a saved ItemCollection.

    :param settings: Settings resource
    :param name: File stem, usually the collection ID
    :returns: GeoJSON path
    """
    return settings.get_tmp_dir() / ITEM_SEARCH_DIR / f"{name}.geojson"


def mosaic_path(settings: SettingsResource, name: str, asset_key: str, extension: str = "tif") -> Path:
    """Path of a gdalwarp output.

    :param settings: Settings resource
    :param name: File stem prefix, usually the collection ID
    :param asset_key: Asset key the mosaic was built from
    :param extension: File extension
    :returns: Raster path
    """
    return settings.get_tmp_dir() / MOSAIC_DIR / f"{name}-{asset_key}.{extension}"


def save_item_collection(
    context: OpExecutionContext | AssetExecutionContext,
    items: ItemCollection,
    path: Path,
) -> Path:
    """Write an ItemCollection as a GeoJSON FeatureCollection.

    :param context: Dagster context
    :param items: ItemCollection
    :param path: Destination path
    :returns: Written path
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(items.to_dict(), indent=2), encoding="utf-8")
    context.log.info(f"Saved {len(items)} item(s) to {path}")
    return path


def load_item_collection(path: Path) -> ItemCollection:
    """Read an ItemCollection written by :func:`save_item_collection`.

    :param path: GeoJSON path
    :returns: ItemCollection
    """
    try:
        data: dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ValueError(f"Item collection not found at {path}. Asset may not be materialized yet.") from e
    return ItemCollection.from_dict(data)
