"""STACIT connection strings and gdalwarp invocation.

GDAL's STACIT driver turns an item search URL into a virtual mosaic of one
asset across every matching item. The connection string is::

    STACIT:"<item-search-URL>":asset=<asset-key>

optionally narrowed with ``collection=`` and ``crs=`` when the search returns
several collections or projections.
"""

import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import rasterio
from dagster import get_dagster_logger

from stac_recipes.config.constants import (
    DEFAULT_GDAL_TIMEOUT_SECONDS,
    DEFAULT_GDALWARP_BIN,
    GDAL_CLOUD_CONFIG,
    STACIT_PREFIX,
)
from stac_recipes.models.models import WarpOptions, format_number

_FORBIDDEN_KEY_CHARS = (",", ":", '"')
_OPTION_KEYS = ("collection", "crs", "asset")


class GdalCommandError(RuntimeError):
    """Raised when a GDAL command line utility fails."""

    def __init__(self, argv: Sequence[str], returncode: int | None, stderr: str) -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{argv[0]} failed (exit code {returncode}): {stderr.strip()}")


@dataclass(frozen=True)
class StacitSource:
    """Parsed STACIT connection string."""

    search_url: str
    collection: str | None = None
    crs: str | None = None
    asset: str | None = None

    def to_connection_string(self) -> str:
        return stacit_connection_string(self.search_url, asset=self.asset, collection=self.collection, crs=self.crs)


def _check_option(name: str, value: str) -> None:
    if not value:
        raise ValueError(f"STACIT {name} must not be empty")
    if any(c in value for c in _FORBIDDEN_KEY_CHARS):
        raise ValueError(f"STACIT {name} must not contain any of {_FORBIDDEN_KEY_CHARS}: {value!r}")


def stacit_connection_string(
    search_url: str,
    asset: str | None = None,
    collection: str | None = None,
    crs: str | None = None,
) -> str:
    """Build a STACIT connection string for an item search URL.

    :param search_url: Item search URL including its query string
    :param asset: Asset key to mosaic
    :param collection: Collection to restrict to
    :param crs: CRS to restrict to, e.g. ``EPSG:32632``
    :returns: Connection string accepted by GDAL utilities
    """
    if not search_url.startswith(("http://", "https://")):
        raise ValueError(f"STACIT needs an http(s) item search URL, got {search_url!r}")
    if '"' in search_url:
        raise ValueError("Item search URL must not contain double quotes")

    options = []
    if collection is not None:
        _check_option("collection", collection)
        options.append(f"collection={collection}")
    if crs is not None:
        crs = crs.replace(":", "_")
        _check_option("crs", crs)
        options.append(f"crs={crs}")
    if asset is not None:
        _check_option("asset", asset)
        options.append(f"asset={asset}")

    connection = f'{STACIT_PREFIX}"{search_url}"'
    if options:
        connection += ":" + ",".join(options)
    return connection


def parse_stacit_connection_string(value: str) -> StacitSource:
    """Split a STACIT connection string into its parts.

    :param value: Connection string
    :returns: StacitSource
    """
    if not value.startswith(f'{STACIT_PREFIX}"'):
        raise ValueError(f"Not a STACIT connection string: {value!r}")
    rest = value[len(STACIT_PREFIX) + 1 :]
    url, sep, tail = rest.partition('"')
    if not sep:
        raise ValueError(f"Unterminated URL in STACIT connection string: {value!r}")

    options: dict[str, str] = {}
    if tail:
        if not tail.startswith(":"):
            raise ValueError(f"Unexpected text after URL in STACIT connection string: {tail!r}")
        for part in tail[1:].split(","):
            key, eq, option_value = part.partition("=")
            if not eq or key not in _OPTION_KEYS:
                raise ValueError(f"Unknown STACIT option {part!r}")
            options[key] = option_value

    crs = options.get("crs")
    return StacitSource(
        search_url=url,
        collection=options.get("collection"),
        crs=crs.replace("_", ":", 1) if crs else None,
        asset=options.get("asset"),
    )


def gdal_config_env(overrides: Mapping[str, str] | None = None) -> dict[str, str]:
    """GDAL configuration options for streaming remote COGs.

    Authentication options (``GDAL_HTTP_HEADERS``, ``AWS_NO_SIGN_REQUEST``, ...)
    are passed through ``overrides``.

    :param overrides: Options replacing or extending the defaults
    :returns: Mapping of config option to value
    """
    env = dict(GDAL_CLOUD_CONFIG)
    if overrides:
        env.update({k: str(v) for k, v in overrides.items()})
    return env


def build_gdalwarp_command(
    source: str,
    destination: str | Path,
    options: WarpOptions | None = None,
    gdalwarp_bin: str = DEFAULT_GDALWARP_BIN,
    open_options: Mapping[str, Any] | None = None,
) -> list[str]:
    """Build the gdalwarp argument vector.

    :param source: Input dataset, typically a STACIT connection string
    :param destination: Output raster path
    :param options: Warp options
    :param gdalwarp_bin: gdalwarp executable
    :param open_options: Driver open options (``-oo``), e.g. ``MAX_ITEMS``
    :returns: Argument list for subprocess
    """
    options = options or WarpOptions()
    argv = [gdalwarp_bin]

    if options.overwrite:
        argv.append("-overwrite")
    if options.dst_crs:
        argv += ["-t_srs", options.dst_crs]
    if options.resolution:
        xres, yres = options.resolution
        argv += ["-tr", format_number(xres), format_number(yres)]
    if options.target_extent:
        argv += ["-te", *(format_number(v) for v in options.target_extent.as_list())]
        argv += ["-te_srs", options.target_extent_crs]
    argv += ["-r", options.resampling]
    if options.dst_nodata is not None:
        argv += ["-dstnodata", format_number(options.dst_nodata)]
    argv += ["-of", options.output_format]
    for creation_option in options.creation_options:
        argv += ["-co", creation_option]
    for key, value in (open_options or {}).items():
        argv += ["-oo", f"{key.upper()}={value}"]

    argv += [source, str(destination)]
    return argv


def run_gdal_command(
    argv: Sequence[str],
    config: Mapping[str, str] | None = None,
    timeout: float = DEFAULT_GDAL_TIMEOUT_SECONDS,
) -> str:
    """Run a GDAL utility with extra configuration options in its environment.

    :param argv: Argument vector
    :param config: GDAL configuration options
    :param timeout: Timeout in seconds
    :returns: Captured stdout
    :raises GdalCommandError: If the binary is missing, times out or exits non-zero
    """
    logger = get_dagster_logger()
    env = {**os.environ, **(config or {})}
    logger.debug(f"Running {' '.join(argv)}")

    try:
        result = subprocess.run(list(argv), env=env, capture_output=True, text=True, timeout=timeout, check=True)
    except FileNotFoundError as e:
        raise GdalCommandError(argv, None, f"{argv[0]} not found, is GDAL installed?") from e
    except subprocess.TimeoutExpired as e:
        raise GdalCommandError(argv, None, f"timed out after {timeout}s") from e
    except subprocess.CalledProcessError as e:
        raise GdalCommandError(argv, e.returncode, e.stderr or "") from e

    if result.stderr:
        logger.warning(result.stderr.strip())
    return result.stdout


def warp_stacit_asset(
    search_url: str,
    asset: str,
    destination: str | Path,
    options: WarpOptions | None = None,
    collection: str | None = None,
    crs: str | None = None,
    max_items: int | None = None,
    gdalwarp_bin: str = DEFAULT_GDALWARP_BIN,
    config_overrides: Mapping[str, str] | None = None,
) -> Path:
    """Mosaic one asset of every item matched by a search into a single raster.

    :param search_url: Item search GET URL
    :param asset: Asset key
    :param destination: Output raster path
    :param options: Warp options
    :param collection: Optional collection restriction
    :param crs: Optional CRS restriction
    :param max_items: Optional cap on items read by the driver
    :param gdalwarp_bin: gdalwarp executable
    :param config_overrides: Extra GDAL configuration options
    :returns: Output path
    """
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)

    source = stacit_connection_string(search_url, asset=asset, collection=collection, crs=crs)
    open_options = {"max_items": max_items} if max_items else None
    argv = build_gdalwarp_command(source, destination, options, gdalwarp_bin=gdalwarp_bin, open_options=open_options)
    run_gdal_command(argv, config=gdal_config_env(config_overrides))

    get_dagster_logger().info(f"Wrote {asset} mosaic to {destination}")
    return destination


def list_stacit_subdatasets(search_url: str, config_overrides: Mapping[str, str] | None = None) -> list[StacitSource]:
    """List the collection/CRS/asset combinations GDAL exposes for a search.

    :param search_url: Item search GET URL
    :param config_overrides: Extra GDAL configuration options
    :returns: Parsed subdatasets, empty when the search yields a single dataset
    """
    with rasterio.Env(**gdal_config_env(config_overrides)):
        with rasterio.open(stacit_connection_string(search_url)) as src:
            return [parse_stacit_connection_string(name) for name in src.subdatasets]
