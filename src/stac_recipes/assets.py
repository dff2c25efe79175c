"""Dagster assets walking through a CQL2 item search and a STACIT mosaic."""

from pathlib import Path
from typing import Any

from dagster import AssetExecutionContext, Config, Output, asset

from stac_recipes.config.constants import DEFAULT_BBOX, DEFAULT_COLLECTION, DEFAULT_DATETIME
from stac_recipes.connectors.settings import SettingsResource
from stac_recipes.connectors.stac_client import STACResource
from stac_recipes.filters.cql2 import Expression, build_scene_filter
from stac_recipes.geospatial.raster_ops import summarize_raster
from stac_recipes.geospatial.stac_ops import (
    build_item_search,
    choose_search_method,
    search_get_url,
    search_items,
    search_post_body,
    select_asset_hrefs,
    summarize_items,
)
from stac_recipes.geospatial.stacit import warp_stacit_asset
from stac_recipes.models.models import (
    BBox,
    RasterSummary,
    SearchRequest,
    SearchResult,
    TemporalInterval,
    WarpOptions,
)
from stac_recipes.storage import item_collection_path, load_item_collection, mosaic_path, save_item_collection


class SearchConfig(Config):
    """Run configuration of the item search."""

    collection: str = DEFAULT_COLLECTION
    bbox: list[float] = DEFAULT_BBOX
    datetime: str = DEFAULT_DATETIME
    cloud_cover_lt: int | None = None
    platform: str | None = None
    method: str | None = None
    max_items: int | None = None


class MosaicConfig(Config):
    """Run configuration of the STACIT mosaic."""

    asset: str = "visual"
    dst_crs: str | None = None
    resolution: float | None = None
    resampling: str = "near"
    clip_to_bbox: bool = True
    crs: str | None = None


@asset
def cql2_item_search(
    context: AssetExecutionContext,
    stac: STACResource,
    settings: SettingsResource,
    config: SearchConfig,
) -> Output[SearchResult]:
    """Search items with a CQL2 filter on collection, space, time and cloud cover.

    The ItemCollection is written to the tmp dir; the result keeps the GET URL
    and POST body of the same search for the mosaic step.

    :param context: Dagster context
    :param stac: STAC resource
    :param settings: Settings resource
    :param config: Search configuration
    :returns: Output with the search result
    """
    bbox = BBox.from_sequence(config.bbox)
    temporal = TemporalInterval.from_string(config.datetime)
    cloud_cover_lt = config.cloud_cover_lt if config.cloud_cover_lt is not None else settings.get_cloud_cover_threshold()
    extra_terms = {"platform": config.platform} if config.platform else {}
    expression = build_scene_filter(config.collection, bbox, temporal, cloud_cover_lt=cloud_cover_lt, **extra_terms)
    context.log.info(f"CQL2 filter: {expression.to_text()}")

    stac_client = stac.create_client()
    method = _validate_method(config.method) or choose_search_method(stac_client)
    request = SearchRequest(
        collections=[config.collection],
        method=method,  # type: ignore[arg-type]
        max_items=config.max_items or settings.get_max_items(),
    )

    items = search_items(context, stac_client, request, expression=expression)
    path = save_item_collection(context, items, item_collection_path(settings, config.collection))

    get_url, post_body = _describe_search(stac_client.get_search_link().href, request, expression)
    result = SearchResult(
        collections=request.collections,
        bbox=bbox.as_list(),
        method=method,
        get_url=get_url,
        post_body=post_body,
        filter_text=expression.to_text(),
        items=summarize_items(items),
        item_collection_path=str(path),
    )
    if not result.items:
        context.log.warning(f"No items matched {expression.to_text()}")

    return Output(
        result,
        metadata={
            "success": bool(result.items),
            "item_count": len(result.items),
            "method": method,
            "filter_text": result.filter_text,
            "get_url": get_url,
            "item_collection_path": str(path),
        },
    )


@asset
def stacit_mosaic(
    context: AssetExecutionContext,
    settings: SettingsResource,
    config: MosaicConfig,
    cql2_item_search: SearchResult,
) -> Output[RasterSummary | None]:
    """Stream and merge one asset of the searched items with gdalwarp.

    :param context: Dagster context
    :param settings: Settings resource
    :param config: Mosaic configuration
    :param cql2_item_search: Upstream search result
    :returns: Output with the summary of the written raster
    """
    error_output = _check_mosaic_inputs(context, cql2_item_search, config.asset)
    if error_output is None:
        error_output = _check_gdal_access(context, settings)
    if error_output is not None:
        return error_output

    source_hrefs = _source_hrefs(context, cql2_item_search, config.asset)

    options = _warp_options(config, cql2_item_search)
    destination = mosaic_path(settings, cql2_item_search.collections[0], config.asset)
    context.log.info(f"Mosaicking {config.asset} of {len(cql2_item_search.items)} item(s) into {destination}")

    warp_stacit_asset(
        search_url=cql2_item_search.get_url,
        asset=config.asset,
        destination=destination,
        options=options,
        crs=config.crs,
        max_items=len(cql2_item_search.items),
        gdalwarp_bin=settings.gdalwarp_bin,
        config_overrides=settings.gdal_env_overrides(),
    )
    summary = summarize_raster(str(destination))

    return Output(
        summary,
        metadata={
            "success": True,
            "error": None,
            "path": summary.path,
            "crs": summary.crs,
            "width": summary.width,
            "height": summary.height,
            "band_count": summary.count,
            "source_item_count": len(source_hrefs),
        },
    )


def _validate_method(method: str | None) -> str | None:
    """Normalize a configured HTTP method.

    :param method: Configured method or None
    :returns: "GET", "POST" or None
    """
    if method is None:
        return None
    normalized = method.upper()
    if normalized not in ("GET", "POST"):
        raise ValueError(f"Unsupported search method: {method}")
    return normalized


def _describe_search(
    search_url: str,
    request: SearchRequest,
    expression: Expression,
) -> tuple[str, dict[str, Any]]:
    """GET URL (CQL2 text) and POST body (CQL2 JSON) of the same search.

    :param search_url: Item search endpoint
    :param request: Search parameters
    :param expression: CQL2 expression
    :returns: Tuple of (get_url, post_body)
    """
    get_search = build_item_search(search_url, request.model_copy(update={"method": "GET"}), expression=expression)
    post_search = build_item_search(search_url, request.model_copy(update={"method": "POST"}), expression=expression)
    return search_get_url(get_search), search_post_body(post_search)


def _create_error_output(error: str) -> Output[RasterSummary | None]:
    """Create error Output for a mosaic that could not be built.

    :param error: Error message
    :returns: Output with error metadata
    """
    return Output(None, metadata={"success": False, "error": error})


def _check_mosaic_inputs(
    context: AssetExecutionContext,
    search_result: SearchResult,
    asset_key: str,
) -> Output[RasterSummary | None] | None:
    """Check the search result can feed a STACIT mosaic.

    :param context: Dagster context
    :param search_result: Upstream search result
    :param asset_key: Requested asset key
    :returns: None if usable, Output with error otherwise
    """
    if not search_result.items:
        context.log.info("Item search matched nothing. Skipping mosaic.")
        return _create_error_output("Item search matched no items")

    available = sorted({key for item in search_result.items for key in item.asset_keys})
    if asset_key not in available:
        context.log.error(f"Asset {asset_key} not found. Available: {available}")
        return _create_error_output(f"Asset {asset_key} not found. Available assets: {available}")
    return None


def _check_gdal_access(
    context: AssetExecutionContext,
    settings: SettingsResource,
) -> Output[RasterSummary | None] | None:
    """Check GDAL can read the asset hrefs of the API.

    STACIT fetches the hrefs itself and cannot sign them; signed APIs answer
    unsigned requests with 403 unless credentials come through GDAL_HTTP_HEADERS.

    :param context: Dagster context
    :param settings: Settings resource
    :returns: None if readable, Output with error otherwise
    """
    if settings.hrefs_need_signing() and not settings.gdal_http_headers:
        message = (
            f"Assets of {settings.stac_api_url} need signed hrefs, which GDAL cannot request. "
            "Set GDAL_HTTP_HEADERS or use a STAC API with anonymous asset access."
        )
        context.log.error(message)
        return _create_error_output(message)
    return None


def _source_hrefs(
    context: AssetExecutionContext,
    search_result: SearchResult,
    asset_key: str,
) -> dict[str, str]:
    """Hrefs of the requested asset in the saved ItemCollection.

    :param context: Dagster context
    :param search_result: Upstream search result
    :param asset_key: Requested asset key
    :returns: Hrefs by item id, empty when the ItemCollection was not saved
    """
    if not search_result.item_collection_path:
        return {}
    items = load_item_collection(Path(search_result.item_collection_path))
    hrefs, missing = select_asset_hrefs(items, [asset_key])
    if missing:
        context.log.warning(f"{len(missing)} item(s) lack asset {asset_key} and are left out: {missing}")
    return hrefs


def _warp_options(config: MosaicConfig, search_result: SearchResult) -> WarpOptions:
    """Translate mosaic configuration into gdalwarp options.

    :param config: Mosaic configuration
    :param search_result: Upstream search result
    :returns: WarpOptions
    """
    target_extent = None
    if config.clip_to_bbox and search_result.bbox:
        target_extent = BBox.from_sequence(search_result.bbox)
    resolution = (config.resolution, config.resolution) if config.resolution else None
    return WarpOptions(
        dst_crs=config.dst_crs,
        resolution=resolution,
        target_extent=target_extent,
        resampling=config.resampling,  # type: ignore[arg-type]
    )
