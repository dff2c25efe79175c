"""Raster inspection of mosaics produced by gdalwarp."""

from typing import Any

import numpy as np
import rasterio
import rasterio.warp
from numpy.typing import NDArray
from rasterio.errors import WindowError
from rasterio.features import geometry_mask
from rasterio.windows import Window, from_bounds
from shapely.geometry import mapping, shape

from stac_recipes.models.models import BandStatistics, RasterSummary


def _get_geom_dict(aoi: Any) -> dict[str, Any] | None:
    """Convert geometry to dictionary format.

    :param aoi: Geometry dict or shapely object
    :returns: Geometry dictionary or None
    """
    if aoi is None:
        return None
    if isinstance(aoi, dict):
        return aoi
    return dict(mapping(aoi))


def _aoi_window(src: Any, geom_dict: dict[str, Any], geom_crs: str) -> tuple[Window | None, Any]:
    """Window covering the AOI, clipped to the raster.

    :param src: Raster source
    :param geom_dict: Geometry dictionary
    :param geom_crs: Geometry CRS
    :returns: Tuple of (window or None when the AOI misses the raster, AOI shape in raster CRS)
    """
    aoi_transformed = rasterio.warp.transform_geom(src_crs=geom_crs, dst_crs=src.crs, geom=geom_dict)
    aoi_shape = shape(aoi_transformed)
    window = from_bounds(*aoi_shape.bounds, transform=src.transform)
    window = window.round_offsets().round_lengths()
    try:
        window = window.intersection(Window(0, 0, src.width, src.height))
    except WindowError:
        return None, aoi_shape
    return window, aoi_shape


def _read_and_mask_band(
    src: Any, band: int, geom_dict: dict[str, Any] | None, geom_crs: str
) -> NDArray[np.floating]:
    """Read a band as float32 with nodata and pixels outside the AOI set to NaN.

    :param src: Raster source
    :param band: 1-based band index
    :param geom_dict: Geometry dictionary or None
    :param geom_crs: Geometry CRS
    :returns: Band array
    """
    if geom_dict:
        window, aoi_shape = _aoi_window(src, geom_dict, geom_crs)
        if window is None:
            return np.full((0, 0), np.nan, dtype="float32")
        data = src.read(band, window=window).astype("float32")
        window_transform = src.window_transform(window)
        mask = geometry_mask([aoi_shape], transform=window_transform, invert=True, out_shape=data.shape)
        data[~mask] = np.nan
    else:
        data = src.read(band).astype("float32")

    if src.nodata is not None and not np.isnan(src.nodata):
        data[data == src.nodata] = np.nan
    return data


def summarize_raster(path: str, aoi: Any = None, geom_crs: str = "EPSG:4326") -> RasterSummary:
    """Describe a raster and compute per-band statistics.

    :param path: Raster path or URL
    :param aoi: Optional AOI geometry restricting the statistics
    :param geom_crs: AOI CRS
    :returns: RasterSummary
    """
    geom_dict = _get_geom_dict(aoi)

    with rasterio.open(path) as src:
        bands = [
            BandStatistics.from_array(band, _read_and_mask_band(src, band, geom_dict, geom_crs))
            for band in range(1, src.count + 1)
        ]
        return RasterSummary(
            path=str(path),
            driver=src.driver,
            crs=src.crs.to_string() if src.crs else None,
            width=src.width,
            height=src.height,
            count=src.count,
            bounds=list(src.bounds),
            nodata=src.nodata,
            bands=bands,
        )
