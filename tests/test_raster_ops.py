from pathlib import Path

import numpy as np
import pytest
import rasterio
from affine import Affine
from numpy.typing import NDArray
from shapely.geometry import Polygon, mapping

from stac_recipes.geospatial import raster_ops


def _write_geotiff(
    path: Path,
    data: NDArray[np.floating],
    crs: str = "EPSG:4326",
    transform: Affine | None = None,
    nodata: float | None = None,
) -> None:
    """
    Helper function to write a GeoTIFF file for testing.

    Args:
      path: Path to write the GeoTIFF
      data: NumPy array with raster data, 2D or (bands, rows, cols)
      crs: Coordinate reference system
      transform: Affine transform (defaults to simple scale)
      nodata: Optional nodata value
    """
    if data.ndim == 2:
        data = data[np.newaxis, ...]
    count, height, width = data.shape
    transform = transform or Affine.translation(0, 0) * Affine.scale(1, -1)
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=height,
        width=width,
        count=count,
        dtype=data.dtype,
        crs=crs,
        transform=transform,
        nodata=nodata,
    ) as dst:
        dst.write(data)


def test_summarize_raster_reports_metadata_and_statistics(tmp_path: Path) -> None:
    """
    Test that the summary carries driver, CRS, size and per-band statistics.
    """
    data = np.array([[[1, 2], [3, 4]], [[10, 10], [10, 10]]], dtype="float32")
    tif_path = tmp_path / "mosaic.tif"
    _write_geotiff(tif_path, data)

    summary = raster_ops.summarize_raster(str(tif_path))
    assert summary.driver == "GTiff"
    assert summary.crs == "EPSG:4326"
    assert (summary.width, summary.height, summary.count) == (2, 2, 2)
    assert summary.bounds == [0.0, -2.0, 2.0, 0.0]
    assert summary.bands[0].mean == pytest.approx(2.5)
    assert summary.bands[0].valid_pixel_count == 4
    assert summary.bands[1].std == pytest.approx(0.0)


def test_summarize_raster_excludes_nodata(tmp_path: Path) -> None:
    """
    Test that nodata pixels do not count towards statistics.
    """
    data = np.array([[0, 0], [4, 8]], dtype="float32")
    tif_path = tmp_path / "nodata.tif"
    _write_geotiff(tif_path, data, nodata=0)

    summary = raster_ops.summarize_raster(str(tif_path))
    assert summary.nodata == 0
    assert summary.bands[0].valid_pixel_count == 2
    assert summary.bands[0].mean == pytest.approx(6.0)


def test_summarize_raster_masks_to_aoi(tmp_path: Path) -> None:
    """
    Test that statistics are restricted to the AOI.

    The geometry covers only the top-left pixel.
    """
    data = np.array([[1, 2], [3, 4]], dtype="float32")
    tif_path = tmp_path / "aoi.tif"
    _write_geotiff(tif_path, data)

    # One-degree pixels starting at (0,0); y decreasing to match Affine.scale(1, -1)
    aoi = mapping(Polygon([(0, 0), (1, 0), (1, -1), (0, -1), (0, 0)]))

    summary = raster_ops.summarize_raster(str(tif_path), aoi=aoi, geom_crs="EPSG:4326")
    assert summary.bands[0].valid_pixel_count == 1
    assert summary.bands[0].mean == pytest.approx(1.0)


def test_summarize_raster_accepts_shapely_aoi(tmp_path: Path) -> None:
    data = np.array([[1, 2], [3, 4]], dtype="float32")
    tif_path = tmp_path / "shapely.tif"
    _write_geotiff(tif_path, data)

    aoi = Polygon([(0, 0), (2, 0), (2, -2), (0, -2), (0, 0)])
    summary = raster_ops.summarize_raster(str(tif_path), aoi=aoi)
    assert summary.bands[0].valid_pixel_count == 4


def test_summarize_raster_aoi_outside_raster(tmp_path: Path) -> None:
    """
    Test that an AOI missing the raster yields empty statistics instead of an error.
    """
    data = np.array([[1, 2], [3, 4]], dtype="float32")
    tif_path = tmp_path / "elsewhere.tif"
    _write_geotiff(tif_path, data)

    aoi = Polygon([(50, 50), (51, 50), (51, 51), (50, 51), (50, 50)])
    summary = raster_ops.summarize_raster(str(tif_path), aoi=aoi)
    assert (summary.width, summary.height) == (2, 2)
    assert summary.bands[0].valid_pixel_count == 0
    assert summary.bands[0].mean == 0.0
