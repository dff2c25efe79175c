"""Data models for STAC search requests, warp options and raster summaries."""

from collections.abc import Sequence
from datetime import date, datetime, time, timezone
from typing import Any, Literal

import numpy as np
from pydantic import BaseModel, Field as PydanticField, model_validator
from pystac.utils import datetime_to_str, str_to_datetime
from shapely.geometry import MultiPolygon, box, mapping

from stac_recipes.config.constants import DEFAULT_PAGE_LIMIT

OPEN_END = ".."
END_OF_DAY = time(23, 59, 59)


def format_number(value: float) -> str:
    """Render a coordinate or pixel value without losing digits.

    Integral values drop the trailing ``.0``.
    """
    value = float(value)
    return str(int(value)) if value.is_integer() else repr(value)


class BBox(BaseModel):
    """WGS84 bounding box.

    ``xmin > xmax`` is accepted for boxes crossing the antimeridian.

    :param xmin: Western longitude
    :param ymin: Southern latitude
    :param xmax: Eastern longitude
    :param ymax: Northern latitude
    """

    xmin: float = PydanticField(..., ge=-180, le=180, description="Western longitude")
    ymin: float = PydanticField(..., ge=-90, le=90, description="Southern latitude")
    xmax: float = PydanticField(..., ge=-180, le=180, description="Eastern longitude")
    ymax: float = PydanticField(..., ge=-90, le=90, description="Northern latitude")

    @model_validator(mode="after")
    def _check_latitudes(self) -> "BBox":
        if self.ymin > self.ymax:
            raise ValueError(f"ymin ({self.ymin}) must not be greater than ymax ({self.ymax})")
        return self

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> "BBox":
        """Create BBox from ``[xmin, ymin, xmax, ymax]``.

        :param values: Four coordinates
        :returns: BBox instance
        """
        if len(values) != 4:
            raise ValueError(f"Bounding box needs exactly four values, got {len(values)}")
        xmin, ymin, xmax, ymax = (float(v) for v in values)
        return cls(xmin=xmin, ymin=ymin, xmax=xmax, ymax=ymax)

    def as_list(self) -> list[float]:
        return [self.xmin, self.ymin, self.xmax, self.ymax]

    def to_query_value(self) -> str:
        """Render as the comma-separated ``bbox`` GET parameter."""
        return ",".join(format_number(v) for v in self.as_list())

    def to_geometry(self) -> dict[str, Any]:
        """Convert to GeoJSON polygon.

        A box crossing the antimeridian becomes a MultiPolygon split at 180 degrees.

        :returns: GeoJSON geometry dictionary
        """
        if self.xmin > self.xmax:
            east = box(self.xmin, self.ymin, 180, self.ymax)
            west = box(-180, self.ymin, self.xmax, self.ymax)
            return dict(mapping(MultiPolygon([east, west])))
        return dict(mapping(box(self.xmin, self.ymin, self.xmax, self.ymax)))


def _parse_bound(value: str, end_of_day: bool) -> datetime | None:
    value = value.strip()
    if value in ("", OPEN_END):
        return None
    if len(value) == 10:
        day = date.fromisoformat(value)
        return datetime.combine(day, END_OF_DAY if end_of_day else time.min, tzinfo=timezone.utc)
    parsed = str_to_datetime(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class TemporalInterval(BaseModel):
    """Pair of RFC 3339 timestamps, either end may be open.

    :param start: Interval start or None when open
    :param end: Interval end or None when open
    """

    start: datetime | None = PydanticField(default=None, description="Start of the interval")
    end: datetime | None = PydanticField(default=None, description="End of the interval")

    @model_validator(mode="after")
    def _check_bounds(self) -> "TemporalInterval":
        if self.start is None and self.end is None:
            raise ValueError("Temporal interval needs at least one closed end")
        if self.start is not None and self.start.tzinfo is None:
            self.start = self.start.replace(tzinfo=timezone.utc)
        if self.end is not None and self.end.tzinfo is None:
            self.end = self.end.replace(tzinfo=timezone.utc)
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError(f"Interval start {self.start} is after end {self.end}")
        return self

    @classmethod
    def from_string(cls, value: str) -> "TemporalInterval":
        """Parse ``start/end``, a single instant or a single date.

        Plain dates cover the whole day: ``2023-06-01/2023-06-02`` ends at
        23:59:59 UTC on June 2nd.

        :param value: Interval string
        :returns: TemporalInterval instance
        """
        try:
            if "/" in value:
                start_str, end_str = value.split("/", 1)
                return cls(start=_parse_bound(start_str, False), end=_parse_bound(end_str, True))
            return cls(start=_parse_bound(value, False), end=_parse_bound(value, True))
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid temporal interval {value!r}: {e}") from e

    def to_rfc3339(self) -> str:
        """Render as ``start/end`` with ``..`` for open ends."""
        start = datetime_to_str(self.start) if self.start else OPEN_END
        end = datetime_to_str(self.end) if self.end else OPEN_END
        return f"{start}/{end}"


class SearchRequest(BaseModel):
    """Item search parameters handed to the STAC client.

    :param collections: Collection IDs
    :param bbox: Optional bounding box
    :param interval: Optional temporal interval
    :param filter: Optional CQL2 filter (JSON dict or text)
    :param filter_lang: Filter language, inferred when None
    :param method: HTTP method, auto-detected when None
    :param limit: Page size requested from the API
    :param max_items: Maximum number of items to return
    """

    collections: list[str] = PydanticField(..., min_length=1, description="Collection IDs")
    bbox: BBox | None = PydanticField(default=None, description="Bounding box")
    interval: TemporalInterval | None = PydanticField(default=None, description="Temporal interval")
    filter: dict[str, Any] | str | None = PydanticField(default=None, description="CQL2 filter")
    filter_lang: Literal["cql2-json", "cql2-text"] | None = PydanticField(default=None)
    method: Literal["GET", "POST"] | None = PydanticField(default=None)
    limit: int = PydanticField(default=DEFAULT_PAGE_LIMIT, ge=1, description="Page size")
    max_items: int | None = PydanticField(default=None, ge=1, description="Maximum items returned")


class WarpOptions(BaseModel):
    """Options forwarded to gdalwarp.

    :param dst_crs: Target CRS (``-t_srs``)
    :param resolution: Target pixel size (``-tr``)
    :param target_extent: Output extent (``-te``)
    :param target_extent_crs: CRS of the output extent (``-te_srs``)
    :param resampling: Resampling method (``-r``)
    :param output_format: GDAL output driver (``-of``)
    :param creation_options: Driver creation options (``-co``)
    :param dst_nodata: Output nodata value (``-dstnodata``)
    :param overwrite: Overwrite an existing output (``-overwrite``)
    """

    dst_crs: str | None = None
    resolution: tuple[float, float] | None = None
    target_extent: BBox | None = None
    target_extent_crs: str = "EPSG:4326"
    resampling: Literal[
        "near", "bilinear", "cubic", "cubicspline", "lanczos", "average", "mode", "max", "min", "med", "q1", "q3"
    ] = "near"
    output_format: str = "GTiff"
    creation_options: list[str] = PydanticField(default_factory=lambda: ["COMPRESS=DEFLATE", "TILED=YES"])
    dst_nodata: float | None = None
    overwrite: bool = True


class ItemSummary(BaseModel):
    """Condensed view of a STAC Item."""

    id: str
    collection: str | None = None
    datetime: str | None = None
    cloud_cover: float | None = None
    asset_keys: list[str] = PydanticField(default_factory=list)


class BandStatistics(BaseModel):
    """Statistics of one raster band.

    :param band: 1-based band index
    :param mean: Mean of valid pixels
    :param std: Standard deviation of valid pixels
    :param min: Minimum valid value
    :param max: Maximum valid value
    :param valid_pixel_count: Number of valid pixels
    """

    band: int = PydanticField(..., ge=1)
    mean: float = PydanticField(..., description="Mean of valid pixels")
    std: float = PydanticField(..., description="Standard deviation of valid pixels")
    min: float = PydanticField(..., description="Minimum valid value")
    max: float = PydanticField(..., description="Maximum valid value")
    valid_pixel_count: int = PydanticField(..., description="Number of valid pixels")

    @classmethod
    def from_array(cls, band: int, array: Any) -> "BandStatistics":
        """Create BandStatistics from numpy array, NaN marking invalid pixels.

        :param band: Band index
        :param array: Band values
        :returns: BandStatistics instance
        """
        array = array.astype("float32")
        valid_pixels = array[~np.isnan(array)]

        return cls(
            band=band,
            mean=float(np.mean(valid_pixels)) if valid_pixels.size > 0 else 0.0,
            std=float(np.std(valid_pixels)) if valid_pixels.size > 0 else 0.0,
            min=float(np.min(valid_pixels)) if valid_pixels.size > 0 else 0.0,
            max=float(np.max(valid_pixels)) if valid_pixels.size > 0 else 0.0,
            valid_pixel_count=int(valid_pixels.size),
        )


class RasterSummary(BaseModel):
    """Description of a raster written by gdalwarp."""

    path: str
    driver: str
    crs: str | None = None
    width: int
    height: int
    count: int
    bounds: list[float]
    nodata: float | None = None
    bands: list[BandStatistics] = PydanticField(default_factory=list)


class SearchResult(BaseModel):
    """Outcome of an item search, kept for downstream steps.

    :param collections: Searched collections
    :param bbox: Searched bounding box
    :param method: HTTP method used
    :param get_url: Fully encoded GET URL of the search
    :param post_body: JSON body of the equivalent POST request
    :param filter_text: CQL2 text of the filter
    :param items: Item summaries
    :param item_collection_path: Where the ItemCollection was written
    """

    collections: list[str]
    bbox: list[float] | None = None
    method: str
    get_url: str
    post_body: dict[str, Any]
    filter_text: str | None = None
    items: list[ItemSummary] = PydanticField(default_factory=list)
    item_collection_path: str | None = None
