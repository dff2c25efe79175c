"""Constants for STAC API endpoints, search defaults and GDAL configuration."""

DEFAULT_TMP_DIR = "/tmp"
DEFAULT_STAC_API_URL = "https://planetarycomputer.microsoft.com/api/stac/v1"
# Asset hrefs served by this host need a SAS token GDAL cannot fetch itself.
PLANETARY_COMPUTER_HOST = "planetarycomputer.microsoft.com"
DEFAULT_COLLECTION = "sentinel-2-l2a"
DEFAULT_CLOUD_COVER_THRESHOLD = 10
DEFAULT_MAX_ITEMS = 50
DEFAULT_PAGE_LIMIT = 100
DEFAULT_GDALWARP_BIN = "gdalwarp"
DEFAULT_GDAL_TIMEOUT_SECONDS = 3600

# Small area around Florence, used by the tutorials.
DEFAULT_BBOX: list[float] = [11.1, 43.7, 11.4, 43.9]
DEFAULT_DATETIME = "2023-06-01/2023-08-31"

ITEM_SEARCH_DIR = "item-search"
MOSAIC_DIR = "mosaics"

CQL2_TEXT = "cql2-text"
CQL2_JSON = "cql2-json"

STACIT_PREFIX = "STACIT:"

GDAL_CLOUD_CONFIG: dict[str, str] = {
    "GDAL_DISABLE_READDIR_ON_OPEN": "EMPTY_DIR",
    "CPL_VSIL_CURL_ALLOWED_EXTENSIONS": ".tif,.tiff,.TIF,.TIFF,.jp2",
    "GDAL_HTTP_MERGE_CONSECUTIVE_RANGES": "YES",
    "GDAL_HTTP_MULTIPLEX": "YES",
    "VSI_CACHE": "TRUE",
    "GDAL_HTTP_MAX_RETRY": "3",
    "GDAL_HTTP_RETRY_DELAY": "2",
}
