"""
Geospatial operations for STAC item search and remote raster access.

This module contains:
- STAC operations (search, queryables, asset selection)
- STACIT connection strings and gdalwarp invocation
- Raster inspection of the produced mosaics
"""
