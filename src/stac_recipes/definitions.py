"""Dagster definitions for the STAC search and mosaic walkthrough."""

from dagster import Definitions, load_assets_from_modules

from stac_recipes import assets  # noqa: TID252
from stac_recipes.connectors.settings import SettingsResource
from stac_recipes.connectors.stac_client import STACResource
from stac_recipes.storage import create_io_manager
from stac_recipes.triggers.jobs import item_search_job, mosaic_job

all_assets = load_assets_from_modules([assets])

settings = SettingsResource.create(swallow_errors=True)

defs = Definitions(
    assets=all_assets,
    jobs=[item_search_job, mosaic_job],
    resources={
        "stac": STACResource(settings=settings),
        "settings": settings,
        "io_manager": create_io_manager(settings),
    },
)
