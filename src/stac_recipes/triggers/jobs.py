"""Dagster job definitions for asset materialization."""

from dagster import define_asset_job

item_search_job = define_asset_job(name="item_search_job", selection=["cql2_item_search"])
mosaic_job = define_asset_job(name="mosaic_job", selection=["cql2_item_search", "stacit_mosaic"])
