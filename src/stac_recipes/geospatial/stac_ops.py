"""STAC operations for searching catalogs with CQL2 filters."""

import json
from collections.abc import Iterable
from typing import Any
from urllib.parse import quote, urlencode

from dagster import AssetExecutionContext, OpExecutionContext
from planetary_computer import sign
from pystac import ItemCollection
from pystac_client import ItemSearch
from pystac_client.conformance import ConformanceClasses

from stac_recipes.config.constants import CQL2_JSON, CQL2_TEXT
from stac_recipes.filters.cql2 import Expression, as_filter_payload
from stac_recipes.models.models import ItemSummary, SearchRequest


def choose_search_method(stac_client: Any) -> str:
    """Pick POST when the API advertises a POST search link, GET otherwise.

    :param stac_client: STAC client
    :returns: "POST" or "GET"
    """
    search_links = stac_client.get_links(rel="search")
    if any(link.extra_fields.get("method") == "POST" for link in search_links):
        return "POST"
    return "GET"


def supports_filter_extension(stac_client: Any) -> bool:
    """Check whether the API conforms to the Item Search Filter Extension.

    :param stac_client: STAC client
    :returns: True if filters are supported
    """
    return bool(stac_client.conforms_to(ConformanceClasses.FILTER))


def _resolve_filter(
    request_filter: Expression | dict[str, Any] | str | None,
    filter_lang: str | None,
    method: str,
) -> tuple[dict[str, Any] | str | None, str | None]:
    if request_filter is None:
        return None, None
    if filter_lang is None:
        if isinstance(request_filter, Expression):
            filter_lang = CQL2_JSON if method == "POST" else CQL2_TEXT
        elif isinstance(request_filter, str) and method == "POST":
            filter_lang = CQL2_JSON
    return as_filter_payload(request_filter, filter_lang)


def build_item_search(
    url: str,
    request: SearchRequest,
    client: Any | None = None,
    expression: Expression | None = None,
) -> ItemSearch:
    """Build an ItemSearch without executing it.

    POST searches carry the filter as CQL2 JSON, GET searches as CQL2 text,
    unless ``request.filter_lang`` says otherwise.

    :param url: Item search endpoint URL
    :param request: Search parameters
    :param client: Optional pystac-client Client the search belongs to
    :param expression: Optional expression, takes precedence over ``request.filter``
    :returns: ItemSearch
    """
    method = request.method or (choose_search_method(client) if client is not None else "POST")
    request_filter: Expression | dict[str, Any] | str | None = expression if expression is not None else request.filter
    filter_value, filter_lang = _resolve_filter(request_filter, request.filter_lang, method)

    kwargs: dict[str, Any] = {
        "method": method,
        "collections": request.collections,
        "limit": request.limit,
        "max_items": request.max_items,
    }
    if request.bbox is not None:
        kwargs["bbox"] = request.bbox.as_list()
    if request.interval is not None:
        kwargs["datetime"] = request.interval.to_rfc3339()
    if filter_value is not None:
        kwargs["filter"] = filter_value
        kwargs["filter_lang"] = filter_lang

    return ItemSearch(url, client=client, modifier=getattr(client, "modifier", None), **kwargs)


def search_post_body(search: ItemSearch) -> dict[str, Any]:
    """JSON body of the search as sent with POST.

    :param search: ItemSearch
    :returns: Request body dictionary
    """
    body: dict[str, Any] = json.loads(json.dumps(search._parameters, default=list))
    return body


def search_get_url(search: ItemSearch) -> str:
    """Fully encoded GET URL of the search.

    Only GET searches have a query string form; the filter travels as
    ``filter``/``filter-lang`` parameters.

    :param search: ItemSearch built with method GET
    :returns: URL with percent-encoded query string
    """
    if search.method != "GET":
        raise ValueError(f"Only GET searches have a query string, got {search.method}")
    return f"{search.url}?{urlencode(search.get_parameters(), quote_via=quote)}"


def search_items(
    context: OpExecutionContext | AssetExecutionContext,
    stac_client: Any,
    request: SearchRequest,
    expression: Expression | None = None,
) -> ItemCollection:
    """Run an item search and collect the results.

    :param context: Dagster context
    :param stac_client: STAC client
    :param request: Search parameters
    :param expression: Optional CQL2 expression
    :returns: ItemCollection with the matching items
    """
    if (expression is not None or request.filter is not None) and not supports_filter_extension(stac_client):
        context.log.warning(f"{stac_client.get_self_href()} does not advertise the Filter Extension")

    search_link = stac_client.get_search_link()
    if search_link is None:
        raise ValueError(f"{stac_client.get_self_href()} does not provide an item search endpoint")

    search = build_item_search(search_link.href, request, client=stac_client, expression=expression)
    context.log.info(f"Searching {search.method} {search.url}")

    items = search.item_collection()
    context.log.info(f"Found {len(items)} item(s) in {', '.join(request.collections)}")
    return items


def fetch_queryables(stac_client: Any, collections: list[str]) -> dict[str, Any]:
    """Fetch the queryables shared by the given collections.

    :param stac_client: STAC client
    :param collections: Collection IDs
    :returns: Queryables JSON schema
    """
    queryables: dict[str, Any] = stac_client.get_merged_queryables(collections)
    return queryables


def check_queryables(expression: Expression, queryables: dict[str, Any]) -> list[str]:
    """Find properties used by an expression that the API does not list as queryable.

    :param expression: CQL2 expression
    :param queryables: Queryables JSON schema
    :returns: Sorted unknown property names
    """
    known = set(queryables.get("properties", {}))
    return sorted(name for name in expression.property_names() if name not in known)


def summarize_items(items: Iterable[Any]) -> list[ItemSummary]:
    """Condense items to id, collection, datetime, cloud cover and asset keys.

    :param items: STAC items
    :returns: List of ItemSummary
    """
    summaries = []
    for item in items:
        properties = item.properties or {}
        item_datetime = item.datetime.isoformat() if item.datetime else properties.get("start_datetime")
        summaries.append(
            ItemSummary(
                id=item.id,
                collection=item.collection_id,
                datetime=item_datetime,
                cloud_cover=properties.get("eo:cloud_cover"),
                asset_keys=sorted(item.assets),
            )
        )
    return summaries


def select_asset_hrefs(
    items: Iterable[Any],
    asset_candidates: list[str],
    sign_hrefs: bool = False,
) -> tuple[dict[str, str], list[str]]:
    """Select one asset href per item, trying candidate keys in order.

    :param items: STAC items
    :param asset_candidates: Asset keys in preference order
    :param sign_hrefs: Sign hrefs with Planetary Computer SAS tokens
    :returns: Tuple of (hrefs by item id, ids of items missing every candidate)
    """
    hrefs: dict[str, str] = {}
    missing: list[str] = []

    for item in items:
        for asset_key in asset_candidates:
            if asset_key in item.assets:
                href = item.assets[asset_key].href
                hrefs[item.id] = sign(href) if sign_hrefs else href
                break
        else:
            missing.append(item.id)

    return hrefs, missing
