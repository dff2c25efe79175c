from datetime import date, datetime, timezone
from typing import Any

import pytest
from shapely.geometry import Point, box

from stac_recipes.filters import cql2
from stac_recipes.filters.cql2 import (
    FilterSyntaxError,
    and_,
    as_filter_payload,
    build_scene_filter,
    interval,
    or_,
    prop,
    s_intersects,
    t_intersects,
    text_to_expression,
    text_to_json,
    timestamp,
)
from stac_recipes.models.models import BBox, TemporalInterval


def test_comparison_renders_json_and_text() -> None:
    """
    Test that a property comparison renders to both CQL2 encodings.

    Namespaced property names are double-quoted in CQL2 text.
    """
    expr = prop("eo:cloud_cover") < 10
    assert expr.to_json() == {"op": "<", "args": [{"property": "eo:cloud_cover"}, 10]}
    assert expr.to_text() == '"eo:cloud_cover" < 10'


def test_equality_and_string_escaping() -> None:
    """
    Test that string literals are single-quoted with quotes doubled.
    """
    expr = prop("platform") == "sentinel's"
    assert expr.to_json() == {"op": "=", "args": [{"property": "platform"}, "sentinel's"]}
    assert expr.to_text() == "platform = 'sentinel''s'"
    assert (prop("platform") != "x").to_json()["op"] == "<>"


def test_and_chains_are_flattened() -> None:
    """
    Test that chaining & produces one n-ary node instead of nested pairs.
    """
    expr = (prop("a") == 1) & (prop("b") == 2) & (prop("c") == 3)
    assert isinstance(expr, cql2.Logical)
    assert expr.op == "and"
    assert len(expr.args) == 3
    assert expr.to_text() == "a = 1 AND b = 2 AND c = 3"


def test_nested_logical_is_parenthesized() -> None:
    """
    Test that a nested OR inside an AND keeps its grouping in CQL2 text.
    """
    expr = (prop("a") == 1) & ((prop("b") == 2) | (prop("c") == 3))
    assert expr.to_text() == "a = 1 AND (b = 2 OR c = 3)"
    assert expr.to_json()["args"][1]["op"] == "or"


def test_not_like_between_in_is_null() -> None:
    """
    Test the advanced comparison operators and negation.
    """
    assert (~(prop("id").like("S2A%"))).to_json() == {
        "op": "not",
        "args": [{"op": "like", "args": [{"property": "id"}, "S2A%"]}],
    }
    assert prop("gsd").between(10, 20).to_text() == "gsd BETWEEN 10 AND 20"
    assert prop("platform").in_(["sentinel-2a", "sentinel-2b"]).to_json() == {
        "op": "in",
        "args": [{"property": "platform"}, ["sentinel-2a", "sentinel-2b"]],
    }
    assert prop("platform").in_(["a", "b"]).to_text() == "platform IN ('a', 'b')"
    assert prop("mgrs").is_null().to_text() == "mgrs IS NULL"


def test_empty_in_list_is_rejected() -> None:
    with pytest.raises(ValueError):
        prop("platform").in_([])


def test_and_or_helpers() -> None:
    """
    Test that and_/or_ return a single argument unchanged and reject none.
    """
    single = prop("a") == 1
    assert and_(single) is single
    assert or_(prop("a") == 1, prop("a") == 2).to_text() == "a = 1 OR a = 2"
    with pytest.raises(ValueError):
        and_()


def test_spatial_predicate_uses_geojson_and_wkt() -> None:
    """
    Test that spatial predicates carry GeoJSON in JSON and WKT in text.
    """
    expr = s_intersects(box(0, 0, 1, 1))
    as_json = expr.to_json()
    assert as_json["op"] == "s_intersects"
    assert as_json["args"][0] == {"property": "geometry"}
    assert as_json["args"][1]["type"] == "Polygon"
    assert isinstance(as_json["args"][1]["coordinates"], list)
    assert expr.to_text().startswith("S_INTERSECTS(geometry, POLYGON")

    point = s_intersects({"type": "Point", "coordinates": [1, 2]})
    assert point.to_text() == "S_INTERSECTS(geometry, POINT (1 2))"
    assert s_intersects(Point(1, 2), property="footprint").property_names() == {"footprint"}


def test_temporal_predicate_interval_and_timestamp() -> None:
    """
    Test interval literals with open ends and timestamp literals.
    """
    start = datetime(2023, 6, 1, tzinfo=timezone.utc)
    expr = t_intersects(interval(start, None))
    assert expr.to_json() == {
        "op": "t_intersects",
        "args": [{"property": "datetime"}, {"interval": ["2023-06-01T00:00:00Z", ".."]}],
    }
    assert expr.to_text() == "T_INTERSECTS(datetime, INTERVAL('2023-06-01T00:00:00Z', '..'))"

    assert timestamp("2023-06-01T10:00:00Z").to_text() == "TIMESTAMP('2023-06-01T10:00:00Z')"
    assert interval(date(2023, 6, 1), date(2023, 6, 30)).to_json() == {"interval": ["2023-06-01", "2023-06-30"]}
    with pytest.raises(ValueError):
        interval(None, None)


def test_comparison_with_datetime_becomes_timestamp() -> None:
    expr = prop("created") > datetime(2023, 1, 1, tzinfo=timezone.utc)
    assert expr.to_json()["args"][1] == {"timestamp": "2023-01-01T00:00:00Z"}


def test_temporal_predicate_rejects_plain_strings() -> None:
    with pytest.raises(TypeError):
        t_intersects("2023-06-01")  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "factory,op",
    [(cql2.s_within, "s_within"), (cql2.s_contains, "s_contains"), (cql2.s_disjoint, "s_disjoint")],
)
def test_other_spatial_predicates(factory: Any, op: str) -> None:
    expr = factory({"type": "Point", "coordinates": [1, 2]})
    assert expr.to_json()["op"] == op
    assert expr.to_text() == f"{op.upper()}(geometry, POINT (1 2))"


@pytest.mark.parametrize(
    "factory,op",
    [(cql2.t_before, "t_before"), (cql2.t_after, "t_after"), (cql2.t_during, "t_during")],
)
def test_other_temporal_predicates(factory: Any, op: str) -> None:
    expr = factory(cql2.date("2023-06-01"), property="start_datetime")
    assert expr.to_json() == {"op": op, "args": [{"property": "start_datetime"}, {"date": "2023-06-01"}]}
    assert expr.to_text() == f"{op.upper()}(start_datetime, DATE('2023-06-01'))"


def test_build_scene_filter_combines_terms() -> None:
    """
    Test the tutorial filter: collection, bbox, interval, cloud cover and extras.
    """
    expr = build_scene_filter(
        "sentinel-2-l2a",
        bbox=BBox.from_sequence([11.1, 43.7, 11.4, 43.9]),
        temporal=TemporalInterval.from_string("2023-06-01T00:00:00Z/2023-08-31T00:00:00Z"),
        cloud_cover_lt=10,
        s2__mgrs_tile="32TPP",
    )
    ops = [arg["op"] for arg in expr.to_json()["args"]]
    assert ops == ["=", "s_intersects", "t_intersects", "<", "="]
    assert expr.property_names() == {"collection", "geometry", "datetime", "eo:cloud_cover", "s2:mgrs_tile"}
    text = expr.to_text()
    assert text.startswith("collection = 'sentinel-2-l2a' AND S_INTERSECTS(geometry, POLYGON")
    assert "INTERVAL('2023-06-01T00:00:00Z', '2023-08-31T00:00:00Z')" in text
    assert '"s2:mgrs_tile" = \'32TPP\'' in text


def test_build_scene_filter_with_collection_only() -> None:
    expr = build_scene_filter("landsat-c2-l2")
    assert expr.to_json() == {"op": "=", "args": [{"property": "collection"}, "landsat-c2-l2"]}


def test_as_filter_payload_normalizes_inputs() -> None:
    """
    Test that expressions, dicts and strings map to the expected filter language.
    """
    expr = prop("eo:cloud_cover") < 5
    assert as_filter_payload(expr) == (expr.to_json(), "cql2-json")
    assert as_filter_payload(expr, "cql2-text") == ('"eo:cloud_cover" < 5', "cql2-text")
    assert as_filter_payload({"op": "=", "args": [1, 1]}) == ({"op": "=", "args": [1, 1]}, "cql2-json")
    assert as_filter_payload("gsd = 10") == ("gsd = 10", "cql2-text")
    with pytest.raises(ValueError):
        as_filter_payload({"op": "=", "args": [1, 1]}, "cql2-text")
    with pytest.raises(ValueError):
        as_filter_payload(expr, "ecql")


def test_text_to_json_uses_pygeofilter() -> None:
    """
    Test that CQL2 text is translated to CQL2 JSON.
    """
    result = text_to_json("cloud_cover < 10 AND platform = 'sentinel-2a'")
    assert result["op"] == "and"
    first, second = result["args"]
    assert first["op"] == "<"
    assert first["args"] == [{"property": "cloud_cover"}, 10]
    assert second["args"][1] == "sentinel-2a"


def test_text_to_json_rejects_invalid_text() -> None:
    with pytest.raises(FilterSyntaxError):
        text_to_json("cloud_cover <<< AND")


def test_scene_filter_text_parses_back_to_its_json() -> None:
    """
    Test that the CQL2 text of the scene filter translates to the same CQL2 JSON.

    Date bounds expand to whole-second timestamps, which pygeofilter reads.
    """
    expr = build_scene_filter(
        "sentinel-2-l2a",
        bbox=BBox.from_sequence([11.1, 43.7, 11.4, 43.9]),
        temporal=TemporalInterval.from_string("2023-06-01/2023-08-31"),
        cloud_cover_lt=10,
        s2__mgrs_tile="32TPP",
    )
    assert "INTERVAL('2023-06-01T00:00:00Z', '2023-08-31T23:59:59Z')" in expr.to_text()
    assert text_to_json(expr.to_text()) == expr.to_json()


def test_text_to_expression_reads_function_form_temporal_predicates() -> None:
    expr = text_to_expression("T_BEFORE(start_datetime, TIMESTAMP('2023-06-01T00:00:00Z'))")
    assert isinstance(expr, cql2.TemporalPredicate)
    assert expr.to_json() == {
        "op": "t_before",
        "args": [{"property": "start_datetime"}, {"timestamp": "2023-06-01T00:00:00Z"}],
    }


def test_text_to_expression_negated_predicates() -> None:
    """
    Test that NOT forms of IN, BETWEEN, LIKE and IS NULL become a not node.
    """
    assert text_to_json("platform NOT IN ('a', 'b')") == {
        "op": "not",
        "args": [{"op": "in", "args": [{"property": "platform"}, ["a", "b"]]}],
    }
    assert text_to_json("gsd NOT BETWEEN 10 AND 20") == {
        "op": "not",
        "args": [{"op": "between", "args": [{"property": "gsd"}, 10, 20]}],
    }
    assert text_to_json("NOT (platform LIKE 'S2%')") == {
        "op": "not",
        "args": [{"op": "like", "args": [{"property": "platform"}, "S2%"]}],
    }
    assert text_to_json("mgrs IS NOT NULL") == {
        "op": "not",
        "args": [{"op": "isNull", "args": [{"property": "mgrs"}]}],
    }


def test_text_to_expression_spatial_predicate() -> None:
    expr = text_to_expression("S_WITHIN(footprint, POINT (1 2))")
    assert expr.to_json() == {
        "op": "s_within",
        "args": [{"property": "footprint"}, {"type": "Point", "coordinates": [1.0, 2.0]}],
    }


@pytest.mark.parametrize(
    "text",
    [
        "T_INTERSECTS(datetime, INTERVAL('2023-06-01T00:00:00Z', '..'))",
        "gsd + 1 > 10",
        "10 < gsd",
    ],
)
def test_text_to_expression_rejects_unsupported_text(text: str) -> None:
    with pytest.raises(FilterSyntaxError):
        text_to_expression(text)
