"""CQL2 filter expressions built from Python operators.

Expressions render to both encodings used by the STAC API Filter Extension:
CQL2 JSON for POST bodies and CQL2 text for GET query strings::

    expr = (prop("collection") == "sentinel-2-l2a") & (prop("eo:cloud_cover") < 10)
    expr.to_json()  # {"op": "and", "args": [...]}
    expr.to_text()  # "collection = 'sentinel-2-l2a' AND \"eo:cloud_cover\" < 10"

Parsing CQL2 text is left to pygeofilter, whose syntax tree is turned back
into these expressions, see :func:`text_to_expression`.
"""

import re
from collections.abc import Iterable, Mapping
from datetime import date as _date, datetime, timezone
from typing import Any

from pygeofilter import ast as cql_ast, values as cql_values
from pygeofilter.backends.evaluator import Evaluator, handle
from pygeofilter.cql2 import SPATIAL_PREDICATES_MAP, TEMPORAL_PREDICATES_MAP
from pygeofilter.parsers.cql2_text import parse as parse_cql2_text
from pystac.utils import datetime_to_str
from shapely.geometry import mapping, shape
from shapely.geometry.base import BaseGeometry

from stac_recipes.config.constants import CQL2_JSON, CQL2_TEXT
from stac_recipes.models.models import OPEN_END, BBox, TemporalInterval

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_COMPARISON_OPS = ("=", "<>", "<", "<=", ">", ">=")


class FilterSyntaxError(ValueError):
    """Raised when CQL2 text cannot be parsed."""


class Expression:
    """Base class of all CQL2 nodes."""

    def to_json(self) -> Any:
        raise NotImplementedError

    def to_text(self) -> str:
        raise NotImplementedError

    def property_names(self) -> set[str]:
        return set()

    def __and__(self, other: "Expression") -> "Logical":
        return _combine("and", self, other)

    def __or__(self, other: "Expression") -> "Logical":
        return _combine("or", self, other)

    def __invert__(self) -> "Not":
        return Not(self)

    def __str__(self) -> str:
        return self.to_text()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.to_text()!r})"


def _literal_json(value: Any) -> Any:
    if isinstance(value, Expression):
        return value.to_json()
    if isinstance(value, (list, tuple)):
        return [_literal_json(v) for v in value]
    return value


def _literal_text(value: Any) -> str:
    if isinstance(value, Expression):
        return value.to_text()
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    if isinstance(value, (list, tuple)):
        return "(" + ", ".join(_literal_text(v) for v in value) + ")"
    raise TypeError(f"Unsupported CQL2 literal: {value!r}")


def _check_literal(value: Any) -> Any:
    if isinstance(value, (Expression, bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        return timestamp(value)
    if isinstance(value, _date):
        return date(value)
    raise TypeError(f"Unsupported CQL2 literal: {value!r}")


class Property(Expression):
    """Reference to an item property (or ``id``, ``collection``, ``geometry``, ``datetime``)."""

    def __init__(self, name: str) -> None:
        if not name:
            raise ValueError("Property name must not be empty")
        self.name = name

    def to_json(self) -> dict[str, str]:
        return {"property": self.name}

    def to_text(self) -> str:
        if _IDENTIFIER.match(self.name):
            return self.name
        return '"' + self.name.replace('"', '""') + '"'

    def property_names(self) -> set[str]:
        return {self.name}

    def __eq__(self, other: Any) -> "Comparison":  # type: ignore[override]
        return Comparison("=", self, other)

    def __ne__(self, other: Any) -> "Comparison":  # type: ignore[override]
        return Comparison("<>", self, other)

    def __lt__(self, other: Any) -> "Comparison":
        return Comparison("<", self, other)

    def __le__(self, other: Any) -> "Comparison":
        return Comparison("<=", self, other)

    def __gt__(self, other: Any) -> "Comparison":
        return Comparison(">", self, other)

    def __ge__(self, other: Any) -> "Comparison":
        return Comparison(">=", self, other)

    __hash__ = None  # type: ignore[assignment]

    def like(self, pattern: str) -> "Like":
        return Like(self, pattern)

    def between(self, low: Any, high: Any) -> "Between":
        return Between(self, low, high)

    def in_(self, values: Iterable[Any]) -> "In":
        return In(self, values)

    def is_null(self) -> "IsNull":
        return IsNull(self)


def prop(name: str) -> Property:
    """Shorthand for :class:`Property`."""
    return Property(name)


class Comparison(Expression):
    """Binary comparison: ``=``, ``<>``, ``<``, ``<=``, ``>``, ``>=``."""

    def __init__(self, op: str, lhs: Property, rhs: Any) -> None:
        if op not in _COMPARISON_OPS:
            raise ValueError(f"Unknown comparison operator: {op}")
        self.op = op
        self.lhs = lhs
        self.rhs = _check_literal(rhs)

    def to_json(self) -> dict[str, Any]:
        return {"op": self.op, "args": [self.lhs.to_json(), _literal_json(self.rhs)]}

    def to_text(self) -> str:
        return f"{self.lhs.to_text()} {self.op} {_literal_text(self.rhs)}"

    def property_names(self) -> set[str]:
        names = self.lhs.property_names()
        if isinstance(self.rhs, Expression):
            names |= self.rhs.property_names()
        return names


class Like(Expression):
    def __init__(self, lhs: Property, pattern: str) -> None:
        self.lhs = lhs
        self.pattern = pattern

    def to_json(self) -> dict[str, Any]:
        return {"op": "like", "args": [self.lhs.to_json(), self.pattern]}

    def to_text(self) -> str:
        return f"{self.lhs.to_text()} LIKE {_literal_text(self.pattern)}"

    def property_names(self) -> set[str]:
        return self.lhs.property_names()


class Between(Expression):
    def __init__(self, lhs: Property, low: Any, high: Any) -> None:
        self.lhs = lhs
        self.low = _check_literal(low)
        self.high = _check_literal(high)

    def to_json(self) -> dict[str, Any]:
        return {"op": "between", "args": [self.lhs.to_json(), _literal_json(self.low), _literal_json(self.high)]}

    def to_text(self) -> str:
        return f"{self.lhs.to_text()} BETWEEN {_literal_text(self.low)} AND {_literal_text(self.high)}"

    def property_names(self) -> set[str]:
        return self.lhs.property_names()


class In(Expression):
    def __init__(self, lhs: Property, values: Iterable[Any]) -> None:
        self.lhs = lhs
        self.values = [_check_literal(v) for v in values]
        if not self.values:
            raise ValueError(f"IN list for {lhs.name} must not be empty")

    def to_json(self) -> dict[str, Any]:
        return {"op": "in", "args": [self.lhs.to_json(), _literal_json(self.values)]}

    def to_text(self) -> str:
        return f"{self.lhs.to_text()} IN {_literal_text(self.values)}"

    def property_names(self) -> set[str]:
        return self.lhs.property_names()


class IsNull(Expression):
    def __init__(self, lhs: Property) -> None:
        self.lhs = lhs

    def to_json(self) -> dict[str, Any]:
        return {"op": "isNull", "args": [self.lhs.to_json()]}

    def to_text(self) -> str:
        return f"{self.lhs.to_text()} IS NULL"

    def property_names(self) -> set[str]:
        return self.lhs.property_names()


class Logical(Expression):
    """N-ary ``and`` / ``or``."""

    def __init__(self, op: str, args: list[Expression]) -> None:
        if op not in ("and", "or"):
            raise ValueError(f"Unknown logical operator: {op}")
        if len(args) < 2:
            raise ValueError(f"'{op}' needs at least two arguments")
        self.op = op
        self.args = args

    def to_json(self) -> dict[str, Any]:
        return {"op": self.op, "args": [a.to_json() for a in self.args]}

    def to_text(self) -> str:
        parts = [f"({a.to_text()})" if isinstance(a, Logical) else a.to_text() for a in self.args]
        return f" {self.op.upper()} ".join(parts)

    def property_names(self) -> set[str]:
        return set().union(*(a.property_names() for a in self.args))


class Not(Expression):
    def __init__(self, arg: Expression) -> None:
        self.arg = arg

    def to_json(self) -> dict[str, Any]:
        return {"op": "not", "args": [self.arg.to_json()]}

    def to_text(self) -> str:
        return f"NOT ({self.arg.to_text()})"

    def property_names(self) -> set[str]:
        return self.arg.property_names()


def _combine(op: str, left: Expression, right: Expression) -> Logical:
    if not isinstance(right, Expression):
        raise TypeError(f"Cannot combine CQL2 expression with {right!r}")
    args: list[Expression] = []
    for expr in (left, right):
        if isinstance(expr, Logical) and expr.op == op:
            args.extend(expr.args)
        else:
            args.append(expr)
    return Logical(op, args)


def and_(*exprs: Expression) -> Expression:
    """Join expressions with ``and``; a single expression is returned as is."""
    return _reduce("and", exprs)


def or_(*exprs: Expression) -> Expression:
    """Join expressions with ``or``; a single expression is returned as is."""
    return _reduce("or", exprs)


def _reduce(op: str, exprs: tuple[Expression, ...]) -> Expression:
    if not exprs:
        raise ValueError(f"'{op}' needs at least one expression")
    result = exprs[0]
    for expr in exprs[1:]:
        result = _combine(op, result, expr)
    return result


class Timestamp(Expression):
    def __init__(self, value: datetime | str) -> None:
        self.value = datetime_to_str(value) if isinstance(value, datetime) else value

    def to_json(self) -> dict[str, str]:
        return {"timestamp": self.value}

    def to_text(self) -> str:
        return f"TIMESTAMP('{self.value}')"


class Date(Expression):
    def __init__(self, value: _date | str) -> None:
        self.value = value.isoformat() if isinstance(value, _date) else value

    def to_json(self) -> dict[str, str]:
        return {"date": self.value}

    def to_text(self) -> str:
        return f"DATE('{self.value}')"


def _interval_bound(value: datetime | _date | str | None) -> str:
    if value is None:
        return OPEN_END
    if isinstance(value, datetime):
        return datetime_to_str(value)
    if isinstance(value, _date):
        return value.isoformat()
    return value


class Interval(Expression):
    def __init__(self, start: datetime | _date | str | None, end: datetime | _date | str | None) -> None:
        self.start = _interval_bound(start)
        self.end = _interval_bound(end)
        if self.start == OPEN_END and self.end == OPEN_END:
            raise ValueError("Interval needs at least one closed end")

    def to_json(self) -> dict[str, list[str]]:
        return {"interval": [self.start, self.end]}

    def to_text(self) -> str:
        return f"INTERVAL('{self.start}', '{self.end}')"


def timestamp(value: datetime | str) -> Timestamp:
    return Timestamp(value)


def date(value: _date | str) -> Date:
    return Date(value)


def interval(start: datetime | _date | str | None, end: datetime | _date | str | None) -> Interval:
    return Interval(start, end)


class Geometry(Expression):
    """GeoJSON geometry literal, rendered as WKT in CQL2 text."""

    def __init__(self, geometry: Mapping[str, Any] | BaseGeometry | BBox) -> None:
        if isinstance(geometry, BBox):
            geometry = geometry.to_geometry()
        if isinstance(geometry, BaseGeometry):
            geometry = mapping(geometry)
        self.geometry = dict(geometry)
        self._shape = shape(self.geometry)

    def to_json(self) -> dict[str, Any]:
        return _plain_geojson(self.geometry)

    def to_text(self) -> str:
        return self._shape.wkt


def _plain_geojson(value: Any) -> Any:
    # shapely's mapping() yields tuples, JSON encoders and servers expect lists
    if isinstance(value, Mapping):
        return {k: _plain_geojson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain_geojson(v) for v in value]
    return value


class SpatialPredicate(Expression):
    def __init__(self, op: str, lhs: Property, geometry: Mapping[str, Any] | BaseGeometry | BBox) -> None:
        self.op = op
        self.lhs = lhs
        self.geometry = Geometry(geometry)

    def to_json(self) -> dict[str, Any]:
        return {"op": self.op, "args": [self.lhs.to_json(), self.geometry.to_json()]}

    def to_text(self) -> str:
        return f"{self.op.upper()}({self.lhs.to_text()}, {self.geometry.to_text()})"

    def property_names(self) -> set[str]:
        return self.lhs.property_names()


class TemporalPredicate(Expression):
    def __init__(self, op: str, lhs: Property, value: Timestamp | Date | Interval) -> None:
        if not isinstance(value, (Timestamp, Date, Interval)):
            raise TypeError(f"{op} expects a timestamp, date or interval, got {value!r}")
        self.op = op
        self.lhs = lhs
        self.value = value

    def to_json(self) -> dict[str, Any]:
        return {"op": self.op, "args": [self.lhs.to_json(), self.value.to_json()]}

    def to_text(self) -> str:
        return f"{self.op.upper()}({self.lhs.to_text()}, {self.value.to_text()})"

    def property_names(self) -> set[str]:
        return self.lhs.property_names()


def _as_property(value: Property | str) -> Property:
    return value if isinstance(value, Property) else Property(value)


def s_intersects(geometry: Any, property: Property | str = "geometry") -> SpatialPredicate:
    return SpatialPredicate("s_intersects", _as_property(property), geometry)


def s_within(geometry: Any, property: Property | str = "geometry") -> SpatialPredicate:
    return SpatialPredicate("s_within", _as_property(property), geometry)


def s_contains(geometry: Any, property: Property | str = "geometry") -> SpatialPredicate:
    return SpatialPredicate("s_contains", _as_property(property), geometry)


def s_disjoint(geometry: Any, property: Property | str = "geometry") -> SpatialPredicate:
    return SpatialPredicate("s_disjoint", _as_property(property), geometry)


def t_intersects(value: Timestamp | Date | Interval, property: Property | str = "datetime") -> TemporalPredicate:
    return TemporalPredicate("t_intersects", _as_property(property), value)


def t_before(value: Timestamp | Date | Interval, property: Property | str = "datetime") -> TemporalPredicate:
    return TemporalPredicate("t_before", _as_property(property), value)


def t_after(value: Timestamp | Date | Interval, property: Property | str = "datetime") -> TemporalPredicate:
    return TemporalPredicate("t_after", _as_property(property), value)


def t_during(value: Timestamp | Date | Interval, property: Property | str = "datetime") -> TemporalPredicate:
    return TemporalPredicate("t_during", _as_property(property), value)


# pygeofilter reads temporal predicates only in infix form: ``datetime T_INTERSECTS INTERVAL(...)``
_TEMPORAL_CALL = re.compile(
    r"\b(T_[A-Z]+)\s*\(\s*(\"[^\"]*\"|[A-Za-z_][\w:.]*)\s*,\s*((?:TIMESTAMP|DATE|INTERVAL)\s*\([^()]*\))\s*\)",
    re.IGNORECASE,
)

_COMPARISON_NODES: dict[type, str] = {
    cql_ast.Equal: "=",
    cql_ast.NotEqual: "<>",
    cql_ast.LessThan: "<",
    cql_ast.LessEqual: "<=",
    cql_ast.GreaterThan: ">",
    cql_ast.GreaterEqual: ">=",
}
_SPATIAL_OPS = {node_class: name for name, node_class in SPATIAL_PREDICATES_MAP.items()}
# t_overlaps and t_intersects share a node class, the later name wins
_TEMPORAL_OPS = {node_class: name for name, node_class in TEMPORAL_PREDICATES_MAP.items()}


def _utc(value: Any) -> Any:
    if not isinstance(value, datetime):
        return value
    return value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _property_operand(value: Any) -> Property:
    if not isinstance(value, Property):
        raise TypeError(f"Left operand must be a property, got {value!r}")
    return value


def _negate(expr: Expression, negated: bool) -> Expression:
    return Not(expr) if negated else expr


class _ExpressionBuilder(Evaluator):
    """Rebuild :class:`Expression` objects from a pygeofilter syntax tree."""

    @handle(cql_ast.And, cql_ast.Or)
    def combination(self, node: Any, lhs: Expression, rhs: Expression) -> Expression:
        return _combine("and" if isinstance(node, cql_ast.And) else "or", lhs, rhs)

    @handle(cql_ast.Not)
    def not_(self, node: Any, arg: Expression) -> Expression:
        return Not(arg)

    @handle(*_COMPARISON_NODES)
    def comparison(self, node: Any, lhs: Any, rhs: Any) -> Expression:
        return Comparison(_COMPARISON_NODES[type(node)], _property_operand(lhs), rhs)

    @handle(cql_ast.Like)
    def like(self, node: Any, lhs: Any) -> Expression:
        return _negate(Like(_property_operand(lhs), node.pattern), node.not_)

    @handle(cql_ast.Between)
    def between(self, node: Any, lhs: Any, low: Any, high: Any) -> Expression:
        return _negate(Between(_property_operand(lhs), low, high), node.not_)

    @handle(cql_ast.In)
    def in_(self, node: Any, lhs: Any, *options: Any) -> Expression:
        return _negate(In(_property_operand(lhs), options), node.not_)

    @handle(cql_ast.IsNull)
    def is_null(self, node: Any, lhs: Any) -> Expression:
        return _negate(IsNull(_property_operand(lhs)), node.not_)

    @handle(*_SPATIAL_OPS)
    def spatial(self, node: Any, lhs: Any, rhs: Any) -> Expression:
        return SpatialPredicate(_SPATIAL_OPS[type(node)], _property_operand(lhs), rhs)

    @handle(*_TEMPORAL_OPS)
    def temporal(self, node: Any, lhs: Any, rhs: Any) -> Expression:
        return TemporalPredicate(_TEMPORAL_OPS[type(node)], _property_operand(lhs), rhs)

    @handle(cql_ast.Attribute)
    def attribute(self, node: Any) -> Property:
        return Property(node.name)

    @handle(cql_values.Geometry, cql_values.Envelope)
    def geometry(self, node: Any) -> BaseGeometry:
        return shape(node.geometry)

    @handle(cql_values.Interval)
    def interval(self, node: Any, *bounds: Any) -> Interval:
        return Interval(_utc(node.start), _utc(node.end))

    @handle(datetime)
    def timestamp(self, node: datetime) -> Timestamp:
        return Timestamp(_utc(node))

    @handle(_date)
    def date(self, node: _date) -> Date:
        return Date(node)

    @handle(str, int, float, bool)
    def literal(self, node: Any) -> Any:
        return node


def text_to_expression(text: str) -> Expression:
    """Parse CQL2 text into an :class:`Expression`.

    Temporal predicates may be written in function form,
    ``T_INTERSECTS(datetime, INTERVAL('2023-06-01T00:00:00Z', '2023-06-30T23:59:59Z'))``.
    Interval bounds must be timestamps; open (``'..'``) or date bounds are
    not understood by pygeofilter's grammar.

    :param text: CQL2 text expression
    :returns: Expression tree
    :raises FilterSyntaxError: If the text cannot be parsed or uses unsupported operators
    """
    try:
        node = parse_cql2_text(_TEMPORAL_CALL.sub(r"\2 \1 \3", text))
    except Exception as e:
        raise FilterSyntaxError(f"Invalid CQL2 text {text!r}: {e}") from e
    try:
        return _ExpressionBuilder().evaluate(node)
    except (NotImplementedError, TypeError, ValueError) as e:
        raise FilterSyntaxError(f"Unsupported CQL2 text {text!r}: {e}") from e


def text_to_json(text: str) -> dict[str, Any]:
    """Translate CQL2 text into CQL2 JSON.

    :param text: CQL2 text expression
    :returns: CQL2 JSON dictionary
    :raises FilterSyntaxError: If the text cannot be parsed
    """
    result: dict[str, Any] = text_to_expression(text).to_json()
    return result


def as_filter_payload(
    expression: Expression | dict[str, Any] | str,
    filter_lang: str | None = None,
) -> tuple[dict[str, Any] | str, str]:
    """Normalize a filter into the ``(filter, filter_lang)`` pair pystac-client takes.

    :param expression: Expression, CQL2 JSON dict or CQL2 text
    :param filter_lang: Requested encoding, inferred from the value when None
    :returns: Tuple of (filter, filter_lang)
    """
    if filter_lang not in (None, CQL2_JSON, CQL2_TEXT):
        raise ValueError(f"Unsupported filter language: {filter_lang}")

    if isinstance(expression, Expression):
        if filter_lang == CQL2_TEXT:
            return expression.to_text(), CQL2_TEXT
        return expression.to_json(), CQL2_JSON
    if isinstance(expression, dict):
        if filter_lang == CQL2_TEXT:
            raise ValueError("A CQL2 JSON filter cannot be sent as cql2-text")
        return expression, CQL2_JSON
    if isinstance(expression, str):
        if filter_lang == CQL2_JSON:
            return text_to_json(expression), CQL2_JSON
        return expression, CQL2_TEXT
    raise TypeError(f"Unsupported filter value: {expression!r}")


def build_scene_filter(
    collection: str,
    bbox: BBox | None = None,
    temporal: TemporalInterval | None = None,
    cloud_cover_lt: float | None = None,
    **equals: Any,
) -> Expression:
    """Compose the filter used throughout the tutorials.

    ``collection = X AND S_INTERSECTS(geometry, bbox) AND T_INTERSECTS(datetime, interval)``
    optionally narrowed by ``eo:cloud_cover`` and property equality terms.
    Keyword names use ``__`` for the ``:`` of namespaced properties,
    e.g. ``s2__mgrs_tile="32TPP"``.

    :param collection: Collection ID
    :param bbox: Optional bounding box
    :param temporal: Optional temporal interval
    :param cloud_cover_lt: Optional maximum cloud cover percentage
    :param equals: Additional ``property = value`` terms
    :returns: Combined expression
    """
    terms: list[Expression] = [prop("collection") == collection]
    if bbox is not None:
        terms.append(s_intersects(bbox))
    if temporal is not None:
        terms.append(t_intersects(interval(temporal.start, temporal.end)))
    if cloud_cover_lt is not None:
        terms.append(prop("eo:cloud_cover") < cloud_cover_lt)
    for key, value in equals.items():
        terms.append(prop(key.replace("__", ":")) == value)
    return and_(*terms)
