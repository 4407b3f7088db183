import sqlglot
from sqlglot import expressions as exp

from ..model import Filter

_TABLES = {"events", "events_hot"}

# column aliases accepted for each filter field
_COLUMNS = {
    "created_at": "created_at",
    "event_created_at": "created_at",
    "kind": "kinds",
    "event_kind": "kinds",
    "pubkey": "authors",
    "event_pubkey": "authors",
    "id": "ids",
    "event_id": "ids",
}

# operator as seen when the literal is on the left-hand side
_FLIPPED = {exp.GT: exp.LT, exp.GTE: exp.LTE, exp.LT: exp.GT, exp.LTE: exp.GTE, exp.EQ: exp.EQ}


def _literal(node: exp.Expression):
    if isinstance(node, exp.Neg) and isinstance(node.this, exp.Literal):
        return -_literal(node.this)
    if not isinstance(node, exp.Literal):
        raise ValueError(f"Expected a literal, got {node.sql()}")
    if node.is_string:
        return node.this
    try:
        return int(node.this)
    except ValueError:
        raise ValueError(f"Unsupported numeric literal {node.this}") from None


def _conjuncts(node: exp.Expression) -> list[exp.Expression]:
    if isinstance(node, exp.Paren):
        return _conjuncts(node.this)
    if isinstance(node, exp.And):
        return _conjuncts(node.this) + _conjuncts(node.expression)
    return [node]


def _field(column: exp.Expression) -> str:
    if not isinstance(column, exp.Column):
        raise ValueError(f"Expected a column, got {column.sql()}")
    name = column.name.lower()
    if name not in _COLUMNS:
        raise ValueError(f"Unsupported column: {column.name}")
    return _COLUMNS[name]


class _FilterBuilder:
    def __init__(self) -> None:
        self.since = None
        self.until = None
        self.values: dict[str, list] = {}

    def restrict(self, field: str, values: list) -> None:
        if field == "kinds":
            values = [int(v) for v in values]
        else:
            values = [str(v) for v in values]
        current = self.values.get(field)
        self.values[field] = values if current is None else [v for v in current if v in values]

    def compare(self, op: type, field: str, value) -> None:
        if field != "created_at":
            if op is not exp.EQ:
                raise ValueError(f"Only = and IN are supported on {field}")
            self.restrict(field, [value])
            return
        value = int(value)
        if op in (exp.GTE, exp.GT, exp.EQ):
            low = value + 1 if op is exp.GT else value
            self.since = low if self.since is None else max(self.since, low)
        if op in (exp.LTE, exp.LT, exp.EQ):
            high = value - 1 if op is exp.LT else value
            self.until = high if self.until is None else min(self.until, high)

    def add(self, cond: exp.Expression) -> None:
        if isinstance(cond, exp.In):
            if cond.args.get("query") is not None:
                raise ValueError("Subqueries are not supported")
            field = _field(cond.this)
            values = [_literal(e) for e in cond.expressions]
            if field == "created_at":
                raise ValueError("IN is not supported on created_at")
            self.restrict(field, values)
            return
        if isinstance(cond, exp.Between):
            field = _field(cond.this)
            if field != "created_at":
                raise ValueError("BETWEEN is only supported on created_at")
            self.compare(exp.GTE, field, _literal(cond.args["low"]))
            self.compare(exp.LTE, field, _literal(cond.args["high"]))
            return
        op = type(cond)
        if op not in _FLIPPED:
            raise ValueError(f"Unsupported condition: {cond.sql()}")
        left, right = cond.this, cond.expression
        if isinstance(left, exp.Column):
            self.compare(op, _field(left), _literal(right))
        elif isinstance(right, exp.Column):
            self.compare(_FLIPPED[op], _field(right), _literal(left))
        else:
            raise ValueError(f"Unsupported condition: {cond.sql()}")


def parse_filter(sql_string: str) -> Filter:
    """Parse ``SELECT * FROM events WHERE ...`` into a :class:`Filter`.

    Supported: conjunctions of comparisons on ``created_at``, equality and
    ``IN`` lists on ``kind``, ``pubkey`` and ``id``, and ``LIMIT``.
    """
    try:
        parsed = sqlglot.parse_one(sql_string)
    except Exception as e:  # pragma: no cover - ensure any parsing error is surfaced
        raise ValueError("Invalid SQL") from e

    if not isinstance(parsed, exp.Select):
        raise ValueError("Only SELECT statements are supported")
    if parsed.args.get("joins"):
        raise ValueError("Joins are not supported")
    if parsed.args.get("group") or parsed.args.get("having"):
        raise ValueError("Aggregation is not supported")

    table = parsed.find(exp.Table)
    if table is None or table.name.lower() not in _TABLES:
        raise ValueError("Queries must select FROM events")

    builder = _FilterBuilder()
    where = parsed.args.get("where")
    if where is not None:
        for cond in _conjuncts(where.this):
            builder.add(cond)

    limit = None
    limit_exp = parsed.args.get("limit")
    if limit_exp is not None:
        lit = limit_exp.find(exp.Literal)
        if lit is None:
            raise ValueError("LIMIT must be a number")
        limit = int(_literal(lit))
        if limit < 0:
            raise ValueError("LIMIT must not be negative")

    return Filter(
        ids=builder.values.get("ids"),
        authors=builder.values.get("authors"),
        kinds=builder.values.get("kinds"),
        since=builder.since,
        until=builder.until,
        limit=limit,
    )
