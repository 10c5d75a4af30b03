"""fake_ddb.py: in-memory stand-in for the low-level DynamoDB client in tests.

Items are kept in wire format (``{"S": ...}``/``{"N": ...}``) so the code
under test exercises its real (de)serialization. Condition expressions are
evaluated, which is what the lifecycle tests rely on: a rejected condition
raises the same ``ConditionalCheckFailedException`` ClientError that
DynamoDB does.

Supported expression grammar covers what the Buildor store emits:
``attribute_exists``/``attribute_not_exists``, comparisons, ``IN``,
``AND``/``OR``/``NOT`` and parentheses; update expressions are ``SET``
assignments only.
"""

from __future__ import annotations

import copy
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import ClientError

_DESER = TypeDeserializer()

_TOKEN = re.compile(r"\s*(<=|>=|<>|[=<>(),]|[#:]?[A-Za-z_][A-Za-z0-9_.\-]*)")
_KEYWORDS = {"AND", "OR", "NOT", "IN"}
_FUNCTIONS = {"attribute_exists", "attribute_not_exists"}


def conditional_check_failed(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        operation,
    )


def _plain(attr: Optional[Dict[str, Any]]) -> Any:
    if attr is None:
        return None
    return _DESER.deserialize(attr)


def _tokenize(expression: str) -> List[str]:
    tokens: List[str] = []
    pos = 0
    expression = expression.strip()
    while pos < len(expression):
        match = _TOKEN.match(expression, pos)
        if not match:
            raise ValueError(f"Cannot parse expression near: {expression[pos:]!r}")
        tokens.append(match.group(1))
        pos = match.end()
    return tokens


class _ConditionEvaluator:
    def __init__(self, item: Optional[Dict[str, Any]], names: Dict[str, str], values: Dict[str, Any]) -> None:
        self.item = item or {}
        self.names = names
        self.values = values
        self.tokens: List[str] = []
        self.pos = 0

    def evaluate(self, expression: str) -> bool:
        self.tokens = _tokenize(expression)
        self.pos = 0
        result = self._or()
        if self.pos != len(self.tokens):
            raise ValueError(f"Unexpected trailing tokens: {self.tokens[self.pos:]}")
        return result

    def _peek(self) -> Optional[str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, expected: Optional[str] = None) -> str:
        token = self._peek()
        if token is None or (expected is not None and token.upper() != expected):
            raise ValueError(f"Expected {expected!r}, got {token!r}")
        self.pos += 1
        return token

    def _or(self) -> bool:
        result = self._and()
        while (self._peek() or "").upper() == "OR":
            self._take("OR")
            rhs = self._and()
            result = result or rhs
        return result

    def _and(self) -> bool:
        result = self._not()
        while (self._peek() or "").upper() == "AND":
            self._take("AND")
            rhs = self._not()
            result = result and rhs
        return result

    def _not(self) -> bool:
        if (self._peek() or "").upper() == "NOT":
            self._take("NOT")
            return not self._not()
        return self._primary()

    def _name(self, token: str) -> str:
        return self.names[token] if token.startswith("#") else token

    def _operand(self) -> Any:
        token = self._take()
        if token.startswith(":"):
            return _plain(self.values[token])
        return _plain(self.item.get(self._name(token)))

    def _primary(self) -> bool:
        token = self._peek()
        if token == "(":
            self._take("(")
            result = self._or()
            self._take(")")
            return result
        if token in _FUNCTIONS:
            self._take()
            self._take("(")
            exists = self._name(self._take()) in self.item
            self._take(")")
            return exists if token == "attribute_exists" else not exists

        left = self._operand()
        op = self._take()
        if op.upper() == "IN":
            self._take("(")
            candidates = [self._operand()]
            while self._peek() == ",":
                self._take(",")
                candidates.append(self._operand())
            self._take(")")
            return left in candidates
        right = self._operand()
        return _compare(left, op, right)


def _compare(left: Any, op: str, right: Any) -> bool:
    if op == "=":
        return left == right
    if op == "<>":
        return left != right
    if left is None or right is None:
        return False
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    if op == ">=":
        return left >= right
    raise ValueError(f"Unsupported comparator {op!r}")


def _apply_set(item: Dict[str, Any], expression: str, names: Dict[str, str], values: Dict[str, Any]) -> None:
    expression = expression.strip()
    if not expression.upper().startswith("SET "):
        raise ValueError(f"Only SET update expressions are supported: {expression!r}")
    for clause in expression[4:].split(","):
        target, _, source = clause.partition("=")
        target, source = target.strip(), source.strip()
        name = names[target] if target.startswith("#") else target
        item[name] = copy.deepcopy(values[source])


class FakeDdb:
    """Minimal low-level DynamoDB client backed by dicts.

    ``indexes`` maps index name to ``(partition_attr, sort_attr_or_None)``.
    ``failures`` maps an operation name to an exception raised on its next
    call (one-shot), for exercising store outages.
    """

    def __init__(
        self,
        indexes: Optional[Dict[str, Tuple[str, Optional[str]]]] = None,
        scan_page_size: int = 100,
    ) -> None:
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.indexes = dict(indexes or {})
        self.scan_page_size = scan_page_size
        self.failures: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.before_call: Optional[Callable[[str, Dict[str, Any]], None]] = None

    # -- helpers ----------------------------------------------------------

    def _enter(self, operation: str, kwargs: Dict[str, Any]) -> None:
        self.calls.append((operation, kwargs))
        if self.before_call is not None:
            self.before_call(operation, kwargs)
        exc = self.failures.pop(operation, None)
        if exc is not None:
            raise exc

    def _table(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self.tables.setdefault(name, {})

    @staticmethod
    def _key_of(key: Dict[str, Any]) -> str:
        return str(_plain(key["id"]))

    @staticmethod
    def _check(
        item: Optional[Dict[str, Any]],
        kwargs: Dict[str, Any],
        operation: str,
    ) -> None:
        condition = kwargs.get("ConditionExpression")
        if not condition:
            return
        evaluator = _ConditionEvaluator(
            item,
            kwargs.get("ExpressionAttributeNames") or {},
            kwargs.get("ExpressionAttributeValues") or {},
        )
        if not evaluator.evaluate(condition):
            raise conditional_check_failed(operation)

    def seed(self, table: str, item: Dict[str, Any]) -> None:
        self._table(table)[self._key_of(item)] = copy.deepcopy(item)

    def item(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        raw = self._table(table).get(record_id)
        return {k: _plain(v) for k, v in raw.items()} if raw else None

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    # -- client API -------------------------------------------------------

    def get_item(self, **kwargs: Any) -> Dict[str, Any]:
        self._enter("get_item", kwargs)
        raw = self._table(kwargs["TableName"]).get(self._key_of(kwargs["Key"]))
        return {"Item": copy.deepcopy(raw)} if raw else {}

    def put_item(self, **kwargs: Any) -> Dict[str, Any]:
        self._enter("put_item", kwargs)
        table = self._table(kwargs["TableName"])
        key = self._key_of(kwargs["Item"])
        self._check(table.get(key), kwargs, "PutItem")
        table[key] = copy.deepcopy(kwargs["Item"])
        return {}

    def update_item(self, **kwargs: Any) -> Dict[str, Any]:
        self._enter("update_item", kwargs)
        table = self._table(kwargs["TableName"])
        key = self._key_of(kwargs["Key"])
        existing = table.get(key)
        self._check(existing, kwargs, "UpdateItem")
        updated = copy.deepcopy(existing) if existing else copy.deepcopy(kwargs["Key"])
        _apply_set(
            updated,
            kwargs["UpdateExpression"],
            kwargs.get("ExpressionAttributeNames") or {},
            kwargs.get("ExpressionAttributeValues") or {},
        )
        table[key] = updated
        if kwargs.get("ReturnValues") == "ALL_NEW":
            return {"Attributes": copy.deepcopy(updated)}
        return {}

    def query(self, **kwargs: Any) -> Dict[str, Any]:
        self._enter("query", kwargs)
        partition_attr, sort_attr = self.indexes[kwargs["IndexName"]]
        match = re.fullmatch(r"\s*(\S+)\s*=\s*(:\S+)\s*", kwargs["KeyConditionExpression"])
        if not match or match.group(1) != partition_attr:
            raise ValueError(f"Unsupported key condition: {kwargs['KeyConditionExpression']!r}")
        wanted = _plain(kwargs["ExpressionAttributeValues"][match.group(2)])
        items = [
            copy.deepcopy(raw)
            for raw in self._table(kwargs["TableName"]).values()
            if _plain(raw.get(partition_attr)) == wanted
        ]
        if sort_attr:
            items.sort(
                key=lambda raw: _plain(raw.get(sort_attr)) or "",
                reverse=not kwargs.get("ScanIndexForward", True),
            )
        limit = kwargs.get("Limit")
        if limit:
            items = items[:limit]
        return {"Items": items, "Count": len(items)}

    def scan(self, **kwargs: Any) -> Dict[str, Any]:
        self._enter("scan", kwargs)
        rows = sorted(self._table(kwargs["TableName"]).items())
        start = kwargs.get("ExclusiveStartKey")
        if start:
            start_key = self._key_of(start)
            rows = [row for row in rows if row[0] > start_key]
        page = rows[: self.scan_page_size]
        resp: Dict[str, Any] = {"Items": [copy.deepcopy(raw) for _, raw in page]}
        if len(rows) > self.scan_page_size:
            resp["LastEvaluatedKey"] = {"id": copy.deepcopy(page[-1][1]["id"])}
        return resp
