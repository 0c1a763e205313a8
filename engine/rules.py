import re
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from engine.errors import RuleValidationError

MAX_FLATTEN_DEPTH = 8


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


COMPARISON_OPS = {Operator.GREATER_THAN, Operator.LESS_THAN, Operator.GREATER_EQUAL, Operator.LESS_EQUAL}
TEXT_OPS = {Operator.CONTAINS, Operator.NOT_CONTAINS, Operator.STARTS_WITH, Operator.ENDS_WITH}
MEMBERSHIP_OPS = {Operator.IN, Operator.NOT_IN}
EXISTENCE_OPS = {Operator.EXISTS, Operator.NOT_EXISTS}


@lru_cache(maxsize=1024)
def compile_pattern(pattern: str) -> "re.Pattern[str]":
    """Compile a rule regex once; every later evaluation reuses the cached pattern."""
    return re.compile(pattern, re.IGNORECASE)


def as_number(value: Any) -> Optional[float]:
    """Numbers and numeric strings compare numerically; booleans never do."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


class Condition(BaseModel):
    """One `field op value` predicate. Validated when the rule is loaded, not when it runs."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    field: str = Field(min_length=1)
    op: Operator
    value: Any = None

    @model_validator(mode="after")
    def _check_operand(self) -> "Condition":
        if self.op in MEMBERSHIP_OPS and not isinstance(self.value, (list, tuple, set, frozenset)):
            raise ValueError(f"'{self.op.value}' needs a list value, got {type(self.value).__name__}")
        if self.op in COMPARISON_OPS and as_number(self.value) is None:
            raise ValueError(f"'{self.op.value}' needs a numeric value, got {self.value!r}")
        if self.op in TEXT_OPS and is_missing(self.value):
            raise ValueError(f"'{self.op.value}' needs a non-empty value")
        if self.op is Operator.REGEX:
            if not isinstance(self.value, str) or not self.value:
                raise ValueError("'regex' needs a pattern string")
            try:
                compile_pattern(self.value)
            except re.error as e:
                raise ValueError(f"invalid regex {self.value!r}: {e}")
        return self

    def describe(self) -> str:
        return f"{self.field} {self.op.value} {self.value!r}"


ConditionLike = Union[Condition, Mapping[str, Any]]


def parse_condition(raw: ConditionLike) -> Condition:
    """Validate a raw condition dict, raising RuleValidationError on anything malformed."""
    if isinstance(raw, Condition):
        return raw
    try:
        return Condition.model_validate(raw)
    except ValidationError as e:
        raise RuleValidationError(f"Invalid condition {raw!r}: {e.errors()[0].get('msg')}") from e


def flatten_lead(record: Mapping[str, Any], max_depth: int = MAX_FLATTEN_DEPTH) -> Dict[str, Any]:
    """
    Flatten a lead record to dotted paths.

    Nested mappings are kept under their own path as well as expanded, so
    `fields.enrichment` and `fields.enrichment.companySize` both resolve.
    Self-referencing structures and anything deeper than `max_depth` are cut off.
    """
    flat: Dict[str, Any] = {}

    def walk(prefix: str, node: Mapping[str, Any], depth: int, seen: frozenset) -> None:
        for key, value in node.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            flat[path] = value
            if isinstance(value, Mapping) and depth < max_depth and id(value) not in seen:
                walk(path, value, depth + 1, seen | {id(value)})

    if record:
        walk("", record, 1, frozenset({id(record)}))
    return flat


def _text(value: Any) -> str:
    return str(value).lower()


def _equals(value: Any, target: Any) -> bool:
    if as_number(target) is not None and not isinstance(target, str):
        number = as_number(value)
        return number is not None and number == as_number(target)
    return value == target


def _contains(value: Any, target: Any) -> bool:
    needle = _text(target)
    if isinstance(value, (list, tuple, set, frozenset)):
        return any(_text(item) == needle for item in value)
    return needle in _text(value)


def _apply(op: Operator, value: Any, target: Any) -> bool:
    if op is Operator.EQUALS:
        return _equals(value, target)
    if op is Operator.NOT_EQUALS:
        return not _equals(value, target)
    if op in COMPARISON_OPS:
        left, right = as_number(value), as_number(target)
        if left is None or right is None:
            return False
        if op is Operator.GREATER_THAN:
            return left > right
        if op is Operator.LESS_THAN:
            return left < right
        if op is Operator.GREATER_EQUAL:
            return left >= right
        return left <= right
    if op is Operator.CONTAINS:
        return _contains(value, target)
    if op is Operator.NOT_CONTAINS:
        return not _contains(value, target)
    if op is Operator.STARTS_WITH:
        return _text(value).startswith(_text(target))
    if op is Operator.ENDS_WITH:
        return _text(value).endswith(_text(target))
    if op is Operator.REGEX:
        return isinstance(value, str) and compile_pattern(target).search(value) is not None
    if op is Operator.IN:
        return value in target
    if op is Operator.NOT_IN:
        return value not in target
    raise RuleValidationError(f"Unsupported operator {op!r}")


def evaluate(condition: ConditionLike, record: Mapping[str, Any]) -> bool:
    """
    Evaluate one condition against a flattened lead record.

    Missing fields only satisfy `not_exists`. A malformed condition, or one
    whose operand cannot be compared at runtime, is logged and treated as a
    non-match; evaluation never raises.
    """
    try:
        parsed = parse_condition(condition)
    except RuleValidationError as e:
        logger.warning(f"Skipping malformed condition: {e}")
        return False

    value = record.get(parsed.field)
    present = not is_missing(value)
    if parsed.op is Operator.EXISTS:
        return present
    if parsed.op is Operator.NOT_EXISTS:
        return not present
    if not present:
        return False

    try:
        return _apply(parsed.op, value, parsed.value)
    except (TypeError, ValueError, re.error) as e:
        logger.warning(f"Condition '{parsed.describe()}' failed on value {value!r}: {e}")
        return False


def evaluate_any(conditions: Iterable[ConditionLike], record: Mapping[str, Any]) -> bool:
    """OR-combination used by scoring IF_THEN rules. An empty list never matches."""
    return any(evaluate(condition, record) for condition in conditions)


def evaluate_all(conditions: Iterable[ConditionLike], record: Mapping[str, Any]) -> bool:
    """AND-combination used by routing rules. An empty list always matches."""
    return all(evaluate(condition, record) for condition in conditions)
