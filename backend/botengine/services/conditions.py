"""Boolean condition trees over indicator snapshots.

A condition group looks like::

    {"type": "AND", "conditions": [
        {"indicator": "rsi", "operator": "LESS_THAN", "value": 30},
        {"indicator": "sma_20", "operator": "CROSS_ABOVE", "value": "sma_50"},
        {"type": "NOT", "conditions": [...]},
    ]}

``value`` is either a number or the name of another indicator.
"""

import logging
from enum import Enum
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

EQUALS_TOLERANCE = 1e-4


class GroupType(str, Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class Operator(str, Enum):
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    EQUALS = "EQUALS"
    CROSS_ABOVE = "CROSS_ABOVE"
    CROSS_BELOW = "CROSS_BELOW"


def _resolve(value: Any, indicators: Mapping[str, float]) -> Optional[float]:
    if isinstance(value, str):
        return indicators.get(value)
    if value is None:
        return None
    return float(value)


def evaluate_condition(
    condition: Mapping[str, Any],
    indicators: Mapping[str, float],
    previous: Optional[Mapping[str, float]] = None,
) -> bool:
    """Evaluate one leaf condition.

    Cross operators need the previous snapshot; without it they are false.
    A missing indicator makes the condition false.
    """
    current = indicators.get(condition.get("indicator"))
    target = _resolve(condition.get("value"), indicators)
    if current is None or target is None:
        return False

    try:
        operator = Operator(str(condition.get("operator", "")).upper())
    except ValueError:
        logger.warning(f"Unknown condition operator: {condition.get('operator')}")
        return False

    if operator == Operator.GREATER_THAN:
        return current > target
    if operator == Operator.LESS_THAN:
        return current < target
    if operator == Operator.EQUALS:
        return abs(current - target) < EQUALS_TOLERANCE

    if not previous:
        return False
    prev_value = previous.get(condition.get("indicator"))
    prev_target = _resolve(condition.get("value"), previous)
    if prev_value is None or prev_target is None:
        return False

    if operator == Operator.CROSS_ABOVE:
        return prev_value <= prev_target and current > target
    return prev_value >= prev_target and current < target


def evaluate_group(
    group: Mapping[str, Any],
    indicators: Mapping[str, float],
    previous: Optional[Mapping[str, float]] = None,
) -> bool:
    """Evaluate an AND/OR/NOT group, recursing into nested groups.

    NOT negates the conjunction of its members. An unknown group type is false.
    """
    results = []
    for item in group.get("conditions") or []:
        if "conditions" in item:
            results.append(evaluate_group(item, indicators, previous))
        else:
            results.append(evaluate_condition(item, indicators, previous))

    try:
        group_type = GroupType(str(group.get("type", "AND")).upper())
    except ValueError:
        logger.warning(f"Unknown condition group type: {group.get('type')}")
        return False

    if group_type == GroupType.AND:
        return all(results)
    if group_type == GroupType.OR:
        return any(results)
    return not all(results)
