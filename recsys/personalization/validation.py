"""
Validation Guard.

Checks vectors, scores and algorithm parameters before they enter the
pipeline. Every failure is raised as an ``EngineError`` of kind
``validation``; conversion errors and predicate exceptions are translated,
so a guard never leaks an unrelated exception type.

Example:
    >>> from recsys.personalization.validation import validate_vector
    >>> v = validate_vector([0.1, 0.2, 0.3], expected_dim=3)
"""

from typing import Any, Callable, Iterable, Optional
import math

import numpy as np

from .errors import EngineError

ALGORITHMS = ('content', 'collaborative', 'popularity', 'hybrid')
TRAINING_MODES = ('full', 'incremental')
INTERACTION_TYPES = (
    'view', 'click', 'like', 'dislike', 'share', 'dwell',
    'comment', 'bookmark', 'recommendation_click',
)
FEEDBACK_TYPES = ('helpful', 'not_helpful', 'not_interested', 'irrelevant', 'inappropriate')


# ============================================================================
# Core Guards
# ============================================================================

def validate_vector(
    v: Any,
    expected_dim: int,
    field: str = 'vector'
) -> np.ndarray:
    """
    Validate a numeric vector.

    Args:
        v: Sequence of floats or 1-D array
        expected_dim: Required length
        field: Field name used in the error

    Returns:
        Vector as float64 numpy array

    Raises:
        EngineError: (validation) empty, wrong length, non-numeric or non-finite
    """
    try:
        arr = np.asarray(v, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise EngineError.invalid_parameter(field, _preview(v), 'a numeric vector') from e

    if arr.ndim != 1:
        raise EngineError.invalid_parameter(field, _preview(v), 'a 1-D vector')
    if arr.size == 0:
        raise EngineError.invalid_dimension(field, expected_dim, 0)
    if arr.size != expected_dim:
        raise EngineError.invalid_dimension(field, expected_dim, int(arr.size))
    if not np.all(np.isfinite(arr)):
        raise EngineError.invalid_parameter(field, _preview(v), 'finite values')

    return arr


def validate_score(
    s: Any,
    min_value: float = 0.0,
    max_value: float = 1.0,
    field: str = 'score'
) -> float:
    """Validate that ``s`` is a finite number inside [min_value, max_value]."""
    try:
        value = float(s)
    except (TypeError, ValueError) as e:
        raise EngineError.invalid_parameter(field, s, 'a number') from e

    if math.isnan(value) or value < min_value or value > max_value:
        raise EngineError.score_out_of_range(field, value, min_value, max_value)

    return value


def validate_parameter(
    name: str,
    value: Any,
    predicate: Callable[[Any], bool],
    constraint: str = 'a valid value'
) -> Any:
    """
    Validate a named parameter with a predicate.

    Args:
        name: Parameter name
        value: Parameter value
        predicate: Returns True when the value is acceptable
        constraint: Human description of the expected constraint

    Returns:
        The value, unchanged
    """
    try:
        ok = bool(predicate(value))
    except Exception as e:
        raise EngineError.invalid_parameter(name, value, constraint) from e

    if not ok:
        raise EngineError.invalid_parameter(name, value, constraint)

    return value


# ============================================================================
# Parameter Helpers
# ============================================================================

def validate_algorithm(algorithm: Any, allowed: Iterable[str] = ALGORITHMS) -> str:
    allowed = tuple(allowed)
    return validate_parameter(
        'algorithm', algorithm, lambda a: a in allowed,
        f"one of {', '.join(allowed)}"
    )


def validate_diversity_boost(value: Any) -> float:
    validate_parameter(
        'diversity_boost', value, _is_number, 'a number in [0, 1]'
    )
    return validate_score(value, 0.0, 1.0, field='diversity_boost')


def validate_limit(value: Any, max_limit: Optional[int] = None) -> int:
    constraint = 'an integer > 0' if max_limit is None else f'an integer in [1, {max_limit}]'
    return validate_parameter(
        'limit', value,
        lambda x: _is_int(x) and x > 0 and (max_limit is None or x <= max_limit),
        constraint
    )


def validate_mode(mode: Any, allowed: Iterable[str] = TRAINING_MODES) -> str:
    allowed = tuple(allowed)
    return validate_parameter(
        'mode', mode, lambda m: m in allowed, f"one of {', '.join(allowed)}"
    )


def validate_k(k: Any) -> Optional[int]:
    """``k`` is a positive integer, or None to use the sqrt heuristic."""
    if k is None:
        return None
    return validate_parameter('k', k, lambda x: _is_int(x) and x > 0, 'a positive integer or unset')


def validate_interaction_type(interaction_type: Any) -> str:
    return validate_parameter(
        'type', interaction_type, lambda t: t in INTERACTION_TYPES,
        f"one of {', '.join(INTERACTION_TYPES)}"
    )


def validate_feedback_type(feedback_type: Any) -> str:
    return validate_parameter(
        'feedback_type', feedback_type, lambda t: t in FEEDBACK_TYPES,
        f"one of {', '.join(FEEDBACK_TYPES)}"
    )


def validate_session_id(session_id: Any) -> str:
    return validate_parameter(
        'session_id', session_id,
        lambda s: isinstance(s, str) and 0 < len(s.strip()) <= 255,
        'a non-empty string of at most 255 characters'
    )


def validate_item_id(item_id: Any, field: str = 'item_id') -> int:
    return validate_parameter(field, item_id, lambda x: _is_int(x) and x >= 0, 'a non-negative integer')


def _is_int(x: Any) -> bool:
    return isinstance(x, (int, np.integer)) and not isinstance(x, bool)


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float, np.integer, np.floating)) and not isinstance(x, bool)


def _preview(v: Any) -> Any:
    text = repr(v)
    return text if len(text) <= 80 else text[:77] + '...'
