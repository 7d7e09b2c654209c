"""
Engine Error Type.

A single exception type carries every failure the personalization engine
can raise. The failure family is a machine-readable ``ErrorKind`` rather
than a subclass, so callers branch on ``error.kind`` and the public
surface renders any failure with ``error.to_response()``.

Kinds:
- validation: bad vector dimension, out-of-range score, invalid parameter
- recommendation: no candidates available for a request
- training: insufficient data, cancelled or timed-out job, bad transition
- profile_update: computation or persistence failure applying an interaction

Example:
    >>> from recsys.personalization.errors import EngineError, ErrorKind
    >>> try:
    ...     raise EngineError.invalid_parameter('limit', 0, 'limit > 0')
    ... except EngineError as e:
    ...     assert e.kind is ErrorKind.VALIDATION
"""

from typing import Any, Dict, Optional
from enum import Enum


class ErrorKind(str, Enum):
    """Failure family of an EngineError."""
    VALIDATION = 'validation'
    RECOMMENDATION = 'recommendation'
    TRAINING = 'training'
    PROFILE_UPDATE = 'profile_update'


# Severity and HTTP status per kind
SEVERITY = {
    ErrorKind.VALIDATION: 'low',
    ErrorKind.RECOMMENDATION: 'medium',
    ErrorKind.TRAINING: 'high',
    ErrorKind.PROFILE_UPDATE: 'high',
}

HTTP_STATUS = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.RECOMMENDATION: 404,
    ErrorKind.TRAINING: 409,
    ErrorKind.PROFILE_UPDATE: 500,
}

DEFAULT_CODES = {
    ErrorKind.VALIDATION: 'VALIDATION_ERROR',
    ErrorKind.RECOMMENDATION: 'RECOMMENDATION_ERROR',
    ErrorKind.TRAINING: 'TRAINING_ERROR',
    ErrorKind.PROFILE_UPDATE: 'PROFILE_UPDATE_ERROR',
}


class EngineError(Exception):
    """
    Tagged engine failure.

    Attributes:
        kind: ErrorKind of the failure
        message: Human readable message
        code: Machine readable error code (e.g. 'NO_CANDIDATES')
        context: Structured details (offending field, counts, ids)
        cause: Underlying exception, if any
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.code = code or DEFAULT_CODES[self.kind]
        self.context = dict(context or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    @property
    def severity(self) -> str:
        return SEVERITY[self.kind]

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_response(self) -> Dict[str, Any]:
        """Structured error body for the public surface."""
        body = {
            'success': False,
            'error': self.message,
            'error_code': self.code,
            'kind': self.kind.value,
            'severity': self.severity,
            'context': _jsonable(self.context),
        }
        if self.cause is not None:
            body['cause'] = f"{type(self.cause).__name__}: {self.cause}"
        return body

    def __repr__(self) -> str:
        return f"EngineError(kind={self.kind.value!r}, code={self.code!r}, message={self.message!r})"

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @classmethod
    def invalid_parameter(
        cls,
        name: str,
        value: Any,
        constraint: str
    ) -> 'EngineError':
        return cls(
            ErrorKind.VALIDATION,
            f"Invalid parameter '{name}': expected {constraint}, got {value!r}",
            code='INVALID_PARAMETER',
            context={'field': name, 'value': value, 'constraint': constraint}
        )

    @classmethod
    def invalid_dimension(
        cls,
        field: str,
        expected: int,
        actual: int
    ) -> 'EngineError':
        return cls(
            ErrorKind.VALIDATION,
            f"Invalid vector '{field}': expected dimension {expected}, got {actual}",
            code='INVALID_DIMENSION',
            context={'field': field, 'expected': expected, 'actual': actual}
        )

    @classmethod
    def score_out_of_range(
        cls,
        field: str,
        value: float,
        min_value: float,
        max_value: float
    ) -> 'EngineError':
        return cls(
            ErrorKind.VALIDATION,
            f"Score '{field}' = {value!r} outside [{min_value}, {max_value}]",
            code='SCORE_OUT_OF_RANGE',
            context={'field': field, 'value': value, 'min': min_value, 'max': max_value}
        )

    # ------------------------------------------------------------------
    # Recommendation
    # ------------------------------------------------------------------

    @classmethod
    def no_candidates(cls, session_id: str, **context: Any) -> 'EngineError':
        return cls(
            ErrorKind.RECOMMENDATION,
            'No candidates available for this request; show a default listing instead.',
            code='NO_CANDIDATES',
            context={'session_id': session_id, **context}
        )

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    @classmethod
    def insufficient_data(
        cls,
        data_type: str,
        required: int,
        actual: int,
        mode: Optional[str] = None
    ) -> 'EngineError':
        return cls(
            ErrorKind.TRAINING,
            f"Insufficient {data_type} for training: required {required}, found {actual}",
            code='INSUFFICIENT_DATA',
            context={'data_type': data_type, 'required': required, 'actual': actual, 'mode': mode}
        )

    @classmethod
    def training_aborted(cls, job_id: str, reason: str) -> 'EngineError':
        code = 'TRAINING_TIMEOUT' if reason == 'timeout' else 'TRAINING_CANCELLED'
        return cls(
            ErrorKind.TRAINING,
            f"Training job {job_id} aborted: {reason}",
            code=code,
            context={'job_id': job_id, 'reason': reason}
        )

    @classmethod
    def invalid_transition(cls, job_id: str, current: str, target: str) -> 'EngineError':
        return cls(
            ErrorKind.TRAINING,
            f"Training job {job_id} cannot move from {current} to {target}",
            code='INVALID_TRANSITION',
            context={'job_id': job_id, 'from': current, 'to': target}
        )

    # ------------------------------------------------------------------
    # Profile update
    # ------------------------------------------------------------------

    @classmethod
    def profile_update_failed(
        cls,
        session_id: str,
        cause: BaseException,
        **context: Any
    ) -> 'EngineError':
        return cls(
            ErrorKind.PROFILE_UPDATE,
            f"Failed to update profile for session {session_id}: {cause}",
            code='PROFILE_UPDATE_FAILED',
            context={'session_id': session_id, **context},
            cause=cause
        )


def _jsonable(value: Any) -> Any:
    """Convert context values to JSON-friendly primitives."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if hasattr(value, 'tolist'):
        return value.tolist()
    return repr(value)
