"""Engine error taxonomy.

Every error carries a short code so CLI output and JSON reports can be
matched without parsing messages:

- E1xx ValidationError: bad input, raised before any mutation
- E2xx ResolutionError: unresolved/cyclic expressions, raised before planning
- E3xx LockError: contention or loss of the stack lock
- E4xx ProviderError: a single resource's provider call failed
- E5xx ConsistencyError: state store write rejected (stale version/token)
"""

from typing import Any, Optional


class EngineError(Exception):
    """Base exception for engine errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


# -----------------------------------------------------------------------------
# Validation (E1xx)
# -----------------------------------------------------------------------------

class ValidationError(EngineError):
    """Invalid input detected before any side effect."""


class TemplateError(ValidationError):
    """Template structure is invalid."""

    def __init__(self, message: str):
        super().__init__("E101", message)


class ParameterValidationError(ValidationError):
    """A parameter value violates its declared constraint."""

    def __init__(self, parameter: str, constraint: str, detail: str):
        self.parameter = parameter
        self.constraint = constraint
        super().__init__("E102", f"Parameter '{parameter}' failed {constraint}: {detail}")


# -----------------------------------------------------------------------------
# Resolution (E2xx)
# -----------------------------------------------------------------------------

class ResolutionError(EngineError):
    """Expression or graph could not be resolved."""


class UnresolvedReferenceError(ResolutionError):
    """Reference targets a name that does not exist."""

    def __init__(self, name: str, source: Optional[str] = None):
        self.name = name
        self.source = source
        where = f" (in {source})" if source else ""
        super().__init__("E201", f"Unresolved reference '{name}'{where}")


class CyclicConditionError(ResolutionError):
    """Condition evaluation recursed into itself."""

    def __init__(self, chain: list[str]):
        self.chain = list(chain)
        super().__init__("E202", f"Cyclic condition: {' -> '.join(chain)}")


class UnknownPlaceholderError(ResolutionError):
    """Fn::Sub placeholder not found in scope."""

    def __init__(self, placeholder: str, source: Optional[str] = None):
        self.placeholder = placeholder
        where = f" (in {source})" if source else ""
        super().__init__("E203", f"Unknown placeholder '${{{placeholder}}}'{where}")


class UnknownConditionError(ResolutionError):
    """Fn::If or Condition names a condition that is not declared."""

    def __init__(self, name: str):
        self.name = name
        super().__init__("E204", f"Unknown condition '{name}'")


class ExpressionError(ResolutionError):
    """Intrinsic function used with malformed arguments."""

    def __init__(self, message: str):
        super().__init__("E205", message)


class CyclicDependencyError(ResolutionError):
    """Resource references form a cycle; no valid order exists."""

    def __init__(self, members: list[str]):
        self.members = sorted(members)
        super().__init__("E206", f"Cyclic dependency between resources: {', '.join(self.members)}")


# -----------------------------------------------------------------------------
# Locking (E3xx)
# -----------------------------------------------------------------------------

class LockError(EngineError):
    """Stack lock contention or loss."""


class LockHeldError(LockError):
    """Lock is held by another holder and has not expired."""

    def __init__(self, holder: str, acquired_at: Optional[float] = None,
                 token: Optional[int] = None):
        self.holder = holder
        self.acquired_at = acquired_at
        self.token = token
        super().__init__("E301", f"Lock held by '{holder}' (token {token})")


class LockLostError(LockError):
    """Our lock was reclaimed or released by someone else."""

    def __init__(self, expected_token: int, current: Optional[dict[str, Any]] = None):
        self.expected_token = expected_token
        self.current = current or {}
        holder = self.current.get('holder', 'nobody')
        super().__init__(
            "E302",
            f"Lock token {expected_token} no longer valid (current holder: {holder})",
        )


# -----------------------------------------------------------------------------
# Providers (E4xx)
# -----------------------------------------------------------------------------

class ProviderError(EngineError):
    """A provider call for one resource failed."""

    def __init__(self, message: str, logical_id: Optional[str] = None, code: str = "E401"):
        self.logical_id = logical_id
        super().__init__(code, message)


class ProviderNotFoundError(ProviderError):
    """No provider registered for a resource type."""

    def __init__(self, resource_type: str):
        self.resource_type = resource_type
        super().__init__(f"No provider registered for type '{resource_type}'", code="E402")


# -----------------------------------------------------------------------------
# Consistency (E5xx)
# -----------------------------------------------------------------------------

class ConsistencyError(EngineError):
    """State store rejected a write."""


class OptimisticLockConflictError(ConsistencyError):
    """Record version did not match the caller's expectation."""

    def __init__(self, key: str, expected: int, actual: int):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            "E501",
            f"Version conflict on '{key}': expected {expected}, found {actual}",
        )


class StaleFencingTokenError(ConsistencyError):
    """Write carried a fencing token older than the current lock epoch."""

    def __init__(self, key: str, token: int, current: Optional[int]):
        self.key = key
        self.token = token
        self.current = current
        super().__init__(
            "E502",
            f"Stale fencing token {token} for '{key}' (current: {current})",
        )


class StalePlanError(ConsistencyError):
    """Saved plan was computed against a different state version."""

    def __init__(self, planned: int, actual: int):
        self.planned = planned
        self.actual = actual
        super().__init__(
            "E503",
            f"Plan was computed against state version {planned}, "
            f"but state is now at version {actual}; re-run plan",
        )


class StoreUnavailableError(ConsistencyError):
    """State store could not be read or written."""

    def __init__(self, key: str, detail: str):
        self.key = key
        super().__init__("E504", f"State store unavailable for '{key}': {detail}")
