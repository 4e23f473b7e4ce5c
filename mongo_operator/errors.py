"""Error taxonomy for the MongoDB operator.

Every error carries a machine-readable ``reason`` that ends up in the
cluster status conditions, next to the human-readable message.
"""

from typing import Optional


class OperatorError(Exception):
    """Base class for all operator errors."""

    reason: str = "OperatorError"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason


class ValidationError(OperatorError):
    """A semantic invariant of the desired spec is violated.

    The pass aborts before any mutation and the status is set to Error.
    """

    reason = "ValidationFailed"


class TransientInfraError(OperatorError):
    """Platform, network or timeout failure. Retried through requeue."""

    reason = "TransientFailure"


class StaleResourceError(TransientInfraError):
    """A conditional update was rejected because the read was stale."""

    reason = "Conflict"


class QuorumRiskError(OperatorError):
    """An action would drop a replica set below safe quorum.

    Never retried automatically; requires operator intervention.
    """

    reason = "QuorumRisk"

    def __init__(self, message: str, replset: str, member: Optional[str] = None):
        super().__init__(message)
        self.replset = replset
        self.member = member


class AgentError(OperatorError):
    """The backup agent reported a failure."""

    reason = "AgentFailed"


class RestoreError(OperatorError):
    """A restore request cannot be satisfied."""

    reason = "RestoreFailed"


class NoBaseBackupError(RestoreError):
    """No completed base backup exists at or before the requested target."""

    reason = "NoBaseBackup"


class IncrementGapError(RestoreError):
    """The incremental chain between base backup and target has a hole."""

    reason = "IncrementGap"


class PassAbandoned(OperatorError):
    """The cluster resource is being deleted; no new mutations may start."""

    reason = "PassAbandoned"
