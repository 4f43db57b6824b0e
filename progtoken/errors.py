from __future__ import annotations


class ProgTokenError(Exception):
    pass


class ValidationError(ProgTokenError):
    """The ledger refused a transaction for a structural or balance defect."""


class EngineRejected(ValidationError):
    """A spending validator or minting policy evaluated to false.

    Not retryable: the transaction content itself violates a policy predicate.
    """

    def __init__(self, message: str, script_hash: str = "", purpose: str = ""):
        super().__init__(message)
        self.script_hash = script_hash
        self.purpose = purpose


class Conflict(ValidationError):
    """A spent or referenced output is no longer live."""


class StaleRead(Conflict):
    pass


class NotFound(ProgTokenError):
    pass


class NoProofFound(NotFound):
    pass


class RecordNotFound(NotFound):
    pass


class DuplicateRecord(NotFound):
    """More than one live Policy Record carries the same validity marker."""


class Unauthorized(ProgTokenError):
    pass


class SelectionError(ProgTokenError):
    pass


class InsufficientBalance(SelectionError):
    pass


class AmountTooSmall(SelectionError):
    pass


class BalancingError(ProgTokenError):
    pass


class UnknownTemplate(ProgTokenError):
    pass


class ScriptFailure(ProgTokenError):
    pass


class DatumError(ProgTokenError):
    pass


RETRYABLE_ERRORS = (Conflict,)
