class LedgerError(Exception):
    """Base class for every error the ledger core reports to its callers."""


class ValidationError(LedgerError, ValueError):
    """Malformed input or a missing reference; raised before any state changes."""


class NotFoundError(LedgerError, ValueError):
    def __init__(self, kind: str, entity_id: object) -> None:
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class PersistenceError(LedgerError, RuntimeError):
    """Serialization or storage write failed. In-memory state was rolled back."""


class RuleArithmeticError(LedgerError, ArithmeticError):
    """Calendar arithmetic could not produce a date for a recurrence rule."""
