"""
Domain error taxonomy for the ledger services.

Services raise these; the API layer maps them to HTTP status codes:
- NotFoundError                -> 404
- ForbiddenError               -> 403
- ValidationFailure            -> 400
- ConcurrentModificationError  -> 409
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for ledger domain errors"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(LedgerError):
    """Referenced entity is absent (or its identifier is malformed)"""

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class ForbiddenError(LedgerError):
    """Role or ownership check failed"""

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message)


class ValidationFailure(LedgerError):
    """Missing or invalid input"""
    pass


class DisbursementCeilingError(ValidationFailure):
    """Disbursement would push the project past its requested amount"""

    def __init__(self, project_id: str, total_disbursed: float, amount: float, ceiling: float):
        self.project_id = project_id
        self.total_disbursed = total_disbursed
        self.amount = amount
        self.ceiling = ceiling
        super().__init__(
            f"Disbursing {amount} would bring project {project_id} to "
            f"{total_disbursed + amount}, above its requested amount of {ceiling}"
        )


class ConcurrentModificationError(LedgerError):
    """Optimistic version check failed: the document changed since it was read"""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} {entity_id} was modified concurrently. Reload and retry."
        )
