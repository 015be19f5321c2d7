"""
Error Taxonomy Module

Every failure the engine reports carries a machine-readable kind and a
retriable flag so the calling layer can decide between surfacing the
error to the user and retrying after a reload.
"""

from typing import Any, Dict


class LoanEngineError(Exception):
    """Base exception for all loan engine errors"""

    kind = "internal_error"
    retriable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Structured form used by the API layer"""
        return {
            "error": self.kind,
            "message": self.message,
            "retriable": self.retriable,
        }


class NotFoundError(LoanEngineError):
    """Referenced loan or installment does not exist"""

    kind = "not_found"


class LoanNotFoundError(NotFoundError):
    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found")
        self.loan_id = loan_id


class InstallmentNotFoundError(NotFoundError):
    def __init__(self, installment_id: str):
        super().__init__(f"Installment {installment_id} not found")
        self.installment_id = installment_id


class InvalidStateError(LoanEngineError):
    """Operation attempted on a loan or installment in the wrong state"""

    kind = "invalid_state"


class LoanClosedError(InvalidStateError):
    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} is closed")
        self.loan_id = loan_id


class NoPendingInstallmentsError(InvalidStateError):
    def __init__(self, loan_id: str):
        super().__init__(f"No pending installments found for loan {loan_id}")
        self.loan_id = loan_id


class InstallmentNotPendingError(InvalidStateError):
    def __init__(self, installment_id: str, status: str):
        super().__init__(f"Installment {installment_id} is {status}, expected pending")
        self.installment_id = installment_id
        self.status = status


class AlreadyPaidError(InstallmentNotPendingError):
    def __init__(self, installment_id: str):
        super().__init__(installment_id, "paid")
        self.message = f"Installment {installment_id} is already marked as paid"
        self.args = (self.message,)


class OutOfOrderPaymentError(InvalidStateError):
    """Installments are settled strictly in sequence order"""

    def __init__(self, installment_id: str, sequence: int, next_sequence: int):
        super().__init__(
            f"Installment #{sequence} cannot be paid before installment #{next_sequence}"
        )
        self.installment_id = installment_id
        self.sequence = sequence
        self.next_sequence = next_sequence


class InvalidInputError(LoanEngineError, ValueError):
    """Caller supplied values the engine cannot act on"""

    kind = "invalid_input"


class ExceedsOutstandingError(InvalidInputError):
    def __init__(self, amount, outstanding):
        super().__init__(
            f"Part-payment amount {amount} exceeds outstanding principal {outstanding}"
        )
        self.amount = amount
        self.outstanding = outstanding


class NonAmortizingInstallmentError(InvalidInputError):
    """The installment never covers the interest, so the tenure is infinite"""

    def __init__(self, installment, interest):
        super().__init__(
            f"Installment {installment} does not exceed periodic interest {interest}"
        )
        self.installment = installment
        self.interest = interest


class ConcurrencyConflictError(LoanEngineError):
    """Lost a per-loan mutation race; reload and retry"""

    kind = "concurrency_conflict"
    retriable = True


class StorageFailureError(LoanEngineError):
    """Underlying persistence is unavailable"""

    kind = "storage_failure"
    retriable = True
