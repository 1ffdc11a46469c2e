from typing import Optional


class PayoutServiceError(Exception):
    pass


class ValidationError(PayoutServiceError):
    pass


class MissingPartnerIdentifier(ValidationError):
    def __init__(self, names: list[str]):
        self.names = names
        super().__init__(
            f"Missing partner IDs for participants: {', '.join(names)}. Please select valid partners."
        )

    @property
    def name(self) -> str:
        return self.names[0] if self.names else "Unknown"


class SplitTotalError(ValidationError):
    def __init__(self, total, expected: str):
        self.total = total
        super().__init__(f"Total split ({total}%) {expected}")


class InvalidStateTransitionError(ValidationError):
    pass


class NotFoundError(PayoutServiceError):
    pass


class DealNotFoundError(NotFoundError):
    pass


class EventNotFoundError(NotFoundError):
    pass


class PayoutNotFoundError(NotFoundError):
    pass


class AdjustmentNotFoundError(NotFoundError):
    pass


class ConflictError(PayoutServiceError):
    pass


class MerchantIdConflictError(ConflictError):
    def __init__(self, mid: str, existing_deal_id: Optional[str]):
        self.mid = mid
        self.existing_deal_id = existing_deal_id
        super().__init__(
            f"A deal already exists with MID {mid} ({existing_deal_id}). Delete or merge that deal first."
        )


class ExternalLedgerError(PayoutServiceError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ExternalLedgerNotConfigured(ExternalLedgerError):
    def __init__(self):
        super().__init__("External ledger not configured")


class StorageError(PayoutServiceError):
    pass
