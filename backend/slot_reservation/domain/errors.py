class DomainError(Exception):
    """Base class for failures that map onto a specific client-visible outcome."""


class NotAuthorizedError(DomainError):
    """The caller does not own the resource."""


class NotFoundError(DomainError):
    pass


class SlotNotFoundError(NotFoundError):
    pass


class ReservationNotFoundError(NotFoundError):
    pass


class ServiceNotFoundError(NotFoundError):
    pass


class ProviderNotFoundError(NotFoundError):
    pass


class StateConflictError(DomainError):
    pass


class SlotNotAvailableError(StateConflictError):
    """Another hold exists or the slot is already booked."""


class SlotBusyError(SlotNotAvailableError):
    """A concurrent reservation attempt holds the slot lock."""


class ReservationNotHeldError(StateConflictError):
    pass


class DuplicateSlotError(StateConflictError):
    pass


class ExpiredError(DomainError):
    pass


class ReservationExpiredError(ExpiredError):
    pass


class PaymentProcessorError(DomainError):
    pass


class SignatureInvalidError(DomainError):
    pass


class QueueUnavailableError(DomainError):
    pass
