"""Exceptions raised by the store, scheduler and service layers."""


class YwinbyError(Exception):
    pass


class ValidationError(YwinbyError, ValueError):
    """Bad message parameters, rejected before anything is persisted."""


class NotFound(YwinbyError):
    pass


class Forbidden(YwinbyError):
    pass


class StorageError(YwinbyError):
    """Backend I/O failure."""


class DeliveryError(YwinbyError):
    """Push transport failure. The scheduler retries on its next cycle."""


class Busy(YwinbyError):
    """A scheduler run is already in progress."""


class AuthError(YwinbyError):
    pass
