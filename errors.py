# errors.py
"""Domain errors raised by the workflows.

Each class carries the HTTP status the adapter in ``main.py`` answers with, so
the routes never translate errors one by one.
"""


class InsuranceError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# ---------- Caller errors ----------
class ValidationError(InsuranceError):
    status_code = 400


class InvalidAmount(ValidationError):
    pass


class SignatureInvalid(ValidationError):
    pass


class AuthorizationError(InsuranceError):
    status_code = 403


class Forbidden(AuthorizationError):
    pass


class NotFoundError(InsuranceError):
    status_code = 404


class NotFound(NotFoundError):
    pass


class ConflictError(InsuranceError):
    status_code = 409


class AlreadyPaid(ConflictError):
    pass


class AlreadyApproved(ConflictError):
    pass


# ---------- Environment errors ----------
class UpstreamError(InsuranceError):
    status_code = 500


class GatewayError(UpstreamError):
    pass


class EmailError(UpstreamError):
    pass


class ConfigurationError(InsuranceError):
    status_code = 500


class Unconfigured(ConfigurationError):
    pass
