"""
Typed outcomes of the loan engine.

Every failed operation raises exactly one of these. `code` is the stable
identifier clients switch on, `status_code` is what the HTTP layer answers with.
"""


class EngineError(Exception):
    code = "ENGINE_ERROR"
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(EngineError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidArgument(EngineError):
    code = "INVALID_ARGUMENT"
    status_code = 400


class InvalidState(EngineError):
    code = "INVALID_STATE"
    status_code = 409


class Conflict(EngineError):
    code = "CONFLICT"
    status_code = 409


class InsufficientStock(Conflict):
    code = "INSUFFICIENT_STOCK"


class TransientStorageFailure(EngineError):
    code = "STORAGE_UNAVAILABLE"
    status_code = 503
