"""Error taxonomy shared by services and HTTP routes.

Every error a client can see is an ``ApiError`` carrying the HTTP status it
maps to. Lock contention has no class here: losing a race is reported
through result flags, never raised.
"""


class ApiError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        payload = {'error': self.message}
        if self.retryable:
            payload['retryable'] = True
        return payload


class RequestInvalid(ApiError):
    status_code = 400


class MatchNotFound(ApiError):
    status_code = 404

    def __init__(self, message='Not found'):
        super().__init__(message)


class MatchStateError(ApiError):
    status_code = 400


class SessionInvalid(ApiError):
    status_code = 401

    def __init__(self, message='Invalid/expired session'):
        super().__init__(message)


class SessionWrongMatch(ApiError):
    status_code = 403

    def __init__(self, message='Session not valid for this match'):
        super().__init__(message)


class PaymentVerificationError(ApiError):
    status_code = 400


class PaymentAlreadyUsed(PaymentVerificationError):
    def __init__(self, message='Payment already used'):
        super().__init__(message)


class LedgerError(ApiError):
    status_code = 502
    retryable = True


class InsufficientHouseFunds(LedgerError):
    status_code = 503


class CorruptMatchError(ApiError):
    status_code = 500
