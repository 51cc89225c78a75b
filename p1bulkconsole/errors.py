# PingOne Bulk Console - Errors
# Last Update: October 19, 2026


class P1Error(Exception):
    # *********
    # Base class for every error raised by the console.
    # *********
    pass


class AuthError(P1Error):
    # *********
    # The worker token could not be obtained.
    # status is the HTTP status from the token endpoint, or None when PingOne could not be reached.
    # transient errors (network, 429, 5xx) may be retried once, bad credentials may not.
    # *********
    def __init__(self, message, status=None, transient=False, detail=None):
        super().__init__(message)
        self.status = status
        self.transient = transient
        self.detail = detail

    @property
    def badCredentials(self):
        return self.status is not None and 400 <= self.status < 500 and self.status != 429


class NetworkError(P1Error):
    pass


class MappingError(P1Error):
    # *********
    # A CSV row could not be turned into a record.
    # *********
    def __init__(self, reason, row=None):
        super().__init__(reason)
        self.reason = reason
        self.row = row


class NotFoundError(P1Error):
    pass


class RateLimitError(P1Error):
    def __init__(self, message, retryAfter=None, detail=None):
        super().__init__(message)
        self.retryAfter = retryAfter
        self.detail = detail


class OperationInProgressError(P1Error):
    def __init__(self, operationKind):
        super().__init__(f"A {operationKind} operation is already in progress.")
        self.operationKind = operationKind


class ConfigError(P1Error):
    pass
