"""Exception taxonomy shared by the sync pipeline and the budget engine."""


class FinanceTrackerError(Exception):
    """Base application error."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class ProviderError(FinanceTrackerError):
    """A call to the account-aggregation provider failed."""

    def __init__(self, detail: str, status_code: int | None = None, error_code: str | None = None):
        super().__init__(detail)
        self.status_code = status_code
        self.error_code = error_code


class ProviderTransientError(ProviderError):
    """Network failure, timeout, rate limit or provider outage. Safe to retry."""


class ProviderPermanentError(ProviderError):
    """Invalid credential or malformed request. Never retried."""


class ProviderConfigurationError(ProviderError):
    """Provider credentials are not configured."""


class ValidationError(FinanceTrackerError):
    """Budget input failed validation."""

    def __init__(self, detail: str = "Validation failed", errors: list[str] | None = None):
        super().__init__(detail)
        self.errors = errors or [detail]


class NotFoundError(FinanceTrackerError):
    """Unknown budget, alert or account identifier."""

    def __init__(self, resource: str, identifier):
        super().__init__(f"{resource} {identifier} not found")
        self.resource = resource
        self.identifier = identifier
