"""Error taxonomy for the bank sync engine."""


class ConfigurationError(Exception):
    """Required integration settings are missing. Never retried."""


class ProviderRequestError(Exception):
    """The aggregator returned a non-success response or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class NotFoundError(Exception):
    """No local owner matches the requested user or customer id."""
