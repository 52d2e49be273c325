"""Hub client exception hierarchy."""


class HubError(Exception):
    """Base exception for all hub-related errors."""


class HubNotConnectedError(HubError):
    """The hub socket is not connected and authenticated."""

    def __init__(self, message: str = "Not connected to Home Assistant"):
        super().__init__(message)


class HubRequestError(HubError):
    """The hub answered a request with success=false."""

    def __init__(self, message: str, code: str = None):
        self.code = code
        super().__init__(message)


class HubAPIError(HubError):
    """The hub REST API returned a non-2xx status."""

    def __init__(self, status_code: int, reason: str = ""):
        self.status_code = status_code
        super().__init__(f"HA API error: {status_code} {reason}".rstrip())
