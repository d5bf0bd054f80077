"""Domain errors shared by the Google integration services."""

from __future__ import annotations


class NotConnectedError(RuntimeError):
    """The organization has no usable Google credential."""

    def __init__(self, organization_id: str) -> None:
        super().__init__(f"Organization {organization_id} has no usable Google credential")
        self.organization_id = organization_id


class UpstreamAPIError(RuntimeError):
    """A Google API call returned a non-success response.

    ``status_code`` is ``None`` for transport failures (timeouts, DNS, TLS).
    """

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
