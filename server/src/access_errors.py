# access_errors.py
"""
Error taxonomy for eBook access and rendering.

Every error carries the HTTP status and the public message the API returns.
The public message never says more than the caller is entitled to know: a
revoked grant looks exactly like a token that never existed.
"""

from __future__ import annotations


class AccessError(Exception):
    status_code = 500
    public_message = "internal error"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message


class GrantNotFound(AccessError):
    status_code = 404
    public_message = "eBook access not found"


class GrantInactive(AccessError):
    status_code = 404
    public_message = "eBook access not found"


class GrantExpired(AccessError):
    status_code = 403
    public_message = "eBook access has expired"


class OriginRejected(AccessError):
    status_code = 403
    public_message = "device or network not authorized"


class DeviceRejected(AccessError):
    status_code = 403
    public_message = "device or network not authorized"


class SourceFileMissing(AccessError):
    status_code = 500
    public_message = "could not render this eBook"


class WatermarkFailure(AccessError):
    status_code = 500
    public_message = "could not render this eBook"


class IssuanceRejected(AccessError):
    status_code = 409
    public_message = "access could not be issued"

    def __init__(self, reason: str):
        super().__init__(reason)
        # precondition reasons are safe to show to the caller
        self.public_message = self.detail


class NotGrantOwner(AccessError):
    status_code = 403
    public_message = "not allowed to manage this access"
