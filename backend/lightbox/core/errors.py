"""Error kinds shared by services and the HTTP layer.

Services raise these; ``lightbox.core.error_handlers`` renders them as
``{"error": message}`` with the matching status code. Job handlers raise
``FatalJobError`` when a retry cannot help.
"""


class LightboxError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InputInvalid(LightboxError):
    status_code = 400
    default_message = "Invalid request"


class Unauthenticated(LightboxError):
    status_code = 401
    default_message = "Authentication required"


class PolicyDenied(LightboxError):
    status_code = 403
    default_message = "Not allowed"


class NotFound(LightboxError):
    status_code = 404
    default_message = "Not found"


class Conflict(LightboxError):
    status_code = 409
    default_message = "Already exists"


class Exceeded(LightboxError):
    status_code = 429
    default_message = "Quota exceeded"


class ServerError(LightboxError):
    status_code = 500


class FatalJobError(Exception):
    """Raised by job handlers for failures that retrying will not fix."""
