"""
Error kinds of the alert confirmation protocol.

Every error carries a machine-readable ``code``, the HTTP status the API maps
it to, and a message that is safe to show to the person holding the phone.
"""
from rest_framework import status


class AlertProtocolError(Exception):
    code = 'alert_protocol_error'
    http_status = status.HTTP_400_BAD_REQUEST
    default_message = "The alert could not be processed."

    def __init__(self, message=None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def as_response_data(self):
        return {'error': self.message, 'code': self.code, **self.context}


class AlertNotFound(AlertProtocolError):
    code = 'alert_not_found'
    http_status = status.HTTP_404_NOT_FOUND
    default_message = "Alert not found."


class ConfirmationNotFound(AlertProtocolError):
    code = 'confirmation_not_found'
    http_status = status.HTTP_404_NOT_FOUND
    default_message = "No confirmation found."


class GuardianUnreachable(AlertProtocolError):
    """No delivery destination could be resolved. Never fatal to a transition."""
    code = 'guardian_unreachable'
    http_status = status.HTTP_502_BAD_GATEWAY
    default_message = "Device not reachable."


class AlreadyTerminal(AlertProtocolError):
    code = 'already_terminal'
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, current_status, message=None):
        if message is None:
            if current_status == 'cancelled':
                message = "Alert already cancelled."
            elif current_status == 'expired':
                message = "Confirmation has expired. The alert remains active."
            else:
                message = f"Confirmation is {current_status} and can no longer change."
        super().__init__(message, status=current_status)


class WindowExpired(AlertProtocolError):
    code = 'window_expired'
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, window_seconds, message=None):
        super().__init__(
            message or f"Time expired. You had {window_seconds} seconds to cancel.",
            window_seconds=window_seconds,
        )


class WindowStillOpen(AlertProtocolError):
    code = 'window_still_open'
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, remaining_ms, message=None):
        super().__init__(
            message or "The cancellation window is still open.",
            remaining_ms=remaining_ms,
        )


class BadPassword(AlertProtocolError):
    code = 'bad_password'
    http_status = status.HTTP_403_FORBIDDEN
    default_message = "Incorrect password."


class NoPasswordConfigured(AlertProtocolError):
    code = 'no_password_configured'
    http_status = status.HTTP_403_FORBIDDEN
    default_message = "No cancel password set. Please set one in your profile."


class StoreUnavailable(AlertProtocolError):
    code = 'store_unavailable'
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "The alert store is temporarily unavailable. Please try again."
