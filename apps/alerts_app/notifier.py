import logging

from .exceptions import GuardianUnreachable
from .models import UserDevice

logger = logging.getLogger(__name__)

EVENT_CONFIRMED = 'confirmed'
EVENT_CANCELLED = 'cancelled'
EVENT_EXPIRED = 'expired'
EVENT_KINDS = (EVENT_CONFIRMED, EVENT_CANCELLED, EVENT_EXPIRED)

# Value of the "type" key in the FCM data payload, read by the mobile client.
PUSH_TYPES = {
    EVENT_CONFIRMED: 'alert_confirmation',
    EVENT_CANCELLED: 'alert_cancelled',
    EVENT_EXPIRED: 'alert_not_cancelled',
}


class Notifier:
    """Fire-and-forget delivery of confirmation events to the counterpart."""

    def send(self, destination_user_id, event_kind, payload):
        raise NotImplementedError


def has_active_device(user_id):
    return UserDevice.objects.filter(user_id=user_id, is_active=True).exists()


class PushNotifier(Notifier):
    """
    Queues the push on Celery after checking a destination exists.

    Raises GuardianUnreachable when the user has no active device. Anything
    after enqueueing (FCM errors, stale tokens) is the worker's to log.
    """

    def send(self, destination_user_id, event_kind, payload):
        from . import tasks

        if event_kind not in EVENT_KINDS:
            raise ValueError(f"Unknown alert event kind: {event_kind}")
        if destination_user_id is None or not has_active_device(destination_user_id):
            raise GuardianUnreachable(destination_user_id=destination_user_id)

        data = dict(payload, type=PUSH_TYPES[event_kind])
        tasks.dispatch_alert_event.delay(destination_user_id, event_kind, data)
        logger.info(f"Queued {event_kind} push for user {destination_user_id} (alert {payload.get('alert_id')})")
