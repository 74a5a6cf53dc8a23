# apps/services/alert_service.py
# Alert creation for voice wake-word and manual SOS triggers.
import logging

from django.db import transaction
from kombu.exceptions import OperationalError as BrokerUnavailable

from apps.alerts_app.models import Alert, Guardian

logger = logging.getLogger(__name__)


def active_guardian_count(user):
    return Guardian.objects.filter(user=user, status='active').count()


def trigger_alert(user, alert_type='voice_help', latitude=None, longitude=None, location_accuracy=None,
                  front_photo_url=None, back_photo_url=None):
    """
    Create an alert for ``user`` and queue the push to their guardians.

    Returns ``(alert, guardian_count)``. The fan-out is queued after the
    transaction commits so the worker always sees the row.
    """
    from apps.alerts_app.tasks import notify_guardians_of_alert

    alert = Alert.objects.create(
        user=user,
        alert_type=alert_type,
        latitude=latitude,
        longitude=longitude,
        location_accuracy=location_accuracy,
        front_photo_url=front_photo_url or None,
        back_photo_url=back_photo_url or None,
    )
    guardian_count = active_guardian_count(user)
    logger.info(f"{alert.get_alert_type_display()} alert {alert.id} created for {user.username} "
                f"({guardian_count} active guardians)")

    def queue_fan_out():
        try:
            notify_guardians_of_alert.delay(str(alert.id))
        except BrokerUnavailable as e:
            logger.error(f"Could not queue guardian notification for alert {alert.id}: {e}")

    transaction.on_commit(queue_fan_out)
    return alert, guardian_count
