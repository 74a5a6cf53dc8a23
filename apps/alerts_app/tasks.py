# apps/alerts_app/tasks.py
import logging

from asgiref.sync import async_to_sync
from celery import shared_task
from channels.layers import get_channel_layer
from django.contrib.auth.models import User
from kombu.exceptions import OperationalError as BrokerUnavailable

from . import countdown
from .confirmation_service import get_confirmation_service
from .exceptions import AlertNotFound, ConfirmationNotFound, StoreUnavailable, WindowStillOpen
from .fcm_service import send_fcm_to_user
from .models import Alert, AlertRecipient, Guardian

logger = logging.getLogger(__name__)

EMERGENCY_PUSH_TYPE = 'emergency_alert'
LOCATION_REQUEST_PUSH_TYPE = 'location_request'


def notification_group(user_id):
    return f'user_{user_id}_notifications'


def broadcast_to_user(user_id, message):
    """Mirror a push on the user's WebSocket group. Failures are logged, not raised."""
    channel_layer = get_channel_layer()
    if channel_layer is None:
        logger.warning("No channel layer configured; skipping WebSocket broadcast")
        return False
    try:
        async_to_sync(channel_layer.group_send)(
            notification_group(user_id),
            {"type": "send_notification", "message": message}
        )
    except Exception as e:
        logger.error(f"WebSocket broadcast to user {user_id} failed: {e}")
        return False
    return True


@shared_task(name="dispatch_alert_event")
def dispatch_alert_event(destination_user_id, event_kind, data):
    title = data.get('title', '')
    body = data.get('body', '')
    sent = send_fcm_to_user(destination_user_id, title=title, body=body, data=data)
    if sent:
        logger.info(f"Sent {event_kind} FCM for alert {data.get('alert_id')} to user {destination_user_id} ({sent} devices)")
    else:
        logger.warning(f"{event_kind} FCM for alert {data.get('alert_id')} reached no device of user {destination_user_id}")

    broadcast_to_user(destination_user_id, dict(data, event=event_kind))
    return sent


@shared_task(name="send_location_request")
def send_location_request(user_id, guardian_email):
    data = {
        'type': LOCATION_REQUEST_PUSH_TYPE,
        'guardianEmail': guardian_email,
    }
    sent = send_fcm_to_user(
        user_id,
        title="Location Request",
        body=f"Guardian ({guardian_email}) is checking your location",
        data=data,
    )
    if not sent:
        logger.warning(f"Location request from {guardian_email} reached no device of user {user_id}")
    broadcast_to_user(user_id, data)
    return sent


def emergency_payload(alert):
    sender = alert.user.get_full_name() or alert.user.username
    body = f"{sender} needs help!"
    if alert.has_location:
        body += f" Last known location: {alert.latitude:.5f}, {alert.longitude:.5f}."
    return {
        'type': EMERGENCY_PUSH_TYPE,
        'alert_id': str(alert.id),
        'alert_type': alert.alert_type,
        'sender': sender,
        'title': "Emergency Alert",
        'body': body,
        'latitude': alert.latitude,
        'longitude': alert.longitude,
        'front_photo_url': alert.front_photo_url,
        'back_photo_url': alert.back_photo_url,
        'timestamp': alert.created_at.isoformat(),
    }


@shared_task(name="notify_guardians_of_alert")
def notify_guardians_of_alert(alert_id):
    logger.info(f"Fanning out alert {alert_id} to guardians")
    alert = Alert.objects.select_related('user').filter(pk=alert_id).first()
    if alert is None:
        logger.error(f"Alert {alert_id} not found. Skipping guardian notification.")
        return 0

    payload = emergency_payload(alert)
    notified = 0
    for guardian in Guardian.objects.filter(user=alert.user, status='active'):
        guardian_user_id = guardian.guardian_user_id
        if guardian_user_id is None:
            guardian_user_id = User.objects.filter(
                email__iexact=guardian.guardian_email
            ).values_list('id', flat=True).first()

        sent = 0
        if guardian_user_id is not None:
            sent = send_fcm_to_user(guardian_user_id, title=payload['title'], body=payload['body'], data=payload)
            broadcast_to_user(guardian_user_id, payload)
        else:
            logger.info(f"Guardian {guardian.guardian_email} has no account yet; alert {alert.id} not pushed")

        AlertRecipient.objects.create(
            alert=alert,
            guardian_email=guardian.guardian_email.lower(),
            guardian_user_id=guardian_user_id,
            notification_sent=bool(sent),
        )
        if sent:
            notified += 1

    logger.info(f"Alert {alert.id} pushed to {notified} guardian(s)")
    return notified


@shared_task(
    bind=True,
    name="expire_confirmation_task",
    autoretry_for=(StoreUnavailable,),
    retry_backoff=True,
    max_retries=5,
)
def expire_confirmation_task(self, confirmation_id):
    try:
        outcome = get_confirmation_service().expire_by_id(confirmation_id)
    except (ConfirmationNotFound, AlertNotFound):
        logger.warning(f"Confirmation {confirmation_id} vanished before its expiry ran")
        return None
    except WindowStillOpen as e:
        # The eta can fire slightly early; try again once the window has closed.
        delay = max(e.context.get('remaining_ms', 0), 0) / 1000 + 0.5
        logger.info(f"Expiry for confirmation {confirmation_id} fired early; retrying in {delay:.1f}s")
        raise self.retry(exc=e, countdown=delay)
    return outcome.confirmation.status


@shared_task(name="sweep_lapsed_confirmations", autoretry_for=(StoreUnavailable,), retry_backoff=True, max_retries=3)
def sweep_lapsed_confirmations():
    expired = get_confirmation_service().sweep_lapsed()
    if expired:
        logger.info(f"Expiry sweep closed {expired} lapsed confirmation(s)")
    return expired


def schedule_expiry(confirmation):
    """Queue the server-side expiry for when the window closes. The periodic sweep covers a lost enqueue."""
    eta = countdown.expiry_boundary(confirmation.created_at)
    try:
        expire_confirmation_task.apply_async(args=[confirmation.id], eta=eta)
    except BrokerUnavailable as e:
        logger.error(f"Could not schedule expiry for confirmation {confirmation.id}: {e}")
        return False
    return True
