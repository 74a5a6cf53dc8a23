# apps/services/live_location_service.py
# On-demand live locations: a guardian asks, each guarded user's device answers.
import logging

from kombu.exceptions import OperationalError as BrokerUnavailable

from apps.alerts_app.confirmation_service import normalize_email
from apps.alerts_app.models import Guardian, LiveLocation

logger = logging.getLogger(__name__)


def users_guarded_by(guardian_user):
    """Ids of users who added ``guardian_user`` as an active guardian."""
    email = normalize_email(guardian_user.email)
    if not email:
        return []
    return list(
        Guardian.objects.filter(guardian_email__iexact=email, status='active')
        .order_by('user_id')
        .values_list('user_id', flat=True)
        .distinct()
    )


def request_live_locations(guardian_user):
    """
    Queue a location-request push to every user guarded by ``guardian_user``.

    Returns the ids of the users asked. A user whose push could not be queued
    is logged and left out.
    """
    from apps.alerts_app.tasks import send_location_request

    guardian_email = normalize_email(guardian_user.email)
    requested = []
    for user_id in users_guarded_by(guardian_user):
        try:
            send_location_request.delay(user_id, guardian_email)
        except BrokerUnavailable as e:
            logger.error(f"Could not queue location request for user {user_id}: {e}")
            continue
        requested.append(user_id)

    logger.info(f"Guardian {guardian_email} requested live locations from {len(requested)} user(s)")
    return requested


def update_live_location(user, latitude, longitude, accuracy=None):
    """Store ``user``'s current position. Returns ``(location, created)``."""
    location, created = LiveLocation.objects.update_or_create(
        user=user,
        defaults={'latitude': latitude, 'longitude': longitude, 'accuracy': accuracy},
    )
    logger.info(f"Live location {'stored' if created else 'updated'} for {user.username}")
    return location, created


def live_locations_for_guardian(guardian_user, user_ids=None):
    """Latest positions of the users this guardian watches, optionally narrowed to ``user_ids``."""
    guarded = set(users_guarded_by(guardian_user))
    if user_ids is not None:
        guarded &= set(user_ids)
    return LiveLocation.objects.filter(user_id__in=guarded).select_related('user')
