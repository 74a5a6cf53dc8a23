"""
Persistence boundary for the confirmation protocol.

Every status change goes through ``conditional_update_status``, a single
``UPDATE ... WHERE status = <expected>`` statement, so two devices racing on
the same row can never both win.
"""
import functools
import logging

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.db import InterfaceError, OperationalError

from .exceptions import StoreUnavailable
from .models import Alert, AlertConfirmation, Guardian, UserProfile

logger = logging.getLogger(__name__)


class ConfirmationStore:
    """Interface the confirmation service depends on."""

    def get_alert(self, alert_id):
        raise NotImplementedError

    def get_confirmation(self, alert_id, guardian_email):
        raise NotImplementedError

    def get_confirmation_by_id(self, confirmation_id):
        raise NotImplementedError

    def create_confirmation(self, alert_id, guardian_email, guardian_user_id=None, *, created_at, expires_at):
        """Insert a confirmed row. Returns ``(confirmation, created)``."""
        raise NotImplementedError

    def conditional_update_status(self, confirmation_id, expected_status, new_status, fields=None,
                                  *, created_after=None, created_at_or_before=None):
        """Atomically move ``expected_status`` to ``new_status``. Returns True if this call won."""
        raise NotImplementedError

    def get_user_cancel_password(self, user_id):
        raise NotImplementedError

    def resolve_guardian_user_id(self, owner_user_id, guardian_email):
        raise NotImplementedError

    def list_lapsed_confirmation_ids(self, cutoff):
        raise NotImplementedError


def translate_db_errors(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (OperationalError, InterfaceError) as exc:
            logger.error(f"Alert store unavailable during {func.__name__}: {exc}")
            raise StoreUnavailable() from exc
    return wrapper


class DjangoConfirmationStore(ConfirmationStore):

    @translate_db_errors
    def get_alert(self, alert_id):
        try:
            return Alert.objects.filter(pk=alert_id).first()
        except (ValueError, ValidationError):
            return None

    @translate_db_errors
    def get_confirmation(self, alert_id, guardian_email):
        try:
            return AlertConfirmation.objects.filter(
                alert_id=alert_id, guardian_email__iexact=guardian_email
            ).first()
        except (ValueError, ValidationError):
            return None

    @translate_db_errors
    def get_confirmation_by_id(self, confirmation_id):
        return AlertConfirmation.objects.filter(pk=confirmation_id).first()

    @translate_db_errors
    def create_confirmation(self, alert_id, guardian_email, guardian_user_id=None, *, created_at, expires_at):
        # get_or_create runs the insert in a savepoint and falls back to a read
        # when a concurrent insert hits the unique constraint.
        return AlertConfirmation.objects.get_or_create(
            alert_id=alert_id,
            guardian_email=guardian_email,
            defaults={
                'guardian_user_id': guardian_user_id,
                'status': AlertConfirmation.CONFIRMED,
                'created_at': created_at,
                'confirmed_at': created_at,
                'expires_at': expires_at,
            },
        )

    @translate_db_errors
    def conditional_update_status(self, confirmation_id, expected_status, new_status, fields=None,
                                  *, created_after=None, created_at_or_before=None):
        queryset = AlertConfirmation.objects.filter(pk=confirmation_id, status=expected_status)
        if created_after is not None:
            queryset = queryset.filter(created_at__gt=created_after)
        if created_at_or_before is not None:
            queryset = queryset.filter(created_at__lte=created_at_or_before)
        updated = queryset.update(status=new_status, **(fields or {}))
        return updated == 1

    @translate_db_errors
    def get_user_cancel_password(self, user_id):
        return UserProfile.objects.filter(user_id=user_id).values_list('cancel_password_hash', flat=True).first()

    @translate_db_errors
    def resolve_guardian_user_id(self, owner_user_id, guardian_email):
        guardian_user_id = Guardian.objects.filter(
            user_id=owner_user_id, guardian_email__iexact=guardian_email, guardian_user__isnull=False
        ).values_list('guardian_user_id', flat=True).first()
        if guardian_user_id is not None:
            return guardian_user_id
        return User.objects.filter(email__iexact=guardian_email).values_list('id', flat=True).first()

    @translate_db_errors
    def list_lapsed_confirmation_ids(self, cutoff):
        return list(
            AlertConfirmation.objects.filter(
                status=AlertConfirmation.CONFIRMED, created_at__lte=cutoff
            ).values_list('id', flat=True)
        )
