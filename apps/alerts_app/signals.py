# apps/alerts_app/signals.py
import logging

from django.contrib.auth.models import User
from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import Guardian, UserProfile

logger = logging.getLogger(__name__)


@receiver(post_save, sender=User)
def create_user_profile(sender, instance, created, **kwargs):
    """Every user gets a profile to hold the cancel password."""
    if created:
        UserProfile.objects.get_or_create(user=instance)
        logger.info(f"Created profile for user {instance.username}")


@receiver(post_save, sender=User)
def link_guardian_accounts(sender, instance, **kwargs):
    """
    Attach the account to Guardian rows that list its email, so pushes
    reach the guardian once they have registered.
    """
    if not instance.email:
        return
    linked = Guardian.objects.filter(
        guardian_email__iexact=instance.email, guardian_user__isnull=True
    ).update(guardian_user=instance)
    if linked:
        logger.info(f"Linked user {instance.username} to {linked} guardian entries")
