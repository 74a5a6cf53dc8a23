import uuid

from django.db import models
from django.db.models import Q
from django.contrib.auth.models import User


# UserProfile model extends the default Django User model
class UserProfile(models.Model):
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='profile')
    phone_number = models.CharField(max_length=20, blank=True, null=True)
    # Salted hash produced by django.contrib.auth.hashers; the raw secret is never stored.
    cancel_password_hash = models.CharField(max_length=128, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.user.username

    @property
    def has_cancel_password(self):
        return bool(self.cancel_password_hash)


class Guardian(models.Model):
    STATUS_CHOICES = [
        ('active', 'Active'),
        ('inactive', 'Inactive'),
    ]

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='guardians')
    guardian_email = models.EmailField()
    guardian_user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='guarding',
        help_text="Resolved account of the guardian, once they have registered."
    )
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='active')
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.guardian_email} guards {self.user.username}"

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(fields=['user', 'guardian_email'], name='unique_guardian_per_user'),
        ]


class UserDevice(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='devices')
    device_token = models.TextField(unique=True)
    device_type = models.CharField(max_length=10, blank=True, null=True, choices=[('android', 'Android'), ('ios', 'iOS'), ('web', 'Web')])
    created_at = models.DateTimeField(auto_now_add=True)
    is_active = models.BooleanField(default=True)

    def __str__(self):
        token_preview = self.device_token[:20] + "..." if self.device_token and len(self.device_token) > 20 else self.device_token
        return f"{self.user.username} - {self.device_type or 'UnknownType'} ({token_preview})"

    class Meta:
        ordering = ['-created_at']


class Alert(models.Model):
    ALERT_TYPES = [
        ('voice_help', 'Voice Wake-Word'),
        ('manual_sos', 'Manual SOS'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='alerts')
    alert_type = models.CharField(max_length=20, choices=ALERT_TYPES, default='voice_help')
    latitude = models.DecimalField(max_digits=9, decimal_places=6, blank=True, null=True)
    longitude = models.DecimalField(max_digits=9, decimal_places=6, blank=True, null=True)
    location_accuracy = models.FloatField(blank=True, null=True)  # In meters
    front_photo_url = models.URLField(max_length=500, blank=True, null=True)
    back_photo_url = models.URLField(max_length=500, blank=True, null=True)
    # Fixed at creation; the confirmation lifecycle lives on AlertConfirmation.
    status = models.CharField(max_length=10, default='sent', editable=False)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.get_alert_type_display()} by {self.user.username}"

    @property
    def has_location(self):
        return self.latitude is not None and self.longitude is not None

    @property
    def confirmation_status(self):
        """
        Status of the most recent confirmation, or 'pending' while no guardian has acted.
        """
        latest = self.confirmations.order_by('-created_at').first()
        return latest.status if latest else AlertConfirmation.PENDING

    class Meta:
        ordering = ['-created_at']


class AlertRecipient(models.Model):
    alert = models.ForeignKey(Alert, on_delete=models.CASCADE, related_name='recipients')
    guardian_email = models.EmailField()
    guardian_user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='received_alerts')
    notification_sent = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"Alert {self.alert_id} -> {self.guardian_email}"

    class Meta:
        ordering = ['-created_at']


class AlertConfirmation(models.Model):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    CANCELLED = 'cancelled'
    EXPIRED = 'expired'

    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (CONFIRMED, 'Confirmed'),
        (CANCELLED, 'Cancelled'),
        (EXPIRED, 'Expired'),
    ]
    TERMINAL_STATUSES = (CANCELLED, EXPIRED)

    alert = models.ForeignKey(Alert, on_delete=models.CASCADE, related_name='confirmations')
    guardian_email = models.EmailField()
    guardian_user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='alert_confirmations'
    )
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=CONFIRMED)
    # Origin of the cancellation window; written from the server clock.
    created_at = models.DateTimeField()
    confirmed_at = models.DateTimeField(blank=True, null=True)
    cancelled_at = models.DateTimeField(blank=True, null=True)
    # Informational only; expiry is always recomputed from created_at.
    expires_at = models.DateTimeField(blank=True, null=True)

    def __str__(self):
        return f"{self.guardian_email} {self.status} alert {self.alert_id}"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(fields=['alert', 'guardian_email'], name='unique_confirmation_per_guardian'),
            models.CheckConstraint(
                condition=(
                    Q(status='cancelled', cancelled_at__isnull=False)
                    | (~Q(status='cancelled') & Q(cancelled_at__isnull=True))
                ),
                name='cancelled_at_iff_cancelled',
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'created_at'], name='confirmation_status_created'),
        ]


class LiveLocation(models.Model):
    """Last position a user reported, written in answer to a guardian's location request."""
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='live_location')
    latitude = models.DecimalField(max_digits=9, decimal_places=6)
    longitude = models.DecimalField(max_digits=9, decimal_places=6)
    accuracy = models.FloatField(blank=True, null=True)  # In meters
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.user.username} at {self.latitude}, {self.longitude}"

    class Meta:
        ordering = ['-updated_at']
