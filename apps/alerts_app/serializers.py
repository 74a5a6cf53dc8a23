from django.core.validators import MaxValueValidator, MinValueValidator
from rest_framework import serializers

from .models import Alert, AlertConfirmation, LiveLocation, UserDevice


class AlertConfirmationSerializer(serializers.ModelSerializer):
    alert_id = serializers.UUIDField(source='alert.id', read_only=True)
    is_terminal = serializers.BooleanField(read_only=True)

    class Meta:
        model = AlertConfirmation
        fields = [
            'id', 'alert_id', 'guardian_email', 'status', 'is_terminal',
            'created_at', 'confirmed_at', 'cancelled_at', 'expires_at',
        ]
        read_only_fields = fields


class AlertSerializer(serializers.ModelSerializer):
    alert_type_display = serializers.CharField(source='get_alert_type_display', read_only=True)
    confirmation_status = serializers.CharField(read_only=True)
    confirmations = AlertConfirmationSerializer(many=True, read_only=True)

    class Meta:
        model = Alert
        fields = [
            'id', 'alert_type', 'alert_type_display', 'latitude', 'longitude', 'location_accuracy',
            'front_photo_url', 'back_photo_url', 'status', 'confirmation_status', 'confirmations',
            'created_at',
        ]
        read_only_fields = fields


class AlertTriggerSerializer(serializers.Serializer):
    alert_type = serializers.ChoiceField(
        choices=Alert.ALERT_TYPES, default='voice_help',
        help_text="voice_help for the wake-word trigger, manual_sos for the SOS button."
    )
    latitude = serializers.DecimalField(
        max_digits=9, decimal_places=6, required=False, allow_null=True,
        validators=[MinValueValidator(-90.0), MaxValueValidator(90.0)]
    )
    longitude = serializers.DecimalField(
        max_digits=9, decimal_places=6, required=False, allow_null=True,
        validators=[MinValueValidator(-180.0), MaxValueValidator(180.0)]
    )
    location_accuracy = serializers.FloatField(
        required=False, allow_null=True, validators=[MinValueValidator(0.0)],
        help_text="GPS accuracy in meters."
    )
    front_photo_url = serializers.URLField(required=False, allow_blank=True, allow_null=True, max_length=500)
    back_photo_url = serializers.URLField(required=False, allow_blank=True, allow_null=True, max_length=500)

    def validate(self, attrs):
        if (attrs.get('latitude') is None) != (attrs.get('longitude') is None):
            raise serializers.ValidationError({"location": "Latitude and longitude must be sent together."})
        return attrs


class ConfirmRequestSerializer(serializers.Serializer):
    guardian_email = serializers.EmailField(help_text="Email of the confirming guardian; must match the caller.")

    def validate_guardian_email(self, value):
        return value.strip().lower()


class CancelRequestSerializer(serializers.Serializer):
    guardian_email = serializers.EmailField(help_text="Guardian whose confirmation is being cancelled.")
    password = serializers.CharField(
        write_only=True, trim_whitespace=False, style={'input_type': 'password'},
        help_text="The alerting user's cancel password."
    )

    def validate_guardian_email(self, value):
        return value.strip().lower()


class CountdownSerializer(serializers.Serializer):
    created_at = serializers.DateTimeField()
    expires_at = serializers.DateTimeField()
    remaining_ms = serializers.IntegerField()
    seconds_remaining = serializers.IntegerField()
    tier = serializers.CharField()
    is_expired = serializers.BooleanField()


class ConfirmationStateSerializer(serializers.Serializer):
    confirmation = AlertConfirmationSerializer()
    countdown = CountdownSerializer()


class DeviceRegistrationSerializer(serializers.ModelSerializer):
    class Meta:
        model = UserDevice
        fields = ['device_token', 'device_type']
        # Re-registering a known token moves it to the caller instead of failing.
        extra_kwargs = {'device_token': {'validators': []}}

    def validate_device_token(self, value):
        if not value or not value.strip():
            raise serializers.ValidationError("Device token cannot be empty.")
        return value.strip()


class SimpleMessageResponseSerializer(serializers.Serializer):
    message = serializers.CharField()


class ErrorResponseSerializer(serializers.Serializer):
    error = serializers.CharField()
    code = serializers.CharField()


class LiveLocationSerializer(serializers.ModelSerializer):
    user_id = serializers.IntegerField(source='user.id', read_only=True)
    username = serializers.CharField(source='user.username', read_only=True)

    class Meta:
        model = LiveLocation
        fields = ['user_id', 'username', 'latitude', 'longitude', 'accuracy', 'updated_at']
        read_only_fields = fields


class LiveLocationUpdateSerializer(serializers.Serializer):
    latitude = serializers.DecimalField(
        max_digits=9, decimal_places=6,
        validators=[MinValueValidator(-90.0), MaxValueValidator(90.0)]
    )
    longitude = serializers.DecimalField(
        max_digits=9, decimal_places=6,
        validators=[MinValueValidator(-180.0), MaxValueValidator(180.0)]
    )
    accuracy = serializers.FloatField(
        required=False, allow_null=True, validators=[MinValueValidator(0.0)],
        help_text="GPS accuracy in meters."
    )


class LiveLocationRequestResponseSerializer(serializers.Serializer):
    success = serializers.BooleanField()
    users_requested = serializers.IntegerField()
    user_ids = serializers.ListField(child=serializers.IntegerField())
    message = serializers.CharField()
