import logging

from drf_spectacular.utils import OpenApiParameter, OpenApiTypes, extend_schema
from rest_framework import generics, status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.services.alert_service import trigger_alert
from apps.services.live_location_service import live_locations_for_guardian, request_live_locations, update_live_location

from .confirmation_service import get_confirmation_service, normalize_email, retry_store_call
from .exceptions import AlertNotFound, AlertProtocolError
from .models import Alert, AlertConfirmation, UserDevice
from .serializers import (
    AlertConfirmationSerializer,
    AlertSerializer,
    AlertTriggerSerializer,
    CancelRequestSerializer,
    ConfirmationStateSerializer,
    ConfirmRequestSerializer,
    DeviceRegistrationSerializer,
    ErrorResponseSerializer,
    LiveLocationRequestResponseSerializer,
    LiveLocationSerializer,
    LiveLocationUpdateSerializer,
    SimpleMessageResponseSerializer,
)
from .tasks import schedule_expiry

logger = logging.getLogger(__name__)


@api_view(['GET'])
@permission_classes([AllowAny])
def health_check(request):
    """Simple health check endpoint"""
    return Response({
        "status": "ok",
        "service": "Safeguard API",
        "version": "1.0.0"
    })


def protocol_error_response(exc):
    return Response(exc.as_response_data(), status=exc.http_status)


def forbidden(message):
    return Response({"error": message, "code": "forbidden"}, status=status.HTTP_403_FORBIDDEN)


def load_alert(alert_id):
    alert = Alert.objects.filter(pk=alert_id).first()
    if alert is None:
        raise AlertNotFound(alert_id=str(alert_id))
    return alert


def is_guardian_caller(user, guardian_email):
    return bool(user.email) and normalize_email(user.email) == normalize_email(guardian_email)


class AlertListCreateView(generics.ListAPIView):
    """
    GET lists the caller's alerts with their confirmations. POST triggers a new alert.
    """
    serializer_class = AlertSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = PageNumberPagination

    def get_queryset(self):
        return Alert.objects.filter(user=self.request.user).prefetch_related('confirmations').order_by('-created_at')

    @extend_schema(
        summary="Trigger Alert",
        request=AlertTriggerSerializer,
        responses={201: AlertSerializer, 400: OpenApiTypes.OBJECT}
    )
    def post(self, request, *args, **kwargs):
        serializer = AlertTriggerSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        alert, guardian_count = trigger_alert(request.user, **serializer.validated_data)
        data = AlertSerializer(alert).data
        data['guardians_notified'] = guardian_count
        return Response(data, status=status.HTTP_201_CREATED)


class GuardianConfirmationListView(generics.ListAPIView):
    """
    Confirmations made by the authenticated guardian, newest first.
    """
    serializer_class = AlertConfirmationSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = PageNumberPagination

    def get_queryset(self):
        email = normalize_email(self.request.user.email)
        if not email:
            return AlertConfirmation.objects.none()
        return AlertConfirmation.objects.filter(guardian_email__iexact=email).select_related('alert').order_by('-created_at')


class ConfirmAlertView(APIView):
    """
    A guardian confirms they received the alert, opening the cancellation window.
    """
    permission_classes = [IsAuthenticated]
    serializer_class = ConfirmRequestSerializer

    @extend_schema(
        summary="Confirm Alert",
        request=ConfirmRequestSerializer,
        responses={200: AlertConfirmationSerializer, 400: OpenApiTypes.OBJECT, 403: ErrorResponseSerializer, 404: ErrorResponseSerializer}
    )
    def post(self, request, alert_id, *args, **kwargs):
        serializer = ConfirmRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        guardian_email = serializer.validated_data['guardian_email']
        if not is_guardian_caller(request.user, guardian_email):
            return forbidden("You can only confirm alerts as yourself.")

        service = get_confirmation_service()
        try:
            outcome = retry_store_call(service.confirm, alert_id, guardian_email, request.user.id)
        except AlertProtocolError as e:
            return protocol_error_response(e)

        if outcome.created:
            schedule_expiry(outcome.confirmation)

        return Response({
            "message": "Alert confirmed." if outcome.created else "Alert was already confirmed.",
            "created": outcome.created,
            "notified": outcome.notified,
            "window_seconds": service.window_seconds,
            "confirmation": AlertConfirmationSerializer(outcome.confirmation).data,
        }, status=status.HTTP_200_OK)


class CancelAlertView(APIView):
    """
    The alerting user cancels a confirmed alert as a false alarm, within the window.
    """
    permission_classes = [IsAuthenticated]
    serializer_class = CancelRequestSerializer

    @extend_schema(
        summary="Cancel Alert",
        request=CancelRequestSerializer,
        responses={200: AlertConfirmationSerializer, 403: ErrorResponseSerializer, 404: ErrorResponseSerializer, 409: ErrorResponseSerializer}
    )
    def post(self, request, alert_id, *args, **kwargs):
        serializer = CancelRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            alert = load_alert(alert_id)
        except AlertProtocolError as e:
            return protocol_error_response(e)
        if alert.user_id != request.user.id:
            return forbidden("Only the user who raised the alert can cancel it.")

        service = get_confirmation_service()
        try:
            confirmation = retry_store_call(
                service.cancel, alert.id,
                serializer.validated_data['guardian_email'],
                serializer.validated_data['password'],
            )
        except AlertProtocolError as e:
            return protocol_error_response(e)

        return Response({
            "message": "Alert cancelled successfully.",
            "confirmation": AlertConfirmationSerializer(confirmation).data,
        }, status=status.HTTP_200_OK)


class ConfirmationAccessMixin:

    def check_access(self, request, alert, guardian_email):
        return alert.user_id == request.user.id or is_guardian_caller(request.user, guardian_email)


class ConfirmationDetailView(ConfirmationAccessMixin, APIView):
    """
    Current confirmation state with a countdown reseeded from created_at.
    Opening the view after the window closed runs the expiry first.
    """
    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Get Confirmation State",
        responses={200: ConfirmationStateSerializer, 403: ErrorResponseSerializer, 404: ErrorResponseSerializer}
    )
    def get(self, request, alert_id, guardian_email, *args, **kwargs):
        try:
            alert = load_alert(alert_id)
            if not self.check_access(request, alert, guardian_email):
                return forbidden("You are not part of this alert.")
            state = retry_store_call(get_confirmation_service().open_detail, alert.id, guardian_email)
        except AlertProtocolError as e:
            return protocol_error_response(e)

        return Response({
            "confirmation": AlertConfirmationSerializer(state.confirmation).data,
            "countdown": state.countdown.as_dict(),
            "expired_now": state.expired_now,
        }, status=status.HTTP_200_OK)


class ExpireConfirmationView(ConfirmationAccessMixin, APIView):
    """
    Called by a device whose countdown reached zero. Idempotent.
    """
    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Expire Confirmation",
        request=None,
        responses={200: AlertConfirmationSerializer, 403: ErrorResponseSerializer, 404: ErrorResponseSerializer, 409: ErrorResponseSerializer}
    )
    def post(self, request, alert_id, guardian_email, *args, **kwargs):
        try:
            alert = load_alert(alert_id)
            if not self.check_access(request, alert, guardian_email):
                return forbidden("You are not part of this alert.")
            outcome = retry_store_call(get_confirmation_service().expire, alert.id, guardian_email)
        except AlertProtocolError as e:
            return protocol_error_response(e)

        return Response({
            "message": "Confirmation expired. The alert remains active." if outcome.transitioned
            else f"Confirmation is already {outcome.confirmation.status}.",
            "transitioned": outcome.transitioned,
            "confirmation": AlertConfirmationSerializer(outcome.confirmation).data,
        }, status=status.HTTP_200_OK)


class DeviceRegistrationView(APIView):
    """
    Handles registration of user devices for FCM push notifications.
    """
    permission_classes = [IsAuthenticated]
    serializer_class = DeviceRegistrationSerializer

    @extend_schema(
        summary="Register Device for FCM",
        request=DeviceRegistrationSerializer,
        responses={200: SimpleMessageResponseSerializer, 201: SimpleMessageResponseSerializer, 400: OpenApiTypes.OBJECT}
    )
    def post(self, request, *args, **kwargs):
        serializer = DeviceRegistrationSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        # A token belongs to one device, so a re-registration moves it to the caller.
        user_device, created = UserDevice.objects.update_or_create(
            device_token=serializer.validated_data['device_token'],
            defaults={
                'user': request.user,
                'is_active': True,
                'device_type': serializer.validated_data.get('device_type'),
            }
        )
        logger.info(f"Device {user_device.id} {'registered' if created else 'refreshed'} for {request.user.username}")

        if created:
            return Response({"message": "Device registered successfully."}, status=status.HTTP_201_CREATED)
        return Response({"message": "Device registration updated successfully."}, status=status.HTTP_200_OK)


class LiveLocationRequestView(APIView):
    """
    A guardian asks every user who added them for a fresh position.
    """
    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Request Live Locations",
        request=None,
        responses={200: LiveLocationRequestResponseSerializer}
    )
    def post(self, request, *args, **kwargs):
        user_ids = request_live_locations(request.user)
        return Response({
            "success": True,
            "users_requested": len(user_ids),
            "user_ids": user_ids,
            "message": f"Location requests sent to {len(user_ids)} users",
        }, status=status.HTTP_200_OK)


class LiveLocationView(APIView):
    """
    GET returns the latest positions of the users the caller guards.
    POST stores the caller's own position in answer to a request.
    """
    permission_classes = [IsAuthenticated]
    serializer_class = LiveLocationUpdateSerializer

    @extend_schema(
        summary="Get Live Locations",
        parameters=[OpenApiParameter('user_ids', OpenApiTypes.STR, description="Comma-separated user ids to narrow the result.")],
        responses={200: LiveLocationSerializer(many=True), 400: ErrorResponseSerializer}
    )
    def get(self, request, *args, **kwargs):
        user_ids = None
        raw_ids = request.query_params.get('user_ids')
        if raw_ids:
            try:
                user_ids = [int(value) for value in raw_ids.split(',') if value.strip()]
            except ValueError:
                return Response({"error": "user_ids must be a comma-separated list of integers.", "code": "invalid_user_ids"},
                                status=status.HTTP_400_BAD_REQUEST)

        locations = live_locations_for_guardian(request.user, user_ids)
        return Response(LiveLocationSerializer(locations, many=True).data, status=status.HTTP_200_OK)

    @extend_schema(
        summary="Update Live Location",
        request=LiveLocationUpdateSerializer,
        responses={200: LiveLocationSerializer, 201: LiveLocationSerializer, 400: OpenApiTypes.OBJECT}
    )
    def post(self, request, *args, **kwargs):
        serializer = LiveLocationUpdateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        location, created = update_live_location(request.user, **serializer.validated_data)
        return Response(
            LiveLocationSerializer(location).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK
        )
