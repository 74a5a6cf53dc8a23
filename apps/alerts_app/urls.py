from django.urls import path

from . import views

urlpatterns = [
    path('health/', views.health_check, name='health-check-api'),

    path('alerts/', views.AlertListCreateView.as_view(), name='alert-list-create'),
    path('alerts/<uuid:alert_id>/confirm/', views.ConfirmAlertView.as_view(), name='alert-confirm'),
    path('alerts/<uuid:alert_id>/cancel/', views.CancelAlertView.as_view(), name='alert-cancel'),
    path(
        'alerts/<uuid:alert_id>/confirmation/<str:guardian_email>/',
        views.ConfirmationDetailView.as_view(),
        name='confirmation-detail'
    ),
    path(
        'alerts/<uuid:alert_id>/confirmation/<str:guardian_email>/expire/',
        views.ExpireConfirmationView.as_view(),
        name='confirmation-expire'
    ),
    path('confirmations/guarding/', views.GuardianConfirmationListView.as_view(), name='guardian-confirmations'),

    path('device/register/', views.DeviceRegistrationView.as_view(), name='device-register'),

    path('live-locations/', views.LiveLocationView.as_view(), name='live-locations'),
    path('live-locations/request/', views.LiveLocationRequestView.as_view(), name='live-locations-request'),
]
