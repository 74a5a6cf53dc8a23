from django.contrib import admin, messages

from .models import Alert, AlertConfirmation, AlertRecipient, Guardian, LiveLocation, UserDevice, UserProfile
from .tasks import expire_confirmation_task, notify_guardians_of_alert


@admin.register(UserProfile)
class UserProfileAdmin(admin.ModelAdmin):
    list_display = ('user', 'phone_number', 'has_cancel_password', 'updated_at')
    search_fields = ('user__username', 'phone_number')
    exclude = ('cancel_password_hash',)

    @admin.display(boolean=True, description='Cancel password set')
    def has_cancel_password(self, obj):
        return obj.has_cancel_password


@admin.register(Guardian)
class GuardianAdmin(admin.ModelAdmin):
    list_display = ('guardian_email', 'user', 'guardian_user', 'status', 'created_at')
    search_fields = ('guardian_email', 'user__username')
    list_filter = ('status',)


@admin.register(UserDevice)
class UserDeviceAdmin(admin.ModelAdmin):
    list_display = ('user', 'device_type', 'is_active', 'created_at')
    search_fields = ('user__username',)
    list_filter = ('device_type', 'is_active')


class AlertConfirmationInline(admin.TabularInline):
    model = AlertConfirmation
    extra = 0
    can_delete = False
    readonly_fields = ('guardian_email', 'guardian_user', 'status', 'created_at', 'confirmed_at', 'cancelled_at', 'expires_at')


@admin.register(Alert)
class AlertAdmin(admin.ModelAdmin):
    list_display = ('id', 'user', 'alert_type', 'confirmation_status', 'created_at')
    search_fields = ('user__username', 'id')
    list_filter = ('alert_type', 'created_at')
    date_hierarchy = 'created_at'
    inlines = [AlertConfirmationInline]
    actions = ['resend_to_guardians_action']

    @admin.action(description='Re-send alert push to guardians')
    def resend_to_guardians_action(modeladmin, request, queryset):
        for alert in queryset:
            notify_guardians_of_alert.delay(str(alert.id))
        modeladmin.message_user(request, f"Guardian notification queued for {queryset.count()} alerts.", messages.SUCCESS)


@admin.register(AlertRecipient)
class AlertRecipientAdmin(admin.ModelAdmin):
    list_display = ('alert', 'guardian_email', 'notification_sent', 'created_at')
    search_fields = ('guardian_email',)
    list_filter = ('notification_sent',)


@admin.register(AlertConfirmation)
class AlertConfirmationAdmin(admin.ModelAdmin):
    list_display = ('alert', 'guardian_email', 'status', 'created_at', 'cancelled_at')
    search_fields = ('guardian_email', 'alert__id')
    list_filter = ('status', 'created_at')
    # Status only moves through the confirmation service.
    readonly_fields = ('alert', 'guardian_email', 'guardian_user', 'status', 'created_at', 'confirmed_at', 'cancelled_at', 'expires_at')
    actions = ['expire_lapsed_action']

    @admin.action(description='Expire selected confirmations whose window has closed')
    def expire_lapsed_action(modeladmin, request, queryset):
        pending = queryset.filter(status=AlertConfirmation.CONFIRMED)
        for confirmation in pending:
            expire_confirmation_task.delay(confirmation.id)
        modeladmin.message_user(request, f"Expiry queued for {pending.count()} confirmations. Open windows expire once they close.", messages.SUCCESS)


@admin.register(LiveLocation)
class LiveLocationAdmin(admin.ModelAdmin):
    list_display = ('user', 'latitude', 'longitude', 'accuracy', 'updated_at')
    search_fields = ('user__username',)
    readonly_fields = ('updated_at',)
