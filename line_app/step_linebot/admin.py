from django.contrib import admin
from .models import (
    ChatMessage,
    GreetingSetting,
    LineFriend,
    Profile,
    RichMenu,
    RichMenuArea,
    ScenarioInviteCode,
    ScenarioTransition,
    SecurityEvent,
    Setting,
    Step,
    StepDeliveryLog,
    StepDeliveryTracking,
    StepMessage,
    StepScenario,
    Tag,
)


@admin.register(Setting)
class SettingAdmin(admin.ModelAdmin):
    list_display = ('key', 'value')
    search_fields = ('key',)


@admin.register(Profile)
class ProfileAdmin(admin.ModelAdmin):
    list_display = ('user', 'display_name', 'line_bot_id', 'user_role', 'monthly_message_used', 'monthly_message_limit')
    search_fields = ('user__username', 'display_name', 'line_bot_id')
    # 暗号化済みの資格情報は管理画面から編集しない
    exclude = ('line_channel_secret', 'line_channel_access_token', 'line_login_channel_secret')


@admin.register(LineFriend)
class LineFriendAdmin(admin.ModelAdmin):
    list_display = ('display_name', 'short_uid', 'owner', 'is_blocked', 'added_at')
    list_filter = ('is_blocked', 'registration_source')
    search_fields = ('display_name', 'line_user_id', 'short_uid')
    readonly_fields = ('short_uid', 'added_at')
    list_per_page = 50


@admin.register(Tag)
class TagAdmin(admin.ModelAdmin):
    list_display = ('name', 'owner')
    search_fields = ('name',)


class StepInline(admin.TabularInline):
    model = Step
    extra = 0
    fields = ('step_order', 'name', 'delivery_type', 'delivery_days', 'delivery_hours', 'delivery_minutes', 'delivery_seconds')


@admin.register(StepScenario)
class StepScenarioAdmin(admin.ModelAdmin):
    list_display = ('name', 'owner', 'is_active', 'scenario_order', 'created_at')
    list_filter = ('is_active',)
    search_fields = ('name',)
    inlines = [StepInline]


class StepMessageInline(admin.StackedInline):
    model = StepMessage
    extra = 0


@admin.register(Step)
class StepAdmin(admin.ModelAdmin):
    list_display = ('scenario', 'step_order', 'name', 'delivery_type')
    list_filter = ('delivery_type',)
    ordering = ('scenario', 'step_order')
    inlines = [StepMessageInline]


@admin.register(ScenarioInviteCode)
class ScenarioInviteCodeAdmin(admin.ModelAdmin):
    list_display = ('invite_code', 'scenario', 'is_active', 'usage_count', 'max_usage', 'allow_re_registration')
    list_filter = ('is_active',)
    search_fields = ('invite_code',)


@admin.register(ScenarioTransition)
class ScenarioTransitionAdmin(admin.ModelAdmin):
    list_display = ('from_scenario', 'to_scenario', 'condition_type', 'created_at')


@admin.register(StepDeliveryTracking)
class StepDeliveryTrackingAdmin(admin.ModelAdmin):
    list_display = ('friend', 'scenario', 'step', 'status', 'scheduled_delivery_at', 'delivered_at', 'error_count')
    list_filter = ('status',)
    search_fields = ('friend__line_user_id', 'friend__display_name')
    ordering = ('scheduled_delivery_at',)
    date_hierarchy = 'scheduled_delivery_at'


@admin.register(StepDeliveryLog)
class StepDeliveryLogAdmin(admin.ModelAdmin):
    list_display = ('friend', 'scenario', 'step', 'delivery_status', 'delivered_at')
    list_filter = ('delivery_status',)
    ordering = ('-created_at',)


@admin.register(ChatMessage)
class ChatMessageAdmin(admin.ModelAdmin):
    list_display = ('friend', 'message_type', 'short_message', 'sent_at')
    list_filter = ('message_type', 'sent_at')
    search_fields = ('friend__display_name', 'message_text')
    ordering = ('-sent_at',)
    date_hierarchy = 'sent_at'

    def short_message(self, obj):
        return obj.message_text[:50] + '...' if len(obj.message_text) > 50 else obj.message_text
    short_message.short_description = 'メッセージ'


@admin.register(GreetingSetting)
class GreetingSettingAdmin(admin.ModelAdmin):
    list_display = ('owner', 'greeting_type', 'scenario', 'updated_at')


class RichMenuAreaInline(admin.TabularInline):
    model = RichMenuArea
    extra = 0


@admin.register(RichMenu)
class RichMenuAdmin(admin.ModelAdmin):
    list_display = ('name', 'owner', 'size', 'is_default', 'is_active', 'line_rich_menu_id')
    list_filter = ('is_default', 'is_active')
    inlines = [RichMenuAreaInline]


@admin.register(SecurityEvent)
class SecurityEventAdmin(admin.ModelAdmin):
    list_display = ('event_type', 'user', 'ip_address', 'created_at')
    list_filter = ('event_type',)
    readonly_fields = ('event_type', 'user', 'details', 'ip_address', 'created_at')
    ordering = ('-created_at',)
