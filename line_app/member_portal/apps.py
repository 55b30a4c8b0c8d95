from django.apps import AppConfig


class MemberPortalConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "member_portal"
    verbose_name = "会員ページ"
