from django.apps import AppConfig


class StepLinebotConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "step_linebot"
    verbose_name = "ステップ配信"
