from django.urls import path

from . import api_views, views

app_name = "step_linebot"

urlpatterns = [
    # Webhook
    path("callback/<int:owner_id>/", views.callback, name="line_callback"),

    # 招待・LIFF・LINEログイン
    path("invite/", views.scenario_invite, name="scenario_invite"),
    path("liff-invite/", views.liff_scenario_invite, name="liff_scenario_invite"),
    path("login/", views.scenario_login, name="scenario_login"),
    path("login/callback/", views.login_callback, name="login_callback"),
    path("login/complete/", views.login_complete, name="login_complete"),
    path("liff/register/", views.liff_handler, name="liff_handler"),

    # シナリオ・配信
    path("scenario/trigger/", views.trigger_scenario, name="trigger_scenario"),
    path("scenario/friend-status/", views.check_friend_status, name="check_friend_status"),
    path("scenario/restore/", views.scenario_restore, name="scenario_restore"),
    path("delivery/run/", views.scheduled_step_delivery, name="scheduled_step_delivery"),
    path("delivery/enhanced/", views.enhanced_step_delivery, name="enhanced_step_delivery"),
    path("richmenu/resolve-url/", views.liff_rich_menu_redirect, name="liff_rich_menu_redirect"),

    # オーナー向けAPI
    path("api/richmenu/", api_views.upsert_rich_menu, name="upsert_rich_menu"),
    path("api/richmenu/default/", api_views.set_default_rich_menu, name="set_default_rich_menu"),
    path("api/richmenu/link/", api_views.link_rich_menu_to_user, name="link_rich_menu_to_user"),
    path("api/richmenu/user/", api_views.get_user_rich_menu, name="get_user_rich_menu"),
    path("api/messages/flex/", api_views.send_flex_message, name="send_flex_message"),
    path("api/messages/send/", api_views.send_line_message, name="send_line_message"),
    path("api/messages/test/", api_views.send_test_message, name="send_test_message"),
    path("api/messages/quota/", api_views.get_message_quota, name="get_message_quota"),
    path("api/friends/sync/", api_views.get_line_friends, name="get_line_friends"),
    path("api/settings/greeting/", api_views.update_line_settings, name="update_line_settings"),
    path("api/settings/line/", api_views.update_line_api_settings, name="update_line_api_settings"),
    path("api/credentials/encrypt/", api_views.encrypt_credential_view, name="encrypt_credential"),
    path("api/credentials/decrypt/", api_views.decrypt_credential_view, name="decrypt_credential"),
]
