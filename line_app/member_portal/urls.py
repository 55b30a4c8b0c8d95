from django.urls import path

from . import views

app_name = "member_portal"

urlpatterns = [
    path("page/", views.cms_page_view, name="cms_page_view"),
    path("page/timer/", views.get_timer_info, name="get_timer_info"),
    path("page/access/", views.manage_friend_page_access, name="manage_friend_page_access"),
    path("page/timer/settings/", views.update_page_timer_settings, name="update_page_timer_settings"),
    path("site/", views.member_site_view, name="member_site_view"),
    path("site/progress/", views.member_site_progress, name="member_site_progress"),
    path("forms/delete/", views.delete_form, name="delete_form"),
]
