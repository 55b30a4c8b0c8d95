from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("line/", include("step_linebot.urls")),
    path("portal/", include("member_portal.urls")),
    path("billing/", include("billing.urls")),
    path("", include("monitor.urls")),
]
