from django.urls import path
from . import views

app_name = 'monitor'

urlpatterns = [
    path('', views.monitor, name='monitor'),
    path('login/', views.login_view, name='login'),
    path('logout/', views.logout_view, name='logout'),
    path('friends/<uuid:friend_id>/', views.friend_detail, name='friend_detail'),
    path('friends/<uuid:friend_id>/status/', views.chat_history_status, name='chat_history_status'),
    path('friends/<uuid:friend_id>/reply/', views.send_reply, name='send_reply'),
]
