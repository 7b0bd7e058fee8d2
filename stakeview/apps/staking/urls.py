from django.urls import path

from .views import (
    account_summary_view,
    activity_view,
    bonds_view,
    company_pool_view,
    directs_view,
    downline_view,
    roi_history_view,
    stake_history_view,
    submit_write_view,
    unstake_history_view,
    users_batch_view,
    write_status_view,
)

urlpatterns = [
    path("accounts/<str:address>/", account_summary_view, name="account_summary"),
    path("accounts/<str:address>/bonds/", bonds_view, name="bonds"),
    path("accounts/<str:address>/activity/", activity_view, name="activity"),
    path("accounts/<str:address>/stakes/", stake_history_view, name="stake_history"),
    path("accounts/<str:address>/unstakes/", unstake_history_view, name="unstake_history"),
    path("accounts/<str:address>/roi/", roi_history_view, name="roi_history"),
    path("accounts/<str:address>/downline/", downline_view, name="downline"),
    path("accounts/<str:address>/directs/", directs_view, name="directs"),
    path("users/", users_batch_view, name="users_batch"),
    path("pool/", company_pool_view, name="company_pool"),
    path("writes/", submit_write_view, name="submit_write"),
    path("writes/<str:task_id>/", write_status_view, name="write_status"),
]
