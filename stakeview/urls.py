from django.urls import path, include


def health_check(request):
    from django.http import JsonResponse

    return JsonResponse({"status": "ok"})


urlpatterns = [
    path("healthz", health_check),
    path("staking/", include("stakeview.apps.staking.urls")),
]
