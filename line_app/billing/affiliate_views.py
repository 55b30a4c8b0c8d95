"""
アフィリエイト (紹介報酬) の API
"""
from django.conf import settings
from django.contrib.auth import get_user_model
from django.contrib.auth.decorators import login_required
from django.db.models import Sum
from django.http import JsonResponse
from django.views.decorators.http import require_http_methods, require_POST

from billing.models import AffiliateCommission, AffiliatePayoutSettings, AffiliateRank, AffiliateReferral
from logger.set_logger import start_logger
from step_linebot.models import Profile
from step_linebot.utils.security import log_security_event, validate_email
from step_linebot.utils.tool import parse_json_body

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

RECENT_COMMISSIONS = 20
ADMIN_ROLES = ("admin", "developer")


def is_admin(user) -> bool:
    profile = Profile.objects.filter(user=user).first()
    return profile is not None and profile.user_role in ADMIN_ROLES


@login_required
def get_affiliate_earnings(request):
    referral_count = AffiliateReferral.objects.filter(referrer=request.user).count()
    commissions = AffiliateCommission.objects.filter(affiliate=request.user).order_by("-created_at")

    totals = dict(commissions.values_list("status").annotate(total=Sum("amount")).order_by())
    stats = {f"{status}_amount": totals.get(status) or 0 for status in ("pending", "approved", "paid")}
    recent = [
        {
            "source_event": c.source_event,
            "amount": c.amount,
            "status": c.status,
            "created_at": c.created_at.isoformat(),
        }
        for c in commissions[:RECENT_COMMISSIONS]
    ]
    return JsonResponse({"referral_count": referral_count, "stats": stats, "recent_commissions": recent})


@login_required
@require_POST
def admin_set_affiliate_rank(request):
    if not is_admin(request.user):
        return JsonResponse({"error": "Permission denied."}, status=403)
    try:
        data = parse_json_body(request)
    except ValueError as e:
        return JsonResponse({"error": str(e)}, status=400)

    user_id = data.get("user_id")
    if not user_id or "rank_id" not in data:
        return JsonResponse({"error": "user_id and rank_id are required."}, status=400)

    rank = None
    if data["rank_id"] is not None:
        rank = AffiliateRank.objects.filter(id=data["rank_id"]).first()
        if rank is None:
            return JsonResponse({"error": "Rank not found."}, status=404)

    user = get_user_model().objects.filter(pk=user_id).first()
    if user is None:
        return JsonResponse({"error": "User not found."}, status=404)
    profile, _ = Profile.objects.get_or_create(user=user)
    profile.affiliate_rank = rank
    profile.save(update_fields=["affiliate_rank"])

    log_security_event(
        "affiliate_rank_changed", user=request.user,
        details={"target_user": user.pk, "rank": rank.name if rank else None}, request=request,
    )
    return JsonResponse({"success": True})


@login_required
@require_http_methods(["GET", "POST"])
def affiliate_payout_settings(request):
    if request.method == "GET":
        settings_row = AffiliatePayoutSettings.objects.filter(affiliate=request.user).first()
        if settings_row is None:
            return JsonResponse({"settings": None})
        payload = {field: getattr(settings_row, field) for field in AffiliatePayoutSettings.EDITABLE_FIELDS}
        payload["updated_at"] = settings_row.updated_at.isoformat()
        return JsonResponse({"settings": payload})

    try:
        data = parse_json_body(request)
    except ValueError as e:
        return JsonResponse({"error": str(e)}, status=400)
    payout = data.get("payoutSettings")
    if not isinstance(payout, dict) or not payout:
        return JsonResponse({"error": "Payout settings are required."}, status=400)

    values = {key: str(value or "") for key, value in payout.items() if key in AffiliatePayoutSettings.EDITABLE_FIELDS}
    ignored = sorted(set(payout) - set(values))
    if ignored:
        logger.warning(f"[Payout Settings] ignored fields: {ignored}")
    if values.get("paypal_email") and not validate_email(values["paypal_email"]):
        return JsonResponse({"error": "Invalid PayPal email."}, status=400)

    AffiliatePayoutSettings.objects.update_or_create(affiliate=request.user, defaults=values)
    logger.info(f"[Payout Settings] updated by user: {request.user.pk}, fields: {sorted(values)}")
    return JsonResponse({"success": True})
