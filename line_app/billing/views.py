from django.conf import settings
from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.http import HttpResponse, JsonResponse
from django.shortcuts import redirect, render
from django.urls import reverse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST
import stripe

from billing.models import Order, Product, StripeEvent
from billing.utils import stripe_handler
from logger.set_logger import start_logger
from step_linebot.utils.errors import BillingError
from step_linebot.utils.tool import get_public_url, parse_json_body

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])


def find_product(product_id):
    if not product_id:
        return None
    try:
        return Product.objects.select_related("owner").filter(id=product_id, is_active=True).first()
    except ValidationError:
        return None


def checkout_urls():
    base = get_public_url().rstrip("/")
    success_url = base + reverse("billing:success") + "?session_id={CHECKOUT_SESSION_ID}"
    cancel_url = base + reverse("billing:cancel")
    return success_url, cancel_url


@csrf_exempt
def create_checkout_session(request):
    """
    POST: JSON で {url, session_id} を返す
    GET : ?product_id=... で Checkout へリダイレクト (決済リンクとして使う)
    """
    if request.method == "GET":
        data = request.GET
    elif request.method == "POST":
        try:
            data = parse_json_body(request)
        except ValueError as e:
            return JsonResponse({"error": str(e)}, status=400)
    else:
        return JsonResponse({"error": "Method not allowed"}, status=405)

    product_id = data.get("product_id")
    if not product_id:
        return JsonResponse({"error": "商品IDが必要です"}, status=400)
    product = find_product(product_id)
    if product is None:
        return JsonResponse({"error": "商品が見つかりません"}, status=404)

    utm = {key: data.get(key) for key in stripe_handler.UTM_KEYS}
    success_url, cancel_url = checkout_urls()
    try:
        session, _ = stripe_handler.create_checkout(
            product, success_url, cancel_url, uid=data.get("uid") or "", utm=utm, tabs=1
        )
    except BillingError as e:
        logger.warning(f"[Checkout] product: {product_id}, error: {e}")
        return JsonResponse({"error": str(e)}, status=e.status)
    except stripe.StripeError as e:
        logger.error(f"[Checkout] Stripe error: {str(e)}")
        return JsonResponse({"error": "決済セッションの作成に失敗しました", "details": str(e)}, status=500)

    if request.method == "GET":
        return redirect(session.url)
    return JsonResponse({"url": session.url, "session_id": session.id})


@csrf_exempt
@require_POST
def public_get_product(request):
    try:
        data = parse_json_body(request)
    except ValueError as e:
        return JsonResponse({"success": False, "error": str(e)}, status=400)

    product = find_product(data.get("product_id"))
    if product is None:
        return JsonResponse({"success": False, "error": "Product not found or inactive"}, status=404)

    return JsonResponse({
        "success": True,
        "product": {
            "id": str(product.id),
            "name": product.name,
            "description": product.description,
            "stripe_price_id": product.stripe_price_id,
            "product_type": product.product_type,
            "price": product.price,
            "currency": product.currency,
            "is_active": product.is_active,
            "user_id": product.owner_id,
            "landing_page_title": product.landing_page_title,
            "landing_page_content": product.landing_page_content,
            "landing_page_image_url": product.landing_page_image_url,
            "button_text": product.button_text,
            "button_color": product.button_color,
            "success_redirect_url": product.success_redirect_url,
            "cancel_redirect_url": product.cancel_redirect_url,
        },
    })


@method_decorator(csrf_exempt, name='dispatch')
class StripeWebhookView(View):
    """Stripe Webhookハンドラー (オーナーごとのエンドポイント)"""

    def post(self, request, owner_id):
        logger.info(f"[Stripe Webhook] Received POST request, owner: {owner_id}")
        payload = request.body
        sig_header = request.META.get('HTTP_STRIPE_SIGNATURE')
        if not sig_header:
            return JsonResponse({"error": "Missing Stripe signature"}, status=400)

        try:
            event = stripe_handler.construct_event(owner_id, payload, sig_header)
        except ValueError:
            return HttpResponse(status=400)
        except stripe.SignatureVerificationError:
            logger.warning(f"\t[Stripe Webhook] Invalid signature, owner: {owner_id}")
            return HttpResponse(status=400)
        except BillingError as e:
            logger.error(f"\t[Stripe Webhook] {e}, owner: {owner_id}")
            return JsonResponse({"error": str(e)}, status=400)

        logger.debug(f"\t[Stripe Webhook] Event type: {event['type']}, id: {event['id']}")
        if StripeEvent.objects.filter(event_id=event['id']).exists():
            logger.info(f"\t[Stripe Webhook] Duplicate event: {event['id']}")
            return JsonResponse({"received": True})

        handler = stripe_handler.EVENT_HANDLERS.get(event['type'])
        try:
            # 失敗時はイベント記録ごとロールバックし，Stripe の再送に任せる
            with transaction.atomic():
                StripeEvent.objects.create(
                    event_id=event['id'],
                    event_type=event['type'],
                    owner_id=owner_id,
                    livemode=bool(event.get('livemode', False)),
                )
                if handler is not None:
                    handler(event['data']['object'], tabs=1)
                else:
                    logger.debug(f"\t[Stripe Webhook] Unhandled event type: {event['type']}")
        except IntegrityError:
            # 同じイベントの同時受信
            return JsonResponse({"received": True})

        return JsonResponse({"received": True})


@login_required
@require_POST
def stripe_refund(request):
    try:
        data = parse_json_body(request)
    except ValueError as e:
        return JsonResponse({"success": False, "error": str(e)}, status=400)

    order_id = data.get("orderId")
    if not order_id:
        return JsonResponse({"success": False, "error": "orderId is required"}, status=400)
    try:
        order = Order.objects.filter(id=order_id, owner=request.user).first()
    except ValidationError:
        order = None
    if order is None:
        return JsonResponse({"success": False, "error": "Order not found"}, status=404)

    try:
        result = stripe_handler.refund_order(order, tabs=1)
    except BillingError as e:
        return JsonResponse({"success": False, "error": str(e)}, status=e.status)
    except stripe.StripeError as e:
        logger.error(f"[Refund] order: {order_id}, Stripe error: {str(e)}")
        return JsonResponse({"success": False, "error": str(e)}, status=500)
    return JsonResponse(result)


@login_required
@require_POST
def stripe_cancel_subscription(request):
    try:
        data = parse_json_body(request)
    except ValueError as e:
        return JsonResponse({"success": False, "error": str(e)}, status=400)

    customer_id = data.get("customerId")
    if not customer_id:
        return JsonResponse({"success": False, "error": "customerId is required"}, status=400)

    try:
        result = stripe_handler.cancel_customer_subscriptions(request.user, customer_id, tabs=1)
    except BillingError as e:
        return JsonResponse({"success": False, "error": str(e)}, status=e.status)
    except stripe.StripeError as e:
        logger.error(f"[Cancel Subscription] customer: {customer_id}, Stripe error: {str(e)}")
        return JsonResponse({"success": False, "error": str(e)}, status=500)
    return JsonResponse(result)


def payment_success(request):
    """決済完了ページ"""
    session_id = request.GET.get('session_id')
    logger.info(f"[Payment Success] session_id: {session_id}")
    order = Order.objects.filter(stripe_session_id=session_id).select_related("product").first() if session_id else None
    return render(request, 'billing/success.html', {"order": order})


def payment_cancel(request):
    """決済キャンセルページ"""
    logger.info("[Payment Cancel] checkout canceled")
    return render(request, 'billing/cancel.html')
