import secrets

import stripe
from django.conf import settings
from django.db import transaction

# 自作モジュールのインポート
from logger.set_logger import start_logger
from logger.ansi import *
from billing.models import Order, ProductAction, StripeCredential
from step_linebot.models import LineFriend, Tag
from step_linebot.utils.errors import BillingError
from step_linebot.utils.scenario import trigger_scenario_delivery_for_friend

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign")


def get_credential(owner_id) -> StripeCredential:
    credential = StripeCredential.objects.filter(owner_id=owner_id).first()
    if credential is None:
        raise BillingError("Stripe設定が見つかりません")
    return credential


def detect_secret_key(credential, price_id, tabs=0):
    """
    価格IDが存在する環境のシークレットキーを返す. テスト環境を優先して確認する

    Returns:
        (secret_key, livemode)
    """
    indent = "\t" * tabs
    test_key = credential.get_secret("test_secret_key")
    live_key = credential.get_secret("live_secret_key")
    if not test_key and not live_key:
        raise BillingError("Stripe設定が不完全です")

    for key, livemode in ((test_key, False), (live_key, True)):
        if not key:
            continue
        try:
            stripe.Price.retrieve(price_id, api_key=key)
        except stripe.StripeError as e:
            logger.debug(f"{indent}[Stripe Key] price {price_id} not found (livemode={livemode}): {e.user_message or e}")
            continue
        logger.debug(f"{indent}[Stripe Key] price {price_id} found (livemode={livemode})")
        return key, livemode

    raise BillingError(f"Stripe価格IDが見つかりません: {price_id}")


def key_for_mode(credential, livemode: bool) -> str:
    key = credential.get_secret("live_secret_key" if livemode else "test_secret_key")
    if not key:
        raise BillingError(f"Stripe {'live' if livemode else 'test'} secret key not configured")
    return key


def create_checkout(product, success_url, cancel_url, uid="", utm=None, tabs=0):
    """
    商品の Checkout Session を作成し，pending の注文を記録する

    Returns:
        (stripe.checkout.Session, Order)
    """
    indent = "\t" * tabs
    utm = utm or {}
    credential = get_credential(product.owner_id)
    secret_key, livemode = detect_secret_key(credential, product.stripe_price_id, tabs=tabs + 1)

    mode = "subscription" if product.product_type == "subscription" else "payment"
    metadata = {
        "product_id": str(product.id),
        "manager_user_id": str(product.owner_id),
        "product_type": product.product_type,
        "nonce": secrets.token_hex(8),
        "uid": uid or "",
        **{key: utm.get(key) or "" for key in UTM_KEYS},
    }
    params = {
        "line_items": [{"price": product.stripe_price_id, "quantity": 1}],
        "mode": mode,
        "success_url": product.success_redirect_url or success_url,
        "cancel_url": product.cancel_redirect_url or cancel_url,
        "metadata": metadata,
        "client_reference_id": uid or "no-uid",
        "allow_promotion_codes": True,
    }
    if mode == "subscription" and product.trial_period_days:
        params["subscription_data"] = {"trial_period_days": product.trial_period_days}

    session = stripe.checkout.Session.create(api_key=secret_key, **params)
    order = Order.objects.create(
        owner_id=product.owner_id,
        product=product,
        stripe_session_id=session.id,
        amount=product.price,
        currency=product.currency,
        status=Order.PENDING,
        livemode=livemode,
        friend_uid=(uid or "")[:6],
        metadata={key: value for key, value in metadata.items() if key not in ("product_id", "manager_user_id")},
    )
    logger.info(f"{indent}[Checkout Created] product: {product.name}, session: {session.id}, livemode: {livemode}")
    return session, order


def construct_event(owner_id, payload, sig_header):
    """
    オーナーの Webhook シークレット (テスト/ライブ) で署名を検証し，イベントを dict で返す
    どちらでも検証できなければ stripe.SignatureVerificationError
    """
    credential = get_credential(owner_id)
    secrets_to_try = [
        credential.get_secret(field) for field in ("test_webhook_secret", "live_webhook_secret")
    ]
    secrets_to_try = [s for s in secrets_to_try if s]
    if not secrets_to_try:
        raise BillingError("Stripe webhook secret not configured")

    last_error = None
    for endpoint_secret in secrets_to_try:
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
        except stripe.SignatureVerificationError as e:
            last_error = e
            continue
        return event.to_dict()
    raise last_error


def find_friend(owner_id, uid):
    if not uid:
        return None
    return LineFriend.objects.filter(owner_id=owner_id, short_uid=uid.upper()).first()


def execute_product_actions(product_id, owner_id, uid, action_type, tabs=0):
    """
    商品に設定された success / failure アクションを uid の友だちに適用する
    """
    indent = "\t" * tabs
    actions = ProductAction.objects.filter(product_id=product_id, product__owner_id=owner_id, action_type=action_type)
    friend = find_friend(owner_id, uid)
    if not actions.exists():
        return 0
    if friend is None:
        logger.warning(f"{indent}[Product Actions] friend not found for uid: {uid}")
        return 0

    executed = 0
    for action in actions:
        if action.action_name == "add_tag" and action.tag_name:
            tag, _ = Tag.objects.get_or_create(owner_id=owner_id, name=action.tag_name)
            friend.tags.add(tag)
        elif action.action_name == "remove_tag" and action.tag_name:
            friend.tags.remove(*Tag.objects.filter(owner_id=owner_id, name=action.tag_name))
        elif action.action_name == "start_scenario" and action.scenario_id:
            trigger_scenario_delivery_for_friend(friend.line_user_id, action.scenario_id, tabs=tabs + 1)
        else:
            continue
        executed += 1
        logger.info(f"{indent}[Product Action] {action_type}/{action.action_name} friend: {friend.short_uid}")
    return executed


def handle_checkout_completed(session, tabs=0):
    indent = "\t" * tabs
    metadata = session.get("metadata") or {}
    updated = Order.objects.filter(stripe_session_id=session["id"]).update(
        status=Order.PAID,
        stripe_customer_id=session.get("customer") or "",
        stripe_payment_intent_id=session.get("payment_intent") or "",
    )
    logger.info(f"{indent}[Checkout Completed] session: {session['id']}, orders: {updated}")

    if metadata.get("product_id") and metadata.get("manager_user_id"):
        execute_product_actions(
            metadata["product_id"], metadata["manager_user_id"], metadata.get("uid"), "success", tabs=tabs + 1
        )


def handle_payment_succeeded(payment_intent, tabs=0):
    indent = "\t" * tabs
    Order.objects.filter(stripe_payment_intent_id=payment_intent["id"]).update(status=Order.PAID)
    logger.info(f"{indent}[Payment Succeeded] payment_intent: {payment_intent['id']}")


def handle_payment_failed(payment_intent, tabs=0):
    indent = "\t" * tabs
    orders = list(Order.objects.filter(stripe_payment_intent_id=payment_intent["id"]))
    Order.objects.filter(id__in=[o.id for o in orders]).update(status=Order.FAILED)
    logger.warning(f"{indent}[Payment Failed] payment_intent: {payment_intent['id']}, orders: {len(orders)}")

    for order in orders:
        if order.product_id:
            execute_product_actions(order.product_id, order.owner_id, order.friend_uid, "failure", tabs=tabs + 1)


def handle_checkout_expired(session, tabs=0):
    indent = "\t" * tabs
    Order.objects.filter(stripe_session_id=session["id"]).update(status=Order.EXPIRED)
    logger.info(f"{indent}[Checkout Expired] session: {session['id']}")


def handle_invoice_payment_succeeded(invoice, tabs=0):
    indent = "\t" * tabs
    logger.info(f"{indent}[Invoice Paid] invoice: {invoice['id']}, subscription: {invoice.get('subscription')}, "
                f"customer: {invoice.get('customer')}")


EVENT_HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "payment_intent.succeeded": handle_payment_succeeded,
    "payment_intent.payment_failed": handle_payment_failed,
    "checkout.session.expired": handle_checkout_expired,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
}


def refund_order(order, tabs=0):
    """
    注文を返金する. 手動登録の注文 (payment_intent なし) はDBの状態だけ変更する
    """
    indent = "\t" * tabs
    if order.status == Order.REFUNDED:
        return {"success": True, "message": "Order already refunded", "refundId": "already-refunded", "amount": order.amount}
    if order.status != Order.PAID:
        raise BillingError("Only paid orders can be refunded")

    if not order.stripe_payment_intent_id:
        Order.objects.filter(id=order.id).update(status=Order.REFUNDED)
        logger.info(f"{indent}[Refund] manual order: {order.id}")
        return {"success": True, "refundId": "manual-refund", "amount": order.amount, "manual": True}

    secret_key = key_for_mode(get_credential(order.owner_id), order.livemode)
    refund = stripe.Refund.create(
        payment_intent=order.stripe_payment_intent_id,
        amount=order.amount,
        reason="requested_by_customer",
        metadata={"order_id": str(order.id), "user_id": str(order.owner_id)},
        api_key=secret_key,
    )
    Order.objects.filter(id=order.id).update(status=Order.REFUNDED)
    logger.info(f"{indent}[Refund] order: {order.id}, refund: {refund.id}, amount: {refund.amount}")
    return {"success": True, "refundId": refund.id, "amount": refund.amount}


def cancel_customer_subscriptions(owner, customer_id, tabs=0):
    indent = "\t" * tabs
    order = Order.objects.filter(owner=owner, stripe_customer_id=customer_id).order_by("-created_at").first()
    if order is None:
        raise BillingError("Customer orders not found", status=404)

    secret_key = key_for_mode(get_credential(owner.pk), order.livemode)
    subscriptions = stripe.Subscription.list(customer=customer_id, status="active", limit=10, api_key=secret_key)
    if not subscriptions.data:
        return {"success": False, "error": "No active subscriptions found for this customer", "already_canceled": True}

    canceled = []
    for subscription in subscriptions.data:
        result = stripe.Subscription.cancel(subscription.id, api_key=secret_key)
        canceled.append({"id": result.id, "status": result.status, "cancelled_at": getattr(result, "canceled_at", None)})

    with transaction.atomic():
        Order.objects.filter(owner=owner, stripe_customer_id=customer_id, status=Order.PAID).update(
            status=Order.SUBSCRIPTION_CANCELED
        )
    logger.info(f"{indent}[Subscription Canceled] customer: {customer_id}, count: {len(canceled)}")
    return {"success": True, "customerId": customer_id, "cancelledSubscriptions": canceled}
