"""
Finix (payments) event handlers.

Handlers are idempotent: re-running one for the same event leaves the
database unchanged. Out-of-order deliveries either self-heal (transfer
lookups fall back to authorization / payment instrument) or raise
PrerequisiteMissingError so the queue retries later.
"""
from __future__ import annotations

from app.core.exceptions import HandlerError, PrerequisiteMissingError
from app.core.logging import get_logger
from app.db.models.order import Order, OrderStatus
from app.domain.services.merchant_onboarding_service import MerchantOnboardingService
from app.domain.services.order_service import OrderService, TRANSFER_SUCCEEDED, is_reversal
from app.webhooks.adapters import FinixAdapter
from app.workers.registry import HandlerContext, HandlerRegistry

logger = get_logger(__name__)

PROVIDER = "finix"

_STATUS_MESSAGES = {
    OrderStatus.PAID: "Payment received. The seller has been notified to ship the item.",
    OrderStatus.CANCELLED: "The payment for this order did not go through and the order was cancelled.",
    OrderStatus.REFUNDED: "This order has been refunded.",
}


def _resource(ctx: HandlerContext, entity: str) -> dict:
    resource = FinixAdapter.resource(ctx.payload, entity)
    if resource is None:
        raise HandlerError(f"Missing {entity} data in {ctx.event_type}")
    return resource


async def _notify_chat(ctx: HandlerContext, order: Order, status: OrderStatus) -> None:
    """Best-effort system message in the order's chat channel."""
    chat_client = ctx.services.get("chat_client")
    text = _STATUS_MESSAGES.get(status)
    if chat_client is None or not order.chat_channel_id or not text:
        return
    try:
        await chat_client.send_system_message("messaging", order.chat_channel_id, text)
    except Exception as exc:
        logger.warning(
            "Could not post order status to chat",
            extra_data={"order_id": order.id, "status": status.value, "error": str(exc)},
        )


async def handle_onboarding_form(ctx: HandlerContext) -> str:
    form = _resource(ctx, "onboarding_form")
    completed = (
        form.get("status") == "COMPLETED"
        if ctx.event_type == "onboarding_form.updated"
        else bool(form.get("identity_id"))
    )
    if not completed:
        return f"Onboarding form {form.get('id')} not completed yet"

    user_id = (form.get("tags") or {}).get("dialist_user_id")
    identity_id = form.get("identity_id")
    if not user_id:
        raise HandlerError(f"Missing dialist_user_id tag on onboarding form {form.get('id')}")
    if not identity_id:
        raise HandlerError(f"Missing identity_id in completed onboarding form {form.get('id')}")

    await MerchantOnboardingService(ctx.db).store_identity(form["id"], str(user_id), identity_id)
    return f"Stored identity {identity_id} for user {user_id}"


async def handle_merchant(ctx: HandlerContext) -> str:
    merchant = _resource(ctx, "merchant")
    identity_id = merchant.get("identity")
    if not identity_id:
        raise HandlerError("Missing identity field in merchant data")

    onboarding = await MerchantOnboardingService(ctx.db).update_merchant(
        identity_id,
        merchant_id=merchant["id"],
        onboarding_state=merchant.get("onboarding_state"),
        verification_id=merchant.get("verification"),
    )
    return f"Merchant {merchant['id']} is {onboarding.onboarding_state}"


async def handle_verification(ctx: HandlerContext) -> str:
    verification = _resource(ctx, "verification")
    identity_id = verification.get("identity") or verification.get("merchant_identity")
    if not identity_id:
        raise HandlerError("Missing identity field in verification data")

    await MerchantOnboardingService(ctx.db).update_verification(
        identity_id,
        verification_id=verification.get("id"),
        verification_state=verification.get("state"),
    )
    return f"Verification for {identity_id} is {verification.get('state')}"


async def handle_transfer_created(ctx: HandlerContext) -> str:
    transfer = _resource(ctx, "transfer")
    transfer_id = transfer.get("id")
    if is_reversal(transfer):
        # refunds are applied from transfer.updated once they settle
        return f"Reversal {transfer_id} created for transfer {transfer.get('parent_transfer')}"

    authorization_id = (transfer.get("tags") or {}).get("authorization_id")
    service = OrderService(ctx.db)

    order = await service.find_for_transfer(transfer_id, authorization_id, transfer.get("source"))
    if order is None:
        logger.warning(
            "No order found for transfer",
            extra_data={"transfer_id": transfer_id, "authorization_id": authorization_id},
        )
        return f"No order for transfer {transfer_id}"

    service.link_transfer(order, transfer_id)
    new_status = None
    if (transfer.get("state") or "").upper() == TRANSFER_SUCCEEDED:
        new_status = await service.apply_transfer_state(order, transfer)
    await ctx.db.flush()
    if new_status is not None:
        await _notify_chat(ctx, order, new_status)
    return f"Transfer {transfer_id} linked to order {order.id} ({order.status.value})"


async def handle_transfer_updated(ctx: HandlerContext) -> str:
    transfer = _resource(ctx, "transfer")
    transfer_id = transfer.get("id")
    if not transfer_id:
        raise HandlerError("Missing transfer id in transfer.updated")

    service = OrderService(ctx.db)
    reversal = is_reversal(transfer)
    if reversal:
        # a refund is its own transfer; the order holds the original one
        order = await service.find_for_transfer(transfer.get("parent_transfer") or transfer_id)
    else:
        order = await service.find_for_transfer(
            transfer_id,
            (transfer.get("tags") or {}).get("authorization_id"),
            transfer.get("source"),
        )
    if order is None:
        # the order may not be committed yet; retry until it is
        raise PrerequisiteMissingError("Order", transfer_id)

    if not reversal:
        service.link_transfer(order, transfer_id)
    new_status = await service.apply_transfer_state(order, transfer)
    await ctx.db.flush()
    if new_status is not None:
        await _notify_chat(ctx, order, new_status)
    return f"Transfer {transfer_id} is {transfer.get('state')}, order {order.id} is {order.status.value}"


async def handle_dispute(ctx: HandlerContext) -> str:
    dispute = _resource(ctx, "dispute")
    service = OrderService(ctx.db)
    order = await service.find_for_transfer(dispute.get("transfer"))
    if order is None:
        logger.warning(
            "No order found for dispute",
            extra_data={"dispute_id": dispute.get("id"), "transfer_id": dispute.get("transfer")},
        )
        return f"No order for dispute {dispute.get('id')}"

    service.record_dispute(order, dispute, created=ctx.event_type == "dispute.created")
    return f"Dispute {dispute.get('id')} recorded on order {order.id}"


async def handle_three_ds_complete(ctx: HandlerContext) -> str:
    authorization = _resource(ctx, "authorization")
    service = OrderService(ctx.db)
    order = await service.find_by_authorization(authorization.get("id"))
    if order is None:
        return f"No order for authorization {authorization.get('id')}"

    service.complete_three_ds(order, authorization.get("state") == TRANSFER_SUCCEEDED)
    return f"3DS {authorization.get('state')} for order {order.id}"


def register_finix_handlers(registry: HandlerRegistry) -> None:
    registry.register(PROVIDER, "onboarding_form.created", handle_onboarding_form)
    registry.register(PROVIDER, "onboarding_form.updated", handle_onboarding_form)
    for event_type in ("merchant.created", "merchant.updated", "merchant.underwritten"):
        registry.register(PROVIDER, event_type, handle_merchant)
    registry.register(PROVIDER, "verification.updated", handle_verification)
    registry.register(PROVIDER, "transfer.created", handle_transfer_created)
    registry.register(PROVIDER, "transfer.updated", handle_transfer_updated)
    registry.register(PROVIDER, "dispute.created", handle_dispute)
    registry.register(PROVIDER, "dispute.updated", handle_dispute)
    registry.register(PROVIDER, "authorization.3ds_authentication_complete", handle_three_ds_complete)
