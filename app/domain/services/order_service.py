"""
Order Service - payment-driven order and listing transitions.

Every operation is idempotent for the same logical event: applying the same
transfer state twice leaves the order exactly as after the first time, and a
late event never moves an order backwards.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.listing import Listing, ListingStatus
from app.db.models.order import Order, OrderStatus, can_transition

logger = get_logger(__name__)

# Finix transfer states
TRANSFER_SUCCEEDED = "SUCCEEDED"
TRANSFER_FAILED = "FAILED"
TRANSFER_CANCELED = "CANCELED"
TRANSFER_PENDING = "PENDING"
TRANSFER_REVERSAL = "REVERSAL"


def is_reversal(transfer: dict[str, Any]) -> bool:
    """Finix marks refunds as transfers of type (or subtype) REVERSAL"""
    return TRANSFER_REVERSAL in (
        (transfer.get("type") or "").upper(),
        (transfer.get("subtype") or "").upper(),
    )


def _parse_timestamp(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class OrderService:
    """Order mutations triggered by payment events"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_for_transfer(
        self,
        transfer_id: str | None,
        authorization_id: str | None = None,
        payment_instrument_id: str | None = None,
    ) -> Order | None:
        """
        Locate the order a transfer belongs to: by transfer id first, then by
        the authorization tag, then by the payment instrument. The fallbacks
        let a transfer.updated that arrives before transfer.created still
        find its order.
        """
        if transfer_id:
            result = await self.db.execute(
                select(Order).where(Order.finix_transfer_id == transfer_id)
            )
            order = result.scalar_one_or_none()
            if order is not None:
                return order

        fallbacks = []
        if authorization_id:
            fallbacks.append(Order.finix_authorization_id == authorization_id)
        if payment_instrument_id:
            fallbacks.append(Order.finix_payment_instrument_id == payment_instrument_id)
        if not fallbacks:
            return None

        query = select(Order).where(or_(*fallbacks))
        if transfer_id:
            # never steal an order already linked to a different transfer
            query = query.where(Order.finix_transfer_id.is_(None))
        result = await self.db.execute(query.order_by(Order.id.desc()).limit(1))
        return result.scalar_one_or_none()

    async def find_by_authorization(self, authorization_id: str) -> Order | None:
        result = await self.db.execute(
            select(Order).where(Order.finix_authorization_id == authorization_id)
        )
        return result.scalar_one_or_none()

    def _move(self, order: Order, target: OrderStatus) -> bool:
        """Apply ``target`` if it is a forward move; False if ignored."""
        if order.status == target:
            return False
        if not can_transition(order.status, target):
            logger.info(
                "Ignoring order status regression",
                extra_data={
                    "order_id": order.id,
                    "current_status": order.status.value,
                    "target_status": target.value,
                },
            )
            return False

        now = utcnow()
        order.status = target
        if target == OrderStatus.PAID:
            order.paid_at = now
        elif target == OrderStatus.CANCELLED:
            order.cancelled_at = now
        elif target == OrderStatus.REFUNDED:
            order.refunded_at = now
        elif target == OrderStatus.AUTHORIZED:
            order.authorized_at = now
        return True

    async def _set_listing_status(self, listing_id: int | None, status: ListingStatus) -> None:
        if listing_id is None:
            return
        listing = await self.db.get(Listing, listing_id)
        if listing is None:
            logger.warning("Listing not found for order", extra_data={"listing_id": listing_id})
            return
        listing.status = status
        listing.reserved_by = None
        listing.reserved_until = None
        if status == ListingStatus.SOLD:
            listing.sold_at = utcnow()

    def link_transfer(self, order: Order, transfer_id: str) -> None:
        if order.finix_transfer_id != transfer_id:
            order.finix_transfer_id = transfer_id

    async def apply_transfer_state(
        self,
        order: Order,
        transfer: dict[str, Any],
    ) -> OrderStatus | None:
        """
        Map a Finix transfer state onto the order.

        Returns the new status when the order changed, None when the event
        was a no-op (pending transfer, duplicate, or regression).
        """
        state = (transfer.get("state") or "").upper()
        if state == TRANSFER_SUCCEEDED and is_reversal(transfer):
            if self._move(order, OrderStatus.REFUNDED):
                await self._set_listing_status(order.listing_id, ListingStatus.ACTIVE)
                return OrderStatus.REFUNDED
            return None

        if state == TRANSFER_SUCCEEDED:
            if self._move(order, OrderStatus.PAID):
                await self._set_listing_status(order.listing_id, ListingStatus.SOLD)
                return OrderStatus.PAID
            return None

        if state == TRANSFER_FAILED:
            if self._move(order, OrderStatus.CANCELLED):
                order.metadata_json = {
                    **(order.metadata_json or {}),
                    "payment_failure": {
                        "code": transfer.get("failure_code"),
                        "message": transfer.get("failure_message"),
                        "failed_at": utcnow().isoformat(),
                    },
                }
                return OrderStatus.CANCELLED
            return None

        if state == TRANSFER_CANCELED:
            return OrderStatus.CANCELLED if self._move(order, OrderStatus.CANCELLED) else None

        # PENDING or unknown: nothing to change
        return None

    def record_dispute(self, order: Order, dispute: dict[str, Any], *, created: bool) -> None:
        order.dispute_id = dispute.get("id")
        order.dispute_state = dispute.get("state")
        order.dispute_reason = dispute.get("reason")
        amount = dispute.get("amount")
        order.dispute_amount = int(amount) if isinstance(amount, (int, float)) else None
        order.dispute_respond_by = _parse_timestamp(dispute.get("respond_by"))
        if created and order.dispute_created_at is None:
            order.dispute_created_at = utcnow()

    def complete_three_ds(self, order: Order, succeeded: bool) -> OrderStatus | None:
        if order.three_ds_completed_at is None:
            order.three_ds_completed_at = utcnow()
        target = OrderStatus.AUTHORIZED if succeeded else OrderStatus.CANCELLED
        return target if self._move(order, target) else None
