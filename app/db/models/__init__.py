"""
Database Models
"""
from app.db.models.webhook_event import WebhookEvent
from app.db.models.raw_webhook_event import FinixWebhookEvent, GetstreamWebhookEvent
from app.db.models.webhook_job import WebhookJob
from app.db.models.order import Order
from app.db.models.listing import Listing
from app.db.models.merchant_onboarding import MerchantOnboarding
from app.db.models.chat_message import ChatMessage

__all__ = [
    "WebhookEvent",
    "FinixWebhookEvent",
    "GetstreamWebhookEvent",
    "WebhookJob",
    "Order",
    "Listing",
    "MerchantOnboarding",
    "ChatMessage",
]
