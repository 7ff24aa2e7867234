"""Infrastructure models package exports."""
from .base import Base, metadata
from .order import OrderModel, OrderTimelineEventModel
from .listing import ListingModel, OfferModel
from .dispute import DisputeModel
from .webhook_event import WebhookEventModel
from .side_effect import OutboxModel, AuditLogModel, NotificationModel

__all__ = [
    "Base",
    "metadata",
    "OrderModel",
    "OrderTimelineEventModel",
    "ListingModel",
    "OfferModel",
    "DisputeModel",
    "WebhookEventModel",
    "OutboxModel",
    "AuditLogModel",
    "NotificationModel",
]
