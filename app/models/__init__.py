from app.models.access_code import AccessCode  # noqa: F401
from app.models.consumption import ConsumptionIntent, ConsumptionKind  # noqa: F401
from app.models.idempotency import IdempotencyRecord  # noqa: F401
from app.models.notification import Notification, NotificationStatus  # noqa: F401
from app.models.order import (  # noqa: F401
    Order,
    OrderExternalRef,
    OrderStatus,
    PaymentProviderType,
    PaymentStatus,
    RemoteVoidStatus,
)
from app.models.subscription import Subscription, SubscriptionPlanType  # noqa: F401
