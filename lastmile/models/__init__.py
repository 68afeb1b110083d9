from lastmile.models.base import Base  # noqa: F401

from lastmile.models.tenant import Tenant, TenantSchema  # noqa: F401
from lastmile.models.fleet import Driver, Vehicle  # noqa: F401
from lastmile.models.delivery_request import DeliveryRequest, Destination, DestinationItem  # noqa: F401
from lastmile.models.trip import Trip  # noqa: F401
from lastmile.models.outbox import OutboxEvent  # noqa: F401
from lastmile.models.callback import CallbackDelivery, CallbackAttempt  # noqa: F401
