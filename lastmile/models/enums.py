"""
Status and reason enums. Stored as their string values.
Labels/colours for UI live with the presentation layer, not here.
"""
from enum import Enum


class DeliveryRequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DestinationStatus(str, Enum):
    PENDING = "pending"
    ARRIVED = "arrived"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DestinationStatus.COMPLETED, DestinationStatus.FAILED)


class TripStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FailureReason(str, Enum):
    NOT_HOME = "not_home"
    REFUSED = "refused"
    WRONG_ADDRESS = "wrong_address"
    INACCESSIBLE = "inaccessible"
    OTHER = "other"


class ItemDeliveryReason(str, Enum):
    DAMAGED_IN_TRANSIT = "damaged_in_transit"
    CUSTOMER_REFUSED = "customer_refused"
    QUALITY_ISSUE = "quality_issue"
    WRONG_PRODUCT = "wrong_product"
    SHORTAGE = "shortage"
    OTHER = "other"


class CallbackStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    DEAD_LETTERED = "dead_lettered"


class EventType(str, Enum):
    DESTINATION_COMPLETED = "destination.completed"
    DESTINATION_FAILED = "destination.failed"
    TRIP_COMPLETED = "trip.completed"
