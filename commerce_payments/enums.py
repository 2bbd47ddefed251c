import enum


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DISPATCHED = "DISPATCHED"
    TRANSIT = "TRANSIT"
    DELIVERED = "DELIVERED"
    UNDELIVERED = "UNDELIVERED"
    EXCEPTION = "EXCEPTION"
    EXPIRED = "EXPIRED"


class PreOrderStatus(str, enum.Enum):
    PLACED = "PLACED"
    CONFIRMED = "CONFIRMED"
    FULFILLED = "FULFILLED"


class ProviderKind(str, enum.Enum):
    STRIPE = "STRIPE"
    PAYPAL = "PAYPAL"


class DiscountType(str, enum.Enum):
    NONE = "NONE"
    PERCENTAGE = "PERCENTAGE"
    FLAT = "FLAT"


class Currency(str, enum.Enum):
    GBP = "GBP"
    USD = "USD"
    EUR = "EUR"


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    MODERATOR = "MODERATOR"


class MetadataType(str, enum.Enum):
    STORE_CHECKOUT = "store_checkout"
    SUBSCRIPTION = "subscription"
