import enum


class OrderStatus(str, enum.Enum):
    pending = "PENDING"
    paid = "PAID"
    shipped = "SHIPPED"
    delivered = "DELIVERED"
    cancelled = "CANCELLED"
    refunded = "REFUNDED"


class PaymentStatus(str, enum.Enum):
    pending = "PENDING"
    paid = "PAID"
    refunded = "REFUNDED"


class InventoryOperationType(str, enum.Enum):
    decrement = "DECREMENT"
    increment = "INCREMENT"


class Severity(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"
