from enum import Enum


class UserRole(str, Enum):
    CUSTOMER = "customer"
    MERCHANT_ADMIN = "merchant_admin"
    DRIVER = "driver"
    PLATFORM_ADMIN = "platform_admin"


class OrderStatus(str, Enum):
    PLACED = "PLACED"
    PREPARING = "PREPARING"
    READY = "READY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    PAYFAST = "PAYFAST"
    OZOW = "OZOW"
    SNAPSCAN = "SNAPSCAN"
    COD = "COD"


class DeliveryStatus(str, Enum):
    ASSIGNED = "ASSIGNED"
    DELIVERED = "DELIVERED"


class RewardTxType(str, Enum):
    EARN = "earn"
    REDEEM = "redeem"
    EXPIRE = "expire"
    ADJUST = "adjust"
