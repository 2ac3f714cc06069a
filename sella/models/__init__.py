# sella/models/__init__.py
from .catalog import *      # Merchant, MerchantOutlet, Product
from .user import *         # Customer
from .order import *        # Order, OrderItem
from .payment import *      # Payment, Delivery
from .rewards import *      # RewardWallet, RewardTransaction
from .audit_log import *    # AuditLog
