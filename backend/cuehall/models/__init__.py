from .auth import User, SessionToken, ReAuthGrant
from .tables import Table
from .iot import IotDevice, IotCommand
from .billing import BillingSession, BillingSessionEvent, BillingPackage, BillingPackageItem, PackageUsage
from .orders import MenuItem, Order, OrderItem

__all__ = [
    'User', 'SessionToken', 'ReAuthGrant',
    'Table',
    'IotDevice', 'IotCommand',
    'BillingSession', 'BillingSessionEvent', 'BillingPackage', 'BillingPackageItem', 'PackageUsage',
    'MenuItem', 'Order', 'OrderItem',
]
