from .tenancy import Organization, Location
from .auth import User, UserLocationAccess, Role, UserRole, Permission, RolePermission, SessionToken
from .inventory import Product, ProductVariation, StockLevel, StockMovement
from .serials import SerializedUnit, UnitMovement
from .sales import Customer, Sale, SaleItem, Payment
from .documents import Transfer, TransferItem, DocumentSequence, StockReceipt, InventoryCorrection
from .audit import AuditLogEntry, ImmutableRecordError

__all__ = [
    'Organization', 'Location',
    'User', 'UserLocationAccess', 'Role', 'UserRole', 'Permission', 'RolePermission', 'SessionToken',
    'Product', 'ProductVariation', 'StockLevel', 'StockMovement',
    'SerializedUnit', 'UnitMovement',
    'Customer', 'Sale', 'SaleItem', 'Payment',
    'Transfer', 'TransferItem', 'DocumentSequence', 'StockReceipt', 'InventoryCorrection',
    'AuditLogEntry', 'ImmutableRecordError',
]
