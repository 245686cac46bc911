# Overview: All permission definitions organized by category.
# Each permission is defined as: (code, name, description, category)

from .categories import PermissionCategory


# -- INVENTORY --

INVENTORY_PERMISSIONS = [
    (
        "VIEW_INVENTORY",
        "View Inventory",
        "View stock levels, movements and reconciliation",
        PermissionCategory.INVENTORY,
    ),
    (
        "RECEIVE_INVENTORY",
        "Receive Inventory",
        "Record purchase and opening receipts, register serial numbers",
        PermissionCategory.INVENTORY,
    ),
    (
        "VIEW_SERIALS",
        "View Serial Numbers",
        "Look up serialized units and their movement history",
        PermissionCategory.INVENTORY,
    ),
    (
        "CREATE_INVENTORY_CORRECTION",
        "Create Inventory Corrections",
        "Record physical counts that differ from system stock",
        PermissionCategory.INVENTORY,
    ),
    (
        "APPROVE_INVENTORY_CORRECTION",
        "Approve Inventory Corrections",
        "Approve or reject corrections requested by someone else; adjusts stock",
        PermissionCategory.INVENTORY,
    ),
]


# -- SALES --

SALES_PERMISSIONS = [
    (
        "CREATE_SALE",
        "Create Sale",
        "Commit sales at an accessible location",
        PermissionCategory.SALES,
    ),
    (
        "VOID_SALE",
        "Void Sale",
        "Void a completed sale and restore its stock",
        PermissionCategory.SALES,
    ),
    (
        "VIEW_SALES",
        "View Sales",
        "View sales and their items and payments",
        PermissionCategory.SALES,
    ),
]


# -- TRANSFERS --

TRANSFER_PERMISSIONS = [
    (
        "VIEW_TRANSFERS",
        "View Transfers",
        "View stock transfers",
        PermissionCategory.TRANSFERS,
    ),
    (
        "CREATE_TRANSFERS",
        "Create Transfers",
        "Draft transfers and submit them for checking",
        PermissionCategory.TRANSFERS,
    ),
    (
        "CHECK_TRANSFERS",
        "Check Transfers",
        "Approve or reject transfers created by someone else",
        PermissionCategory.TRANSFERS,
    ),
    (
        "SEND_TRANSFERS",
        "Send Transfers",
        "Dispatch checked transfers; deducts stock at the origin",
        PermissionCategory.TRANSFERS,
    ),
    (
        "RECEIVE_TRANSFERS",
        "Receive Transfers",
        "Mark transfers as arrived at the destination",
        PermissionCategory.TRANSFERS,
    ),
    (
        "VERIFY_TRANSFERS",
        "Verify Transfers",
        "Count received items and record variances",
        PermissionCategory.TRANSFERS,
    ),
    (
        "COMPLETE_TRANSFERS",
        "Complete Transfers",
        "Complete verified transfers; adds stock at the destination",
        PermissionCategory.TRANSFERS,
    ),
    (
        "CANCEL_TRANSFERS",
        "Cancel Transfers",
        "Cancel transfers before shipment",
        PermissionCategory.TRANSFERS,
    ),
]


# -- USERS --

USER_PERMISSIONS = [
    (
        "MANAGE_USERS",
        "Manage Users",
        "Create users, assign roles and location access",
        PermissionCategory.USERS,
    ),
    (
        "ACCESS_ALL_LOCATIONS",
        "Access All Locations",
        "Act at every location of the organization",
        PermissionCategory.USERS,
    ),
]


# -- SYSTEM --

SYSTEM_PERMISSIONS = [
    (
        "VIEW_AUDIT_LOG",
        "View Audit Log",
        "Read the audit log",
        PermissionCategory.SYSTEM,
    ),
    (
        "SYSTEM_ADMIN",
        "System Administration",
        "Full system administration",
        PermissionCategory.SYSTEM,
    ),
]


PERMISSION_DEFINITIONS = (
    INVENTORY_PERMISSIONS
    + SALES_PERMISSIONS
    + TRANSFER_PERMISSIONS
    + USER_PERMISSIONS
    + SYSTEM_PERMISSIONS
)
