# Overview: Default permission sets for the built-in roles.

from .helpers import get_all_permission_codes


DEFAULT_ROLES = [
    ("admin", "Full system access"),
    ("manager", "Branch management, voids and transfer checks"),
    ("cashier", "Point-of-sale only"),
    ("warehouse", "Receiving, dispatch and transfer verification"),
    ("checker", "Transfer checking only"),
]


DEFAULT_ROLE_PERMISSIONS = {
    "admin": get_all_permission_codes(),
    "manager": [
        "VIEW_INVENTORY",
        "RECEIVE_INVENTORY",
        "VIEW_SERIALS",
        "CREATE_INVENTORY_CORRECTION",
        "APPROVE_INVENTORY_CORRECTION",
        "CREATE_SALE",
        "VOID_SALE",
        "VIEW_SALES",
        "VIEW_TRANSFERS",
        "CREATE_TRANSFERS",
        "CHECK_TRANSFERS",
        "SEND_TRANSFERS",
        "RECEIVE_TRANSFERS",
        "VERIFY_TRANSFERS",
        "COMPLETE_TRANSFERS",
        "CANCEL_TRANSFERS",
        "VIEW_AUDIT_LOG",
    ],
    "cashier": [
        "VIEW_INVENTORY",
        "VIEW_SERIALS",
        "CREATE_SALE",
        "VIEW_SALES",
    ],
    "warehouse": [
        "VIEW_INVENTORY",
        "RECEIVE_INVENTORY",
        "VIEW_SERIALS",
        "CREATE_INVENTORY_CORRECTION",
        "VIEW_TRANSFERS",
        "CREATE_TRANSFERS",
        "SEND_TRANSFERS",
        "RECEIVE_TRANSFERS",
        "VERIFY_TRANSFERS",
        "COMPLETE_TRANSFERS",
        "CANCEL_TRANSFERS",
    ],
    "checker": [
        "VIEW_INVENTORY",
        "VIEW_TRANSFERS",
        "CHECK_TRANSFERS",
    ],
}
