# Overview: Permission category constants for grouping related permissions.


class PermissionCategory:
    """Permission categories for grouping and display."""
    INVENTORY = "INVENTORY"
    SALES = "SALES"
    TRANSFERS = "TRANSFERS"
    USERS = "USERS"
    SYSTEM = "SYSTEM"
