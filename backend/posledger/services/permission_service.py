# Overview: Service-layer operations for permissions and location access.

"""
Permission checks and location scoping.

- Fail closed: a user holds exactly the union of their roles' permissions.
- Denials are logged through the application logger.
- Location access: ACCESS_ALL_LOCATIONS, the user's home location, or an
  explicit UserLocationAccess grant. Transfer send/receive steps are checked
  against the origin/destination through user_can_access_location.
"""

from flask import current_app

from ..extensions import db
from ..models import User, UserRole, Role, RolePermission, Permission, UserLocationAccess, Location
from ..permissions import PERMISSION_DEFINITIONS, DEFAULT_ROLE_PERMISSIONS
from .errors import LocationAccessDenied


ACCESS_ALL_LOCATIONS = "ACCESS_ALL_LOCATIONS"


class PermissionDeniedError(Exception):
    """Raised when user lacks required permission."""
    pass


def get_user_permissions(user_id: int) -> set[str]:
    """Union of permission codes across the user's roles."""
    rows = (
        db.session.query(Permission.code)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(UserRole, UserRole.role_id == RolePermission.role_id)
        .filter(UserRole.user_id == user_id)
        .all()
    )
    return {code for (code,) in rows}


def user_has_permission(user_id: int, permission_code: str) -> bool:
    return permission_code in get_user_permissions(user_id)


def require_permission(user_id: int, permission_code: str, resource: str | None = None) -> None:
    """Raise PermissionDeniedError (and log the denial) when the user lacks permission_code."""
    if user_has_permission(user_id, permission_code):
        return
    current_app.logger.warning(
        "Permission denied: user=%s permission=%s resource=%s",
        user_id,
        permission_code,
        resource,
    )
    raise PermissionDeniedError(f"Permission denied: {permission_code}")


def get_user_role_names(user_id: int) -> list[str]:
    rows = (
        db.session.query(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .all()
    )
    return [name for (name,) in rows]


def user_can_access_location(user_id: int, location_id: int) -> bool:
    user = db.session.get(User, user_id)
    location = db.session.get(Location, location_id)
    if user is None or location is None or location.org_id != user.org_id:
        return False
    if user.location_id == location_id:
        return True
    if user_has_permission(user_id, ACCESS_ALL_LOCATIONS):
        return True
    grant = (
        db.session.query(UserLocationAccess.id)
        .filter_by(user_id=user_id, location_id=location_id)
        .first()
    )
    return grant is not None


def ensure_location_access(user_id: int, location_id: int, action: str = "act") -> None:
    """Raise LocationAccessDenied unless user_can_access_location holds."""
    if user_can_access_location(user_id, location_id):
        return
    current_app.logger.warning(
        "Location access denied: user=%s location=%s action=%s",
        user_id,
        location_id,
        action,
    )
    raise LocationAccessDenied(
        f"You do not have access to location {location_id} to {action}",
        details={"location_id": location_id},
    )


def grant_location_access(user_id: int, location_id: int, granted_by_user_id: int | None = None) -> UserLocationAccess:
    """Give a user access to an extra location (idempotent)."""
    user = db.session.get(User, user_id)
    location = db.session.get(Location, location_id)
    if user is None:
        raise ValueError("User not found")
    if location is None or location.org_id != user.org_id:
        raise ValueError("Location does not belong to the user's organization")

    existing = db.session.query(UserLocationAccess).filter_by(user_id=user_id, location_id=location_id).first()
    if existing:
        return existing

    access = UserLocationAccess(user_id=user_id, location_id=location_id, granted_by_user_id=granted_by_user_id)
    db.session.add(access)
    db.session.commit()
    return access


def initialize_permissions() -> int:
    """
    Create Permission rows for every code in PERMISSION_DEFINITIONS.

    Idempotent: safe to run multiple times.
    """
    created_count = 0

    for code, name, description, category in PERMISSION_DEFINITIONS:
        existing = db.session.query(Permission).filter_by(code=code).first()
        if not existing:
            db.session.add(Permission(code=code, name=name, description=description, category=category))
            created_count += 1

    db.session.commit()
    return created_count


def assign_default_role_permissions(org_id: int) -> int:
    """
    Link an organization's built-in roles to their default permissions.

    Idempotent: existing links are skipped.
    """
    created_count = 0

    for role_name, permission_codes in DEFAULT_ROLE_PERMISSIONS.items():
        role = db.session.query(Role).filter_by(org_id=org_id, name=role_name).first()
        if not role:
            continue

        for permission_code in permission_codes:
            permission = db.session.query(Permission).filter_by(code=permission_code).first()
            if not permission:
                continue

            existing = db.session.query(RolePermission).filter_by(
                role_id=role.id,
                permission_id=permission.id,
            ).first()
            if not existing:
                db.session.add(RolePermission(role_id=role.id, permission_id=permission.id))
                created_count += 1

    db.session.commit()
    return created_count
