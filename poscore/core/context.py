"""
Request-scoped caller identity and the collaborator gates every engine runs
before touching state: role, tenant scope, subscription, inventory module.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from uuid import UUID

from fastapi import Header
from tortoise import timezone

from poscore.core.errors import AuthorizationError, NotFoundError, SubscriptionExpired
from poscore.models.restaurant import Restaurant, StaffRole, UserRole

log = logging.getLogger(__name__)

POS_ROLES = (StaffRole.OWNER, StaffRole.CASHIER)
OWNER_ONLY = (StaffRole.OWNER,)


@dataclass(frozen=True)
class CallerContext:
    user_id: str
    role: StaffRole
    restaurant_id: UUID
    branch_id: Optional[UUID] = None


async def resolve_caller(user_id: Optional[str]) -> CallerContext:
    """Maps an authenticated user id onto its role and restaurant scope."""
    if not user_id:
        raise AuthorizationError("not_authorized", status_code=401)
    user_role = await UserRole.get_or_none(user_id=user_id)
    if not user_role:
        log.warning(f"No role registered for user {user_id}")
        raise AuthorizationError("not_authorized")
    return CallerContext(
        user_id=user_id,
        role=user_role.role,
        restaurant_id=user_role.restaurant_id,
        branch_id=user_role.branch_id,
    )


async def get_caller(x_user_id: Optional[str] = Header(None)) -> CallerContext:
    """FastAPI dependency. The gateway has already authenticated X-User-Id."""
    return await resolve_caller(x_user_id)


def require_role(caller: CallerContext, roles: Iterable[StaffRole] = POS_ROLES) -> None:
    if caller.role not in tuple(roles):
        log.warning(f"User {caller.user_id} with role {caller.role} rejected")
        raise AuthorizationError("not_authorized")


def ensure_same_restaurant(caller: CallerContext, restaurant_id: UUID) -> None:
    if str(restaurant_id) != str(caller.restaurant_id):
        log.error(f"Restaurant mismatch: record {restaurant_id}, caller {caller.restaurant_id}")
        raise AuthorizationError("restaurant_mismatch")


async def get_restaurant(restaurant_id: UUID) -> Restaurant:
    restaurant = await Restaurant.get_or_none(id=restaurant_id)
    if not restaurant:
        raise NotFoundError("restaurant_mismatch")
    return restaurant


def is_subscription_active(restaurant: Restaurant) -> bool:
    if not restaurant.is_active:
        return False
    ends_at = restaurant.subscription_ends_at
    if ends_at is None:
        return True
    if timezone.is_naive(ends_at):
        ends_at = timezone.make_aware(ends_at)
    return ends_at >= timezone.now()


async def require_active_subscription(restaurant_id: UUID) -> Restaurant:
    restaurant = await get_restaurant(restaurant_id)
    if not is_subscription_active(restaurant):
        log.error(f"Restaurant {restaurant_id} subscription expired")
        raise SubscriptionExpired()
    return restaurant


async def require_inventory_enabled(restaurant_id: UUID) -> Restaurant:
    """Gate for direct inventory mutations: subscription first, then module flag."""
    restaurant = await require_active_subscription(restaurant_id)
    if not restaurant.inventory_enabled:
        log.warning(f"Inventory module disabled for restaurant {restaurant_id}")
        raise AuthorizationError("inventory_disabled")
    return restaurant
