"""
Read-only adapter over the identity/profile directory.

Buyers are rows in `users`; vendors are rows in `vendors`, linked to the
principal that operates them through `vendors.user_id`.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketchat.models import User, Vendor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DisplayProfile:
    name: Optional[str]
    avatar_url: Optional[str]


def buyer_exists(db: Session, buyer_id: str) -> bool:
    return db.get(User, buyer_id) is not None


def vendor_exists(db: Session, vendor_id: str) -> bool:
    return db.get(Vendor, vendor_id) is not None


def resolve_vendor_id_for_user(db: Session, user_id: str) -> Optional[str]:
    """Map an authenticated principal to the vendor it operates, if any."""
    vendor_id = db.execute(
        select(Vendor.id).where(Vendor.user_id == user_id).limit(1)
    ).scalar_one_or_none()
    logger.debug(f"Vendor lookup for user {user_id}: {vendor_id or 'none'}")
    return vendor_id


def get_buyer_profiles(db: Session, buyer_ids: Iterable[str]) -> dict[str, DisplayProfile]:
    """One query for every distinct id; ids without a row are simply absent."""
    ids = set(buyer_ids)
    if not ids:
        return {}
    rows = db.execute(
        select(User.id, User.full_name, User.avatar_url).where(User.id.in_(ids))
    ).all()
    return {row.id: DisplayProfile(row.full_name, row.avatar_url) for row in rows}


def get_vendor_profiles(db: Session, vendor_ids: Iterable[str]) -> dict[str, DisplayProfile]:
    ids = set(vendor_ids)
    if not ids:
        return {}
    rows = db.execute(
        select(Vendor.id, Vendor.company_name, Vendor.logo_url).where(Vendor.id.in_(ids))
    ).all()
    return {row.id: DisplayProfile(row.company_name, row.logo_url) for row in rows}
