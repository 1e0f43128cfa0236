import logging
import re
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.models.enums import MemberRole
from bizinsights.models.organization import Organization
from bizinsights.models.organization_member import OrganizationMember
from bizinsights.models.user import User

logger = logging.getLogger(__name__)


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "organization"


async def _unique_slug(db: AsyncSession, name: str) -> str:
    base = slugify(name)
    slug = base
    suffix = 1
    while (
        await db.execute(select(Organization.id).where(Organization.slug == slug))
    ).first() is not None:
        suffix += 1
        slug = f"{base}-{suffix}"
    return slug


async def create_organization(db: AsyncSession, name: str, owner: User) -> Organization:
    """Create an organization with ``owner`` as its OWNER member."""
    organization = Organization(name=name, slug=await _unique_slug(db, name))
    db.add(organization)
    await db.flush()

    db.add(
        OrganizationMember(
            organization_id=organization.id,
            user_id=owner.id,
            role=MemberRole.OWNER,
        )
    )
    await db.flush()
    await db.refresh(organization)
    logger.info("Organization %s created by user %s", organization.id, owner.id)
    return organization


async def list_for_user(db: AsyncSession, user_id: uuid.UUID) -> list[tuple[Organization, MemberRole]]:
    result = await db.execute(
        select(Organization, OrganizationMember.role)
        .join(OrganizationMember, OrganizationMember.organization_id == Organization.id)
        .where(OrganizationMember.user_id == user_id)
        .order_by(Organization.created_at)
    )
    return [(org, role) for org, role in result.all()]
