from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.database import get_db
from bizinsights.dependencies import get_current_user
from bizinsights.models.enums import MemberRole
from bizinsights.models.user import User
from bizinsights.schemas.organization import OrganizationCreate, OrganizationResponse
from bizinsights.services import organization_service

router = APIRouter(prefix="/organizations", tags=["organizations"])


@router.get("", response_model=list[OrganizationResponse])
async def list_organizations(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rows = await organization_service.list_for_user(db, user.id)
    return [
        OrganizationResponse(
            id=org.id, name=org.name, slug=org.slug, role=role, created_at=org.created_at
        )
        for org, role in rows
    ]


@router.post("", response_model=OrganizationResponse, status_code=201)
async def create_organization(
    data: OrganizationCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    org = await organization_service.create_organization(db, data.name, user)
    return OrganizationResponse(
        id=org.id,
        name=org.name,
        slug=org.slug,
        role=MemberRole.OWNER,
        created_at=org.created_at,
    )
