from __future__ import annotations
import uuid
from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, get_claims, current_user_id, has_role, require_roles
from ..models import Destination
from ..schemas import DestinationCreate, DestinationUpdate, DestinationRead, DestinationAdminRead
from ..services import catalog
from ..core.qr import render_qr_png

router = APIRouter(prefix="/destinations", tags=["destinations"])

@router.get("", response_model=list[DestinationRead])
async def list_destinations(claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    return await catalog.list_destinations(db)

@router.post("", response_model=DestinationAdminRead, status_code=201)
async def create_destination(payload: DestinationCreate, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    require_roles(claims, "admin")
    dest = await catalog.create_destination(db, payload)
    return DestinationAdminRead.model_validate(dest)

@router.patch("/{destination_id}", response_model=DestinationAdminRead)
async def update_destination(destination_id: uuid.UUID, payload: DestinationUpdate, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    require_roles(claims, "admin")
    dest = await catalog.update_destination(db, destination_id, payload)
    return DestinationAdminRead.model_validate(dest)

# PNG for the poster printed at the venue
@router.get("/{destination_id}/qr.png")
async def destination_qr_png(destination_id: uuid.UUID, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    require_roles(claims, "owner", "admin")
    dest = await db.get(Destination, destination_id)
    if not dest:
        raise HTTPException(status_code=404, detail="Destination not found")
    if not has_role(claims, "admin") and dest.owner_id != current_user_id(claims):
        raise HTTPException(status_code=403, detail="Not your destination")
    return Response(content=render_qr_png(dest.qr_code), media_type="image/png")
