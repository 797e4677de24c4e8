"""Presentation timetable API endpoints.

Every handler resolves the owner from the verified credential and hands it
to the procedures; no owner id is ever read from the request.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlmodel import Session

from server.api.deps import Principal, get_principal, rate_limit
from server.database import get_session
from server.models.presentation import Presentation
from server.schemas.presentation import PresentationResponse, SaveRequest
from server.services import procedures
from server.services.errors import UserNotFoundError
from server.utils.security import as_utc
from server.utils.url import canonicalize_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/resources", tags=["resources"])


def _canonical_or_400(raw: str) -> str:
    try:
        return canonicalize_url(raw)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_canonical_key", "message": str(e)},
        )


def _to_response(row: Presentation) -> PresentationResponse:
    payload = procedures.load_payload(row)
    items = payload.get("items")
    return PresentationResponse(
        id=row.id,
        canonical_key=row.canonical_key,
        title=row.title,
        payload=payload,
        start_time=row.start_time,
        total_duration=row.total_duration,
        item_count=len(items) if isinstance(items, list) else 0,
        created_at=as_utc(row.created_at),
        last_modified=as_utc(row.last_modified),
    )


@router.post(
    "/save",
    response_model=PresentationResponse,
    dependencies=[Depends(rate_limit("save", "save_rate_limit"))],
)
def save_presentation(
    request: SaveRequest,
    principal: Principal = Depends(get_principal),
    session: Session = Depends(get_session),
):
    """Create or update the caller's timetable for a canonical key."""
    canonical_key = _canonical_or_400(request.canonical_key)
    try:
        row = procedures.upsert_presentation(
            owner_user_id=principal.owner_user_id,
            canonical_key=canonical_key,
            title=request.title,
            payload=request.payload_dict(),
            start_time=request.start_time,
            total_duration=request.total_duration,
            session=session,
        )
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")

    logger.info("Saved %s via %s credential", canonical_key, principal.source)
    return _to_response(row)


@router.get("/get", response_model=PresentationResponse)
def get_presentation(
    key: str = Query(min_length=1),
    principal: Principal = Depends(get_principal),
    session: Session = Depends(get_session),
):
    """Fetch the caller's timetable by canonical key."""
    row = procedures.get_presentation_by_key(principal.owner_user_id, _canonical_or_400(key), session)
    if row is None:
        raise HTTPException(status_code=404, detail="Presentation not found")
    return _to_response(row)


@router.get("/list", response_model=list[PresentationResponse])
def list_presentations(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_principal),
    session: Session = Depends(get_session),
):
    """List the caller's timetables, most recently modified first."""
    rows = procedures.list_presentations(principal.owner_user_id, session, limit=limit, offset=offset)
    return [_to_response(r) for r in rows]


@router.get("/{presentation_id}", response_model=PresentationResponse)
def get_presentation_by_id(
    presentation_id: str,
    principal: Principal = Depends(get_principal),
    session: Session = Depends(get_session),
):
    row = procedures.get_presentation_by_id(principal.owner_user_id, presentation_id, session)
    if row is None:
        raise HTTPException(status_code=404, detail="Presentation not found")
    return _to_response(row)


@router.delete("/{presentation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_presentation(
    presentation_id: str,
    principal: Principal = Depends(get_principal),
    session: Session = Depends(get_session),
):
    if not procedures.delete_presentation(principal.owner_user_id, presentation_id, session):
        raise HTTPException(status_code=404, detail="Presentation not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
