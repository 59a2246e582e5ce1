from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import Optional

from session_relay.schemas import RoomCreate, RoomSearchFilters, RoomSnapshot, RoomSummary, TemplateRead
from session_relay.services.relay import SignalingRelay

router = APIRouter(prefix="/rooms", tags=["rooms"])


def get_relay(request: Request) -> SignalingRelay:
    return request.app.state.relay


@router.get("", response_model=list[RoomSummary])
async def list_public_rooms(relay: SignalingRelay = Depends(get_relay)):
    return relay.registry.list_public()


@router.get("/search", response_model=list[RoomSummary])
async def search_rooms(
    q: Optional[str] = Query(None, description="Text matched against room name and description"),
    capabilities: list[str] = Query([]),
    min_users: Optional[int] = Query(None, ge=0),
    template: Optional[str] = None,
    relay: SignalingRelay = Depends(get_relay),
):
    filters = RoomSearchFilters(capabilities=capabilities, min_users=min_users, template=template)
    return relay.registry.search(q, filters)


@router.get("/templates", response_model=list[TemplateRead])
async def list_templates(relay: SignalingRelay = Depends(get_relay)):
    return relay.registry.list_templates()


@router.post("", response_model=RoomSnapshot, status_code=201)
async def create_room(payload: RoomCreate, relay: SignalingRelay = Depends(get_relay)):
    room = relay.registry.create_room(payload)
    return RoomSnapshot.model_validate(room)


@router.get("/{room_id}", response_model=RoomSnapshot)
async def get_room_state(room_id: str, relay: SignalingRelay = Depends(get_relay)):
    return RoomSnapshot.model_validate(relay.registry.require_room(room_id))


@router.delete("/{room_id}", status_code=204)
async def delete_room(room_id: str, relay: SignalingRelay = Depends(get_relay)):
    relay.registry.require_room(room_id)
    if not relay.registry.remove_room(room_id):
        raise HTTPException(status_code=409, detail="Room still has active participants")
