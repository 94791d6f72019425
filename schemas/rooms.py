from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional


class CreateRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ticket_ids: List[str] = Field(default_factory=list, alias="ticketIds")

class CreateRoomResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(serialization_alias="roomId")

class TicketView(BaseModel):
    ID: str
    Votes: Dict[str, int]

class RoomView(BaseModel):
    ID: str
    Tickets: List[TicketView]
    Users: Dict[str, str]
    GameMaster: str
    CurrentTicket: int
    VotesRevealed: bool

class StatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    active_rooms: int = Field(serialization_alias="activeRooms")
    total_users: int = Field(serialization_alias="totalUsers")

class DeleteRoomsResponse(BaseModel):
    deleted: int

class HealthResponse(BaseModel):
    status: str
    version: str

class InboundMessage(BaseModel):
    """Envelope sent by clients over the websocket."""
    type: str
    payload: Any = None
    error: Optional[str] = None
