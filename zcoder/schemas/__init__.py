"""
zcoder.schemas
~~~~~~~~~~~~~~
Pydantic schemas and models for the API and the live protocol.
"""
from zcoder.schemas.api_response import ApiResponse
from zcoder.schemas.rooms import (
    ActivityRecord,
    ChatEntry,
    ChatHistoryData,
    LiveRoomInfo,
    Participant,
    Room,
    RoomCreateRequest,
    RoomJoinRequest,
    RoomUpdateRequest,
    RoomSettings,
    SharedDocument,
    UserInfo,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()

__all__ = [
    "ActivityRecord",
    "ApiResponse",
    "ChatEntry",
    "ChatHistoryData",
    "LiveRoomInfo",
    "Participant",
    "Room",
    "RoomCreateRequest",
    "RoomJoinRequest",
    "RoomUpdateRequest",
    "RoomSettings",
    "SharedDocument",
    "UserInfo",
]
