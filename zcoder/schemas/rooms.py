"""
zcoder.schemas.rooms
~~~~~~~~~~~~~~~~~~~~

房间相关的 Pydantic 模型：持久化记录、REST 请求体与响应数据。

字段在 Python 侧使用 snake_case（MongoDB 中也按此存储），
对外（REST / WebSocket）统一输出 camelCase 别名。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

ParticipantRole = Literal["owner", "moderator", "participant"]
ChatType = Literal["text", "code", "system"]
RoomType = Literal["study-group", "interview-prep", "project-collaboration", "open-discussion"]
ActivityType = Literal["problem", "bookmark", "room", "chat", "other"]

CHAT_TYPES: frozenset[str] = frozenset({"text", "code", "system"})
DEFAULT_LANGUAGE = "javascript"


def utcnow() -> datetime:
    """当前 UTC 时间（带时区）。"""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """对外输出 camelCase、对内允许按字段名构造的基类。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self, **kwargs: Any) -> dict[str, Any]:
        """序列化为可直接发给客户端的 JSON 兼容字典。"""
        return self.model_dump(mode="json", by_alias=True, **kwargs)


# ── 持久化记录 ────────────────────────────────────────────────────────

class Participant(CamelModel):
    """房间的持久成员。"""

    user_id: str
    role: ParticipantRole = "participant"
    joined_at: datetime = Field(default_factory=utcnow)


class SharedDocument(CamelModel):
    """房间共享代码文档（最后写入者胜出）。"""

    content: str = ""
    language: str = DEFAULT_LANGUAGE
    version: int = 0
    last_modified_by: str | None = None
    last_modified_at: datetime | None = None


class RoomSettings(CamelModel):
    """房间功能开关。"""

    allow_code_sharing: bool = True
    allow_chat: bool = True
    auto_save: bool = True


class Room(CamelModel):
    """持久化的房间记录。

    不变式：``owner`` 一定在 ``participants`` 中，且成员数不超过 ``max_participants``。
    ``revision`` 随成员或房间资料变更递增，用于乐观并发控制；共享文档写入不改动它。
    """

    id: str
    name: str
    description: str = ""
    type: RoomType = "open-discussion"
    owner: str
    participants: list[Participant] = Field(default_factory=list)
    max_participants: int = 10
    shared_document: SharedDocument = Field(default_factory=SharedDocument)
    settings: RoomSettings = Field(default_factory=RoomSettings)
    is_private: bool = False
    password_hash: str | None = None
    is_active: bool = True
    revision: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def participant(self, user_id: str) -> Participant | None:
        """查找指定用户的成员记录。"""
        for member in self.participants:
            if member.user_id == user_id:
                return member
        return None

    def is_participant(self, user_id: str) -> bool:
        return self.participant(user_id) is not None

    @property
    def is_full(self) -> bool:
        return len(self.participants) >= self.max_participants

    def to_public(self) -> dict[str, Any]:
        """对外视图：不包含密码哈希与内部版本号。"""
        return self.to_wire(exclude={"password_hash", "revision"})


class ChatEntry(CamelModel):
    """聊天记录中的一条消息。``seq`` 由房间会话按到达顺序分配。"""

    seq: int
    user_id: str
    message: str
    type: ChatType = "text"
    timestamp: datetime = Field(default_factory=utcnow)


class UserInfo(CamelModel):
    """用户目录中的公开资料。"""

    id: str
    username: str
    profile: dict[str, Any] = Field(default_factory=dict)

    def brief(self) -> dict[str, Any]:
        """只含 ID 和用户名的精简视图（代码 / 光标广播用）。"""
        return {"id": self.id, "username": self.username}


class ActivityRecord(CamelModel):
    """用户动态记录。"""

    user_id: str
    type: ActivityType
    message: str
    resource_type: ActivityType | None = None
    resource_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ── REST 请求体 ───────────────────────────────────────────────────────

def _strip_name_field(data: Any) -> Any:
    if isinstance(data, dict) and isinstance(data.get("name"), str):
        data = {**data, "name": data["name"].strip()}
    return data


class RoomCreateRequest(CamelModel):
    """创建房间请求体。"""

    name: str = Field(..., min_length=1, max_length=100, description="房间名称")
    description: str = Field(default="", max_length=500, description="房间描述")
    type: RoomType = Field(default="open-discussion", description="房间类型")
    is_private: bool = Field(default=False, description="是否为私有房间")
    password: str | None = Field(
        default=None, min_length=4, max_length=50, description="私有房间密码",
    )
    max_participants: int = Field(default=10, ge=2, le=50, description="成员上限")
    language: str = Field(default=DEFAULT_LANGUAGE, max_length=32, description="共享文档初始语言")
    settings: RoomSettings = Field(default_factory=RoomSettings, description="房间功能开关")

    @model_validator(mode="before")
    @classmethod
    def _strip_name(cls, data: Any) -> Any:
        return _strip_name_field(data)

    @model_validator(mode="after")
    def _require_password_for_private(self) -> RoomCreateRequest:
        if self.is_private and not self.password:
            raise ValueError("私有房间必须设置密码")
        return self


class RoomUpdateRequest(CamelModel):
    """更新房间请求体（仅房主）。未给出的字段保持不变。

    ``language`` 不在此列：共享文档只通过实时通道修改。
    """

    name: str | None = Field(default=None, min_length=1, max_length=100, description="房间名称")
    description: str | None = Field(default=None, max_length=500, description="房间描述")
    type: RoomType | None = Field(default=None, description="房间类型")
    is_private: bool | None = Field(default=None, description="是否为私有房间")
    password: str | None = Field(
        default=None, min_length=4, max_length=50, description="新的私有房间密码",
    )
    max_participants: int | None = Field(default=None, ge=2, le=50, description="成员上限")
    settings: RoomSettings | None = Field(default=None, description="房间功能开关")

    @model_validator(mode="before")
    @classmethod
    def _strip_name(cls, data: Any) -> Any:
        return _strip_name_field(data)


class RoomJoinRequest(CamelModel):
    """加入房间请求体。"""

    password: str | None = Field(default=None, description="私有房间密码")


# ── REST 响应数据 ─────────────────────────────────────────────────────

class LiveRoomInfo(CamelModel):
    """在线房间会话摘要。"""

    room_id: str
    online_count: int
    active_users: list[str]
    document_version: int


class ChatHistoryData(CamelModel):
    """聊天历史分页数据。"""

    room_id: str
    messages: list[ChatEntry]
    total: int
