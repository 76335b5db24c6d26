"""
Stream data models with validation and state transitions.

StreamRecord is the persisted registry row for one external user.
ObservedStream is what a single poll of the streaming platform reports.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, FrozenSet
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Transition(str, Enum):
    """Per-cycle classification of an external user's stream."""
    NEW = "new"
    GONE_LIVE = "gone_live"
    STILL_LIVE = "still_live"
    ENDED = "ended"


class StreamRecordError(ValueError):
    """Raised when a record would violate the live/offline invariant."""
    pass


class ObservedStream(BaseModel):
    """A currently-active stream as reported by the streaming platform."""

    model_config = ConfigDict(frozen=True)

    external_user_id: str = Field(..., description="Platform user ID of the broadcaster")
    display_name: str = Field(..., description="Broadcaster display name")
    title: str = Field("", description="Current stream title")
    tag_ids: FrozenSet[str] = Field(default_factory=frozenset, description="Tags attached to the stream")
    thumbnail_url: str = Field("", description="Thumbnail URL template")
    stream_id: Optional[str] = Field(None, description="Platform stream ID, used for deduplication")
    login_name: Optional[str] = Field(None, description="Broadcaster login name")
    game_name: Optional[str] = Field(None, description="Name of the game being played")

    @field_validator('external_user_id')
    @classmethod
    def validate_external_user_id(cls, v):
        """Validate external_user_id is non-empty and trimmed."""
        if not v or not v.strip():
            raise ValueError("External user ID cannot be empty")
        return v.strip()

    @field_validator('title', mode='before')
    @classmethod
    def validate_title(cls, v):
        return v or ""

    @field_validator('tag_ids', mode='before')
    @classmethod
    def validate_tag_ids(cls, v):
        return frozenset(v or ())

    @classmethod
    def from_helix(cls, data: Dict[str, Any]) -> 'ObservedStream':
        """Build from a Helix /streams entry."""
        tags = data.get('tag_ids') or data.get('tags') or []
        return cls(
            external_user_id=str(data['user_id']),
            display_name=data.get('user_name') or data.get('user_login') or str(data['user_id']),
            title=data.get('title') or "",
            tag_ids=tags,
            thumbnail_url=data.get('thumbnail_url') or "",
            stream_id=str(data['id']) if data.get('id') is not None else None,
            login_name=data.get('user_login'),
            game_name=data.get('game_name'),
        )


class StreamRecord(BaseModel):
    """Persisted live/offline state for one external user."""

    model_config = ConfigDict(from_attributes=True)

    external_user_id: str = Field(..., description="Platform user ID (unique key)")
    display_name: str = Field(..., description="Last seen display name")
    is_live: bool = Field(False, description="Whether the user was live at the last poll")
    last_notified_at: Optional[datetime] = Field(None, description="When the last shoutout was sent")
    offline_since: Optional[datetime] = Field(None, description="When the stream was last seen ending")
    game_name: Optional[str] = Field(None, description="Last seen game name")

    @field_validator('external_user_id')
    @classmethod
    def validate_external_user_id(cls, v):
        if not v or not v.strip():
            raise ValueError("External user ID cannot be empty")
        return v.strip()

    @field_validator('last_notified_at', 'offline_since')
    @classmethod
    def ensure_timezone(cls, v):
        """Naive timestamps are stored as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode='after')
    def validate_live_consistency(self):
        if self.is_live and self.offline_since is not None:
            raise StreamRecordError(
                f"Record {self.external_user_id} is live but has offline_since set"
            )
        return self

    @classmethod
    def first_seen(cls, stream: ObservedStream, notified_at: Optional[datetime]) -> 'StreamRecord':
        """Record for a user observed for the first time."""
        return cls(
            external_user_id=stream.external_user_id,
            display_name=stream.display_name,
            is_live=True,
            last_notified_at=notified_at,
            offline_since=None,
            game_name=stream.game_name,
        )

    def gone_live(self, stream: ObservedStream, notified_at: Optional[datetime]) -> 'StreamRecord':
        """Copy marked live again; keeps the previous notification time unless a new one is given."""
        return self.model_copy(update={
            'display_name': stream.display_name,
            'game_name': stream.game_name or self.game_name,
            'is_live': True,
            'offline_since': None,
            'last_notified_at': notified_at or self.last_notified_at,
        })

    def refreshed(self, stream: ObservedStream) -> 'StreamRecord':
        """Copy with display metadata refreshed, state untouched."""
        return self.model_copy(update={
            'display_name': stream.display_name,
            'game_name': stream.game_name or self.game_name,
        })

    def ended(self, at: datetime) -> 'StreamRecord':
        """Copy marked offline since the given time."""
        return self.model_copy(update={'is_live': False, 'offline_since': at})

    def __repr__(self) -> str:
        return (
            f"<StreamRecord(external_user_id='{self.external_user_id}', "
            f"display_name='{self.display_name}', is_live={self.is_live})>"
        )
