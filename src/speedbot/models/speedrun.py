"""
Speedrun submission models.

Represents verified runs reported by the speedrun.com API.
"""

from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field


class RunPlayer(BaseModel):
    """A runner credited on a run: a registered user or a guest."""

    runner_id: Optional[str] = Field(None, description="speedrun.com user ID, None for guests")
    name: Optional[str] = Field(None, description="Resolved or guest name")

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'RunPlayer':
        if data.get('rel') == 'guest':
            return cls(runner_id=None, name=data.get('name'))

        names = data.get('names') or {}
        return cls(
            runner_id=data.get('id'),
            name=names.get('international') or names.get('japanese'),
        )


class SpeedrunRun(BaseModel):
    """A verified run."""

    run_id: str = Field(..., description="speedrun.com run ID")
    game_id: str = Field(..., description="speedrun.com game ID")
    category_name: str = Field("", description="Category name if embedded")
    weblink: str = Field("", description="Link to the run page")
    primary_time_seconds: Optional[float] = Field(None, description="Primary timing in seconds")
    verified_at: datetime = Field(..., description="When the run was verified")
    players: List[RunPlayer] = Field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'SpeedrunRun':
        """Build from a /runs entry with optional players and category embeds."""
        players_field = data.get('players') or []
        if isinstance(players_field, dict):
            players_field = players_field.get('data') or []

        category = data.get('category')
        category_name = ""
        if isinstance(category, dict):
            category_name = (category.get('data') or {}).get('name', "")

        verify_date = (data.get('status') or {}).get('verify-date')
        if not verify_date:
            raise ValueError(f"Run {data.get('id')} has no verify-date")

        return cls(
            run_id=data['id'],
            game_id=data['game'],
            category_name=category_name,
            weblink=data.get('weblink') or "",
            primary_time_seconds=(data.get('times') or {}).get('primary_t'),
            verified_at=datetime.fromisoformat(verify_date.replace('Z', '+00:00')),
            players=[RunPlayer.from_api(p) for p in players_field],
        )

    @property
    def verified_epoch(self) -> int:
        verified = self.verified_at
        if verified.tzinfo is None:
            verified = verified.replace(tzinfo=timezone.utc)
        return int(verified.timestamp())

    def formatted_time(self) -> str:
        """Primary time as H:MM:SS.mmm, dropping empty leading units."""
        if self.primary_time_seconds is None:
            return "unknown time"

        total_ms = int(round(self.primary_time_seconds * 1000))
        total_seconds, millis = divmod(total_ms, 1000)
        hours, remainder = divmod(total_seconds, 3600)
        minutes, seconds = divmod(remainder, 60)

        if hours:
            text = f"{hours}:{minutes:02d}:{seconds:02d}"
        else:
            text = f"{minutes}:{seconds:02d}"
        if millis:
            text += f".{millis:03d}"
        return text
