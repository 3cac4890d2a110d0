"""
Scrape Request Model
Identity and lifecycle records for media scrape work
"""
from dataclasses import dataclass, field
from typing import Optional
import time


def _normalize(value: str) -> str:
    return str(value or "").strip().casefold()


@dataclass(frozen=True)
class RequestKey:
    """Case-insensitive identity of a scrape target"""
    system_name: str
    game_name: str
    media_type: str

    @classmethod
    def of(cls, system_name: str, game_name: str, media_type: str) -> "RequestKey":
        """Build a normalized key from raw frontend values"""
        return cls(_normalize(system_name), _normalize(game_name), _normalize(media_type))

    def as_dict(self) -> dict:
        return {
            "system_name": self.system_name,
            "game_name": self.game_name,
            "media_type": self.media_type,
        }

    def __str__(self) -> str:
        return f"{self.system_name}/{self.game_name}/{self.media_type}"


@dataclass(frozen=True)
class ScrapeRequest:
    """A single scrape submission, never mutated once created"""
    system_name: str
    game_name: str
    game_path: str
    media_type: str
    submitted_at: float = field(default_factory=time.time)

    @property
    def key(self) -> RequestKey:
        return RequestKey.of(self.system_name, self.game_name, self.media_type)

    @property
    def label(self) -> str:
        """Short human-readable form for log lines"""
        return f"{self.game_name} ({self.system_name}, {self.media_type})"


@dataclass
class InFlightEntry:
    """State of a key currently claimed by a worker"""
    request: ScrapeRequest
    active_provider: Optional[str] = None
    started_at: float = field(default_factory=time.time)
