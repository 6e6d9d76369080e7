"""Data model shared by the cache, player and session controller.

Inbound socket messages and player events are represented as small
dataclasses so that everything the session controller consumes from its
event queue has an explicit type.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Union

log = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Top-level device state."""

    LOADING = "loading"
    PAIRING = "pairing"
    PLAYING = "playing"
    SLEEPING = "sleeping"


class MessageType(str, Enum):
    """Message types the dashboard sends to a player."""

    REGISTER = "register"
    PAIRED = "paired"
    AUTH = "auth"
    PLAY = "play"
    STOP = "stop"
    HIBERNATE = "hibernate"
    PLAY_LIST = "play_list"
    SCHEDULE_UPDATE = "schedule_update"
    SYNC_STATE = "sync_state"
    RESET = "reset"
    UNPAIR = "unpair"


_VALID_ORIENTATIONS = ("0", "90", "180", "270")


class MessageError(ValueError):
    """Raised when an inbound message cannot be parsed."""


@dataclass
class CacheEntry:
    """One cached video file."""

    url: str
    filename: str
    size: int
    accessed_at: int  # epoch milliseconds

    def to_json(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "filename": self.filename,
            "size": self.size,
            "accessedAt": self.accessed_at,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            url=str(data["url"]),
            filename=str(data["filename"]),
            size=int(data["size"]),
            accessed_at=int(data.get("accessedAt", 0)),
        )


@dataclass(frozen=True)
class VideoSource:
    """A playlist item. Identity is the URL."""

    url: str
    name: str | None = None
    size: int | None = None

    @classmethod
    def from_json(cls, data: Any) -> VideoSource:
        if not isinstance(data, dict) or not isinstance(data.get("url"), str) or not data["url"]:
            raise MessageError(f"invalid playlist item: {data!r}")
        size = data.get("size")
        return cls(
            url=data["url"],
            name=data.get("name") if isinstance(data.get("name"), str) else None,
            size=int(size) if isinstance(size, (int, float)) else None,
        )


def playlist_urls(playlist: list[VideoSource]) -> list[str]:
    """URL sequence used to compare playlists."""
    return [item.url for item in playlist]


@dataclass
class DeviceIdentity:
    """Credentials a paired device keeps across restarts."""

    id: str = ""
    code: str = ""
    name: str = ""
    token: str = ""

    def to_json(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> DeviceIdentity:
        return cls(
            id=str(data.get("id") or ""),
            code=str(data.get("code") or ""),
            name=str(data.get("name") or ""),
            token=str(data.get("token") or ""),
        )


@dataclass
class Schedule:
    """Wake/sleep window sent with schedule_update. Informational only."""

    enabled: bool = False
    wake_time: str = ""
    sleep_time: str = ""


@dataclass
class Payload:
    """Optional message payload. Absent fields stay None."""

    id: str | None = None
    code: str | None = None
    name: str | None = None
    token: str | None = None
    url: str | None = None
    orientation: str | None = None
    playlist: list[VideoSource] | None = None
    schedule: Schedule | None = None


@dataclass
class Message:
    """An inbound protocol message."""

    type: MessageType
    payload: Payload | None = None


# ----- Player events -----


@dataclass
class VideoEnded:
    """The active source reached its end."""


@dataclass
class VideoError:
    """The active source failed to play."""

    message: str = "Unknown video error"


@dataclass
class VideoProgress:
    """The active source advanced its playback position."""


@dataclass
class RefreshRequested:
    """The player asks to be rebuilt for the current playlist."""

    reason: str


@dataclass
class PlayerFault:
    """Player logic raised an unexpected exception."""

    error: str = field(default="")


Event = Union[Message, VideoEnded, VideoError, VideoProgress, RefreshRequested, PlayerFault]


def _opt_str(data: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = data.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            return str(value)
    return None


def _parse_payload(data: Any) -> Payload | None:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise MessageError(f"payload must be an object, got {type(data).__name__}")

    playlist = None
    if "playlist" in data and data["playlist"] is not None:
        if not isinstance(data["playlist"], list):
            raise MessageError("playlist must be a list")
        playlist = [VideoSource.from_json(item) for item in data["playlist"]]

    orientation = _opt_str(data, "orientation")
    if orientation is not None and orientation not in _VALID_ORIENTATIONS:
        log.warning("Ignoring invalid orientation %r", orientation)
        orientation = None

    schedule = None
    if isinstance(data.get("schedule"), dict):
        raw = data["schedule"]
        schedule = Schedule(
            enabled=bool(raw.get("enabled", False)),
            wake_time=str(raw.get("wakeTime", "")),
            sleep_time=str(raw.get("sleepTime", "")),
        )

    return Payload(
        id=_opt_str(data, "id", "deviceId"),
        code=_opt_str(data, "code"),
        name=_opt_str(data, "name", "deviceName"),
        token=_opt_str(data, "token"),
        url=_opt_str(data, "url"),
        orientation=orientation,
        playlist=playlist,
        schedule=schedule,
    )


def parse_message(data: Any) -> Message:
    """Build a Message from a decoded socket payload.

    Raises:
        MessageError: If the message has no known type or a malformed payload.
    """
    if not isinstance(data, dict):
        raise MessageError(f"message must be an object, got {type(data).__name__}")
    try:
        msg_type = MessageType(data.get("type"))
    except ValueError:
        raise MessageError(f"unknown message type {data.get('type')!r}") from None
    return Message(type=msg_type, payload=_parse_payload(data.get("payload")))
