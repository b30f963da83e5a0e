import datetime
from dataclasses import asdict, dataclass, field, fields


CATEGORIES = ("Festival", "Birthday", "Marriage")
CATEGORY_ALL = "All"
PLACEHOLDER_URL = "/placeholder.png"


class GalleryError(Exception):
    """Base class for errors shown to the user as a dismissible message."""


class ValidationError(GalleryError):
    pass


class BackendError(GalleryError):
    pass


class FetchFailed(BackendError):
    pass


class BackendTimeout(BackendError):
    pass


class OperationCancelled(BackendError):
    pass


class RenderTargetMissing(GalleryError):
    pass


class NetworkFetchError(GalleryError):
    pass


def utc_now_iso():
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="milliseconds")


def parse_timestamp(raw_value):
    text = str(raw_value or "").strip()
    if not text:
        return 0.0
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.datetime.fromisoformat(text)
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.timestamp()


@dataclass
class Poster:
    id: int
    title: str
    category: str
    download_url: str = ""
    psd_url: str | None = None
    font_family: str | None = None
    is_editable: bool = False
    created_at: str = ""
    download_count: int = 0

    @classmethod
    def from_record(cls, record):
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in dict(record or {}).items() if k in known}
        if "id" not in data:
            raise ValueError("poster record has no id")
        data["id"] = int(data["id"])
        data["download_count"] = int(data.get("download_count") or 0)
        data["is_editable"] = bool(data.get("is_editable", False))
        return cls(**data)

    def to_record(self):
        return asdict(self)

    @property
    def display_url(self):
        return self.download_url or self.psd_url or PLACEHOLDER_URL


POSTER_COLUMNS = tuple(f.name for f in fields(Poster))


# Realtime change events. A closed set: consumers match on the three classes.
@dataclass(frozen=True)
class PosterInserted:
    poster: Poster
    type: str = field(default="INSERT", init=False)


@dataclass(frozen=True)
class PosterUpdated:
    poster: Poster
    type: str = field(default="UPDATE", init=False)


@dataclass(frozen=True)
class PosterDeleted:
    poster_id: int
    type: str = field(default="DELETE", init=False)


def event_to_payload(event):
    match event:
        case PosterInserted(poster=poster) | PosterUpdated(poster=poster):
            return {"type": event.type, "record": poster.to_record()}
        case PosterDeleted(poster_id=poster_id):
            return {"type": event.type, "record": {"id": poster_id}}
    raise TypeError(f"unknown change event: {event!r}")


def event_from_payload(payload):
    kind = str((payload or {}).get("type", "")).upper()
    record = (payload or {}).get("record") or {}
    if kind == "INSERT":
        return PosterInserted(Poster.from_record(record))
    if kind == "UPDATE":
        return PosterUpdated(Poster.from_record(record))
    if kind == "DELETE":
        return PosterDeleted(int(record["id"]))
    raise ValueError(f"unknown change event type: {kind!r}")
