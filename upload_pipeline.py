import logging
import os
import re
import time
from dataclasses import dataclass

from gallery_backend import log_event, log_exception
from gallery_models import CATEGORIES, BackendError, ValidationError, utc_now_iso


MAX_UPLOAD_BYTES = 50 * 1024 * 1024
LAYERED_SOURCE_EXTENSION = "psd"

LOGGER = logging.getLogger("poster_gallery.upload")


@dataclass
class Asset:
    filename: str
    data: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self):
        return len(self.data or b"")

    @property
    def extension(self):
        name = os.path.basename(self.filename or "")
        if "." not in name:
            return ""
        return name.rsplit(".", 1)[1].lower()


@dataclass
class UploadResult:
    public_url: str
    download_url: str
    psd_url: str | None
    poster: object


def sanitize_title(title):
    text = re.sub(r"\s+", "-", str(title or "").strip())
    text = re.sub(r'[\\/*?:"<>|#%]', "", text)
    return text or "poster"


class UploadPipeline:
    def __init__(self, gateway, max_bytes=MAX_UPLOAD_BYTES, clock=time.time):
        self.gateway = gateway
        self.max_bytes = int(max_bytes)
        self.clock = clock

    def validate(self, asset, thumbnail, title, category, is_editable):
        if not str(title or "").strip() or asset is None or not asset.filename:
            raise ValidationError("Title and file are required.")
        if category not in CATEGORIES:
            raise ValidationError(f"Category must be one of: {', '.join(CATEGORIES)}")
        if is_editable and asset.extension == LAYERED_SOURCE_EXTENSION and thumbnail is None:
            raise ValidationError("Thumbnail image (PNG/JPEG) is required for editable PSDs.")
        if asset.size > self.max_bytes or (thumbnail is not None and thumbnail.size > self.max_bytes):
            mb = self.max_bytes // (1024 * 1024)
            raise ValidationError(f"File size exceeds maximum limit of {mb}MB")

    def submit(self, asset, thumbnail, title, category, is_editable=False, font_family=None, on_progress=None):
        progress = _Progress(on_progress)
        progress.report(0)
        self.validate(asset, thumbnail, title, category, is_editable)
        progress.report(10)

        stamp = int(self.clock() * 1000)
        safe_title = sanitize_title(title)
        is_psd = asset.extension == LAYERED_SOURCE_EXTENSION
        ext = asset.extension or "bin"
        folder = "psd" if is_psd else "thumbnails"
        asset_path = f"{folder}/{stamp}-{safe_title}.{ext}"
        stored = []

        try:
            public_url = self.gateway.upload(asset_path, asset.data, asset.content_type, True)
            stored.append(asset_path)
            progress.report(40)

            # only a PSD has a use for the preview; plain images are their own
            thumbnail_url = ""
            if is_psd and thumbnail is not None:
                thumb_path = f"thumbnails/{stamp}-{safe_title}-thumb.png"
                thumbnail_url = self.gateway.upload(thumb_path, thumbnail.data, thumbnail.content_type, True)
                stored.append(thumb_path)
                progress.report(70)

            if is_psd:
                download_url, psd_url = thumbnail_url, public_url
            else:
                download_url, psd_url = public_url, None
            poster = self.gateway.insert(
                {
                    "title": str(title).strip(),
                    "category": category,
                    "download_url": download_url,
                    "psd_url": psd_url,
                    "font_family": font_family or None,
                    "is_editable": bool(is_editable),
                    "created_at": utc_now_iso(),
                }
            )
        except BackendError as e:
            log_event(LOGGER, logging.ERROR, "upload.failed", title=title, stored=stored, error=str(e))
            self._discard(stored)
            raise
        progress.report(100)
        log_event(LOGGER, logging.INFO, "upload.ok", poster_id=poster.id, path=asset_path, psd=is_psd)
        return UploadResult(public_url=download_url, download_url=download_url, psd_url=psd_url, poster=poster)

    def _discard(self, paths):
        if not paths:
            return
        try:
            self.gateway.remove(paths)
        except BackendError:
            log_exception(LOGGER, "upload.cleanup_failed", paths=paths)


class _Progress:
    def __init__(self, callback):
        self.callback = callback
        self.value = -1

    def report(self, value):
        value = max(0, min(100, int(value)))
        if value <= self.value:
            return
        self.value = value
        if self.callback is not None:
            self.callback(value)
