import io
import logging
import math
import os
import re
from dataclasses import dataclass

from PIL import Image, ImageDraw, ImageFilter, ImageFont, UnidentifiedImageError

from download_counter import record_download
from gallery_backend import log_event
from gallery_models import RenderTargetMissing, ValidationError


CANVAS_WIDTH = 400
CANVAS_HEIGHT = 280
CAPTURE_SCALE = 2
MIN_ZOOM = 0.5
MAX_ZOOM = 3.0
MIN_IMAGE_SIDE = 50
MIN_FONT_SIZE = 10
ROTATION_STEP = 15
MAX_TEXT_LENGTH = 50
MAX_OVERLAY_IMAGE_BYTES = 5 * 1024 * 1024
FONT_FAMILIES = ("Arial", "Georgia", "Times New Roman", "Verdana", "Courier New", "Impact", "Roboto", "Montserrat", "Poppins")
FONT_STYLES = ("normal", "italic")
FONT_WEIGHTS = ("normal", "bold")
HEX_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
ITALIC_SHEAR = 0.2

TEXT_LAYER = "text"
IMAGE_LAYER = "image"
HANDLE_BOTTOM_RIGHT = "bottom-right"
HANDLE_TOP_LEFT = "top-left"

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
LOGGER = logging.getLogger("poster_gallery.customize")


def _clamp(value, low, high):
    return max(low, min(high, value))


def _font_file_candidates(family, bold, italic):
    stem = family.replace(" ", "")
    variant = ("Bold" if bold else "") + ("Italic" if italic else "")
    local_dir = os.environ.get("POSTER_FONT_DIR") or os.path.join(BASE_DIR, "fonts")
    names = [f"{stem}-{variant or 'Regular'}.ttf", f"{stem}-{variant or 'Regular'}.otf", f"{stem}.ttf"]
    out = [os.path.join(local_dir, n) for n in names]
    if os.name == "nt":
        win = os.path.join(os.environ.get("WINDIR", r"C:\Windows"), "Fonts")
        win_names = {
            "Arial": "arial",
            "Georgia": "georgia",
            "Times New Roman": "times",
            "Verdana": "verdana",
            "Courier New": "cour",
            "Impact": "impact",
        }
        base = win_names.get(family)
        if base:
            suffix = {(False, False): "", (True, False): "bd", (False, True): "i", (True, True): "bi"}[(bold, italic)]
            out.append(os.path.join(win, f"{base}{suffix}.ttf"))
            out.append(os.path.join(win, f"{base}.ttf"))
    else:
        dejavu = "DejaVuSans" + ("-Bold" if bold else "") + ("Oblique" if italic and not bold else "")
        if bold and italic:
            dejavu = "DejaVuSans-BoldOblique"
        out += [
            f"/usr/share/fonts/truetype/dejavu/{dejavu}.ttf",
            "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
            "/System/Library/Fonts/Helvetica.ttc",
        ]
    return out


class FontManager:
    _cache = {}

    @staticmethod
    def get(family, size, bold=False, italic=False):
        """Return ``(font, is_true_italic)`` for the requested face."""
        key = (family, int(size), bold, italic)
        if key in FontManager._cache:
            return FontManager._cache[key]
        result = None
        for path in _font_file_candidates(family or "Arial", bold, italic):
            if not os.path.exists(path):
                continue
            try:
                font = ImageFont.truetype(path, int(size))
            except OSError:
                continue
            result = (font, italic and ("Italic" in path or "Oblique" in path or path.endswith("i.ttf")))
            break
        if result is None:
            result = (ImageFont.load_default(size=int(size)), False)
        FontManager._cache[key] = result
        return result


@dataclass
class Point:
    x: float
    y: float


@dataclass
class Size:
    width: float
    height: float


@dataclass
class TextLayer:
    content: str = ""
    color: str = "#FFFFFF"
    font_family: str = "Arial"
    font_style: str = "normal"
    font_weight: str = "normal"
    font_size: int = 24
    position: Point = None
    rotation: float = 0.0

    def __post_init__(self):
        if self.position is None:
            self.position = Point(200.0, 240.0)

    @property
    def visible(self):
        return bool(self.content)


@dataclass
class ImageLayer:
    image: Image.Image
    size: Size = None
    position: Point = None
    rotation: float = 0.0

    def __post_init__(self):
        if self.size is None:
            self.size = Size(100.0, 100.0)
        if self.position is None:
            self.position = Point(50.0, 180.0)


def load_image(data, max_bytes=None, png_only=False):
    if max_bytes is not None and len(data or b"") > max_bytes:
        raise ValidationError(f"Uploaded image exceeds {max_bytes // (1024 * 1024)}MB limit.")
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.load()
            out = img.convert("RGBA")
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
        raise ValidationError("Image file is invalid or corrupted.") from e
    if png_only and fmt != "PNG":
        raise ValidationError("Only PNG images can be placed on a poster.")
    return out


class PointerBus:
    """Global pointer move/end listeners, the target gestures attach to."""

    def __init__(self):
        self._move = []
        self._end = []
        self.active = None

    def add(self, on_move, on_end):
        self._move.append(on_move)
        self._end.append(on_end)

    def remove(self, on_move, on_end):
        if on_move in self._move:
            self._move.remove(on_move)
        if on_end in self._end:
            self._end.remove(on_end)

    def listener_count(self):
        return len(self._move) + len(self._end)

    def move(self, x, y):
        for handler in list(self._move):
            handler(x, y)

    def release(self):
        for handler in list(self._end):
            handler()


class Gesture:
    """Idle -> Active -> Idle. Entering registers the move/end handlers on the
    bus, leaving (normal end or cancel) removes them."""

    IDLE = "idle"
    ACTIVE = "active"

    def __init__(self, session):
        self.session = session
        self.bus = session.bus
        self.state = self.IDLE

    def begin(self, x, y):
        if self.state == self.ACTIVE:
            self.cancel()
        previous = self.bus.active
        if previous is not None and previous is not self:
            previous.cancel()
        self.bus.add(self._on_move, self._on_end)
        self.bus.active = self
        self.state = self.ACTIVE
        try:
            self.on_begin(x, y)
        except Exception:
            self._exit()
            raise
        return self

    def _on_move(self, x, y):
        if self.state == self.ACTIVE:
            self.on_move(x, y)

    def _on_end(self):
        self.end()

    def end(self):
        self._exit()

    def cancel(self):
        self._exit()

    def _exit(self):
        if self.state != self.ACTIVE:
            return
        self.bus.remove(self._on_move, self._on_end)
        if self.bus.active is self:
            self.bus.active = None
        self.state = self.IDLE

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self._exit()
        return False

    def on_begin(self, x, y):
        pass

    def on_move(self, x, y):
        pass


class DragGesture(Gesture):
    def __init__(self, session, layer):
        super().__init__(session)
        self.layer = layer
        self._last = None

    def on_begin(self, x, y):
        self._last = (x, y)

    def on_move(self, x, y):
        lx, ly = self._last
        self.session.move_layer(self.layer, x - lx, y - ly)
        self._last = (x, y)


class ResizeGesture(Gesture):
    def __init__(self, session, handle):
        super().__init__(session)
        if handle not in (HANDLE_BOTTOM_RIGHT, HANDLE_TOP_LEFT):
            raise ValueError(f"unknown resize handle: {handle!r}")
        self.handle = handle
        self._origin = None
        self._start = None

    def on_begin(self, x, y):
        layer = self.session.require_image()
        self._origin = (x, y)
        self._start = (layer.size.width, layer.size.height, layer.position.x, layer.position.y)

    def on_move(self, x, y):
        ox, oy = self._origin
        self.session.resize_image(self.handle, x - ox, y - oy, start=self._start)


class RotateGesture(Gesture):
    def on_begin(self, x, y):
        layer = self.session.require_image()
        self._center = (
            layer.position.x + layer.size.width / 2,
            layer.position.y + layer.size.height / 2,
        )

    def on_move(self, x, y):
        self.session.rotate_image_towards(x, y, self._center)


class CustomizationSession:
    """Editable overlay on one poster, rendered to a 2x PNG on demand.

    Positions and sizes are logical canvas pixels (400x280) and never change
    with zoom; ``zoom_level`` only scales what gets drawn.
    """

    def __init__(self, poster, base_image=None):
        if not poster.is_editable:
            raise ValidationError("This poster cannot be customized.")
        self.poster = poster
        self.base_image = None
        self.text = TextLayer(font_family=poster.font_family or "Arial")
        self.image = None
        self.zoom_level = 1.0
        self.bus = PointerBus()
        self.closed = False
        if base_image is not None:
            self.attach_surface(base_image)
        log_event(LOGGER, logging.INFO, "customize.opened", poster_id=poster.id)

    # surface
    def attach_surface(self, base_image):
        if isinstance(base_image, (bytes, bytearray)):
            base_image = load_image(bytes(base_image))
        self.base_image = base_image.convert("RGBA")

    def detach_surface(self):
        self.base_image = None

    # layer attributes
    def set_text(self, content, color=None, font_family=None, font_style=None, font_weight=None):
        content = str(content or "")
        if len(content) > MAX_TEXT_LENGTH:
            content = content[:MAX_TEXT_LENGTH]
        color = color or self.text.color
        if not HEX_COLOR_RE.match(color):
            raise ValidationError(f"Invalid text color: {color}")
        font_style = font_style or self.text.font_style
        font_weight = font_weight or self.text.font_weight
        if font_style not in FONT_STYLES:
            raise ValidationError(f"Invalid font style: {font_style}")
        if font_weight not in FONT_WEIGHTS:
            raise ValidationError(f"Invalid font weight: {font_weight}")
        self.text.content = content
        self.text.color = color.upper()
        self.text.font_family = font_family or self.text.font_family
        self.text.font_style = font_style
        self.text.font_weight = font_weight
        return self.text

    def set_image(self, data):
        img = load_image(data, max_bytes=MAX_OVERLAY_IMAGE_BYTES, png_only=True)
        if self.image is None:
            self.image = ImageLayer(img)
        else:
            self.image.image = img
        self._reclamp(IMAGE_LAYER)
        return self.image

    def clear_image(self):
        self.image = None

    def require_image(self):
        if self.image is None:
            raise ValidationError("Add an image first.")
        return self.image

    def _font(self, scale=1.0):
        size = max(1, int(round(self.text.font_size * scale)))
        return FontManager.get(
            self.text.font_family,
            size,
            bold=self.text.font_weight == "bold",
            italic=self.text.font_style == "italic",
        )

    def text_box(self):
        """Natural (unzoomed) width and height of the rendered text."""
        if not self.text.visible:
            return Size(0.0, 0.0)
        font, _ = self._font()
        left, top, right, bottom = ImageDraw.Draw(Image.new("L", (1, 1))).textbbox((0, 0), self.text.content, font=font)
        return Size(float(right - min(0, left)), float(bottom - min(0, top)))

    def _layer(self, layer):
        if layer == TEXT_LAYER:
            if not self.text.visible:
                raise ValidationError("Add some text first.")
            return self.text, self.text_box()
        if layer == IMAGE_LAYER:
            img = self.require_image()
            return img, img.size
        raise ValueError(f"unknown layer: {layer!r}")

    def _bounds(self, size):
        return (
            CANVAS_WIDTH - size.width * self.zoom_level,
            CANVAS_HEIGHT - size.height * self.zoom_level,
        )

    def _reclamp(self, layer):
        target, size = self._layer(layer)
        max_x, max_y = self._bounds(size)
        target.position = Point(_clamp(target.position.x, 0, max_x), _clamp(target.position.y, 0, max_y))
        return target.position

    # geometry
    def move_layer(self, layer, dx, dy):
        target, size = self._layer(layer)
        max_x, max_y = self._bounds(size)
        target.position = Point(
            _clamp(target.position.x + dx / self.zoom_level, 0, max_x),
            _clamp(target.position.y + dy / self.zoom_level, 0, max_y),
        )
        return target.position

    def resize_image(self, handle, dx, dy, start=None):
        img = self.require_image()
        if start is None:
            start = (img.size.width, img.size.height, img.position.x, img.position.y)
        start_w, start_h, start_x, start_y = start
        ddx = dx / self.zoom_level
        if handle == HANDLE_BOTTOM_RIGHT:
            width = max(MIN_IMAGE_SIDE, start_w + ddx)
        elif handle == HANDLE_TOP_LEFT:
            width = max(MIN_IMAGE_SIDE, start_w - ddx)
        else:
            raise ValueError(f"unknown resize handle: {handle!r}")
        height = width / (start_w / start_h)
        img.size = Size(width, height)
        if handle == HANDLE_TOP_LEFT:
            img.position = Point(start_x + (start_w - width), start_y + (start_h - height))
        self._reclamp(IMAGE_LAYER)
        return img.size

    def resize_image_step(self, delta_width, delta_height):
        img = self.require_image()
        img.size = Size(
            max(MIN_IMAGE_SIDE, img.size.width + delta_width),
            max(MIN_IMAGE_SIDE, img.size.height + delta_height),
        )
        self._reclamp(IMAGE_LAYER)
        return img.size

    def rotate_image(self, angle):
        img = self.require_image()
        img.rotation = float(angle)
        return img.rotation

    def rotate_image_towards(self, x, y, center=None):
        img = self.require_image()
        if center is None:
            center = (img.position.x + img.size.width / 2, img.position.y + img.size.height / 2)
        return self.rotate_image(math.degrees(math.atan2(y - center[1], x - center[0])))

    def rotate_image_step(self, step=ROTATION_STEP):
        img = self.require_image()
        img.rotation = (img.rotation + step) % 360
        return img.rotation

    def rotate_text(self, step=ROTATION_STEP):
        self.text.rotation = (self.text.rotation + step) % 360
        return self.text.rotation

    def set_font_size(self, delta):
        self.text.font_size = max(MIN_FONT_SIZE, self.text.font_size + int(delta))
        return self.text.font_size

    def set_zoom(self, delta):
        self.zoom_level = round(_clamp(self.zoom_level + delta, MIN_ZOOM, MAX_ZOOM), 6)
        return self.zoom_level

    # gestures
    def drag(self, layer):
        self._layer(layer)
        return DragGesture(self, layer)

    def resize(self, handle):
        return ResizeGesture(self, handle)

    def rotate(self):
        return RotateGesture(self)

    # output
    def rasterize(self):
        if self.closed or self.base_image is None:
            raise RenderTargetMissing("Cannot save: Canvas not found")
        s = CAPTURE_SCALE
        z = self.zoom_level
        w, h = CANVAS_WIDTH * s, CANVAS_HEIGHT * s
        img = Image.new("RGBA", (w, h), (0, 0, 0, 0))

        bw, bh = max(1, round(w * z)), max(1, round(h * z))
        base = self.base_image.resize((bw, bh), Image.Resampling.LANCZOS)
        layer = Image.new("RGBA", (w, h), (0, 0, 0, 0))
        layer.paste(base, ((w - bw) // 2, (h - bh) // 2))
        img = Image.alpha_composite(img, layer)

        if self.image is not None:
            tile = self.image.image.resize(
                (max(1, round(self.image.size.width * s * z)), max(1, round(self.image.size.height * s * z))),
                Image.Resampling.LANCZOS,
            )
            img = self._place(img, tile, self.image.position, self.image.size, self.image.rotation)

        if self.text.visible:
            img = self._place(img, self._text_tile(s * z), self.text.position, self.text_box(), self.text.rotation)
        return img

    def _text_tile(self, scale):
        font, true_italic = self._font(scale)
        measure = ImageDraw.Draw(Image.new("L", (1, 1)))
        left, top, right, bottom = measure.textbbox((0, 0), self.text.content, font=font)
        pad = max(2, int(4 * scale))
        tw, th = right - min(0, left) + pad * 2, bottom - min(0, top) + pad * 2
        origin = (pad - min(0, left), pad - min(0, top))

        shadow = Image.new("RGBA", (tw, th), (0, 0, 0, 0))
        ImageDraw.Draw(shadow).text(origin, self.text.content, font=font, fill=(0, 0, 0, 77))
        tile = shadow.filter(ImageFilter.GaussianBlur(max(1, pad // 2)))
        ImageDraw.Draw(tile).text(origin, self.text.content, font=font, fill=self.text.color)
        if self.text.font_style == "italic" and not true_italic:
            shift = int(th * ITALIC_SHEAR)
            tile = tile.transform(
                (tw + shift, th),
                Image.Transform.AFFINE,
                (1, ITALIC_SHEAR, -shift, 0, 1, 0),
                resample=Image.Resampling.BICUBIC,
            )
        return tile

    @staticmethod
    def _place(img, tile, position, size, rotation):
        s = CAPTURE_SCALE
        if rotation:
            tile = tile.rotate(-rotation, resample=Image.Resampling.BICUBIC, expand=True)
        cx = (position.x + size.width / 2) * s
        cy = (position.y + size.height / 2) * s
        layer = Image.new("RGBA", img.size, (0, 0, 0, 0))
        layer.paste(tile, (round(cx - tile.width / 2), round(cy - tile.height / 2)))
        return Image.alpha_composite(img, layer)

    def render_png(self):
        buf = io.BytesIO()
        self.rasterize().save(buf, "PNG")
        return buf.getvalue()

    def finalize_download(self, gateway, save, catalog=None):
        """Rasterize, count the download, then hand the PNG to ``save``.

        A failed count raises ``BackendError`` and nothing is saved; the
        session stays open so the user can retry.
        """
        data = self.render_png()
        new_count = record_download(gateway, self.poster.id, catalog)
        filename = f"{self.poster.title}-customized.png"
        save(filename, data)
        log_event(LOGGER, logging.INFO, "customize.downloaded", poster_id=self.poster.id, bytes=len(data))
        self.close()
        return new_count

    def cancel(self):
        self.close()

    def close(self):
        if self.bus.active is not None:
            self.bus.active.cancel()
        self.text = TextLayer()
        self.image = None
        self.zoom_level = 1.0
        self.base_image = None
        self.closed = True
