import logging
import mimetypes
import os
import uuid

from flask import Flask, Response, g, has_request_context, jsonify, request

from catalog import FETCH_FAILED_MESSAGE, SORT_LATEST, filter_and_sort
from gallery_backend import DEFAULT_TIMEOUT_SECONDS, init_gateway, log_event, log_exception
from gallery_models import CATEGORIES, CATEGORY_ALL, BackendError, Poster, ValidationError
from upload_pipeline import MAX_UPLOAD_BYTES, Asset, UploadPipeline


BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get("POSTER_DATA_DIR", os.path.join(BASE_DIR, "web_data"))
if not os.path.isabs(DATA_DIR):
    DATA_DIR = os.path.join(BASE_DIR, DATA_DIR)
DATA_DIR = os.path.abspath(DATA_DIR)
PUBLIC_BASE_URL = (os.environ.get("POSTER_PUBLIC_BASE_URL") or "").strip().rstrip("/")
STORAGE_ROUTE = "/storage"
REDIS_URL = (os.environ.get("POSTER_REDIS_URL") or "").strip()
REDIS_CHANNEL = (os.environ.get("POSTER_REDIS_CHANNEL") or "").strip()
DEV_AUTO_RELOAD = str(
    os.environ.get("POSTER_DEV_RELOAD", "0")
).strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name, default, min_value):
    try:
        value = float(os.environ.get(name, default))
    except (TypeError, ValueError):
        value = float(default)
    return max(float(min_value), value)


BACKEND_TIMEOUT = _env_float("POSTER_BACKEND_TIMEOUT", DEFAULT_TIMEOUT_SECONDS, 0.5)
MAX_UPLOAD_MB = int(_env_float("POSTER_MAX_UPLOAD_MB", MAX_UPLOAD_BYTES // (1024 * 1024), 1))
UPLOAD_LIMIT_BYTES = MAX_UPLOAD_MB * 1024 * 1024
# file + thumbnail + form fields
MAX_REQUEST_BYTES = UPLOAD_LIMIT_BYTES * 2 + 1024 * 1024

app = Flask(__name__)
app.config["JSON_AS_ASCII"] = False
app.config["MAX_CONTENT_LENGTH"] = MAX_REQUEST_BYTES
LOGGER = logging.getLogger("poster_gallery")
if not LOGGER.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
    LOGGER.addHandler(handler)
LOGGER.setLevel(logging.INFO)

GATEWAY = init_gateway(
    DATA_DIR,
    public_base=f"{PUBLIC_BASE_URL}{STORAGE_ROUTE}",
    timeout=BACKEND_TIMEOUT,
    redis_url=REDIS_URL,
    redis_channel=REDIS_CHANNEL,
)
UPLOADS = UploadPipeline(GATEWAY, max_bytes=UPLOAD_LIMIT_BYTES)


def _request_context(context):
    payload = {}
    if has_request_context():
        payload["request_id"] = getattr(g, "request_id", "")
        payload["path"] = request.path
        payload["method"] = request.method
    payload.update(context)
    return payload


def _log_event(level, event, **context):
    log_event(LOGGER, level, event, **_request_context(context))


def _log_exception(event, **context):
    log_exception(LOGGER, event, **_request_context(context))


@app.before_request
def _set_request_id():
    raw = (request.headers.get("X-Request-Id") or "").strip()
    g.request_id = raw[:64] if raw else uuid.uuid4().hex[:12]


@app.after_request
def _append_request_id(resp):
    req_id = getattr(g, "request_id", "")
    if req_id:
        resp.headers["X-Request-Id"] = req_id
    return resp


def _coerce_request_bool(value, default=False):
    if value is None:
        return bool(default)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return bool(default)
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off"}:
            return False
        return bool(default)
    return bool(value)


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        raise ValueError("Request body must be JSON")
    if not isinstance(data, dict):
        raise ValueError("Malformed JSON body")
    return data


def _coerce_id(value):
    if isinstance(value, bool):
        raise ValueError("Invalid id")
    try:
        poster_id = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValueError("Invalid id")
    if poster_id <= 0:
        raise ValueError("Invalid id")
    return poster_id


def _asset_from_form(name):
    f = request.files.get(name)
    if f is None or not f.filename:
        return None
    return Asset(filename=f.filename, data=f.read(), content_type=f.mimetype or "application/octet-stream")


def _storage_path_for(filename):
    name = str(filename or "").strip().replace("\\", "/")
    prefix = f"{STORAGE_ROUTE}/"
    if prefix in name:
        name = name.split(prefix, 1)[1]
    name = name.lstrip("/")
    if name.startswith("psd/") or name.startswith("thumbnails/"):
        return name
    return f"thumbnails/{name}"


@app.route("/")
def index():
    return jsonify({"service": "poster-gallery", "ok": True, "categories": list(CATEGORIES)})


@app.get("/health")
def health():
    return jsonify({"ok": True})


@app.errorhandler(413)
def too_large(_):
    mb = MAX_UPLOAD_MB
    return jsonify({"error": f"File size exceeds maximum limit of {mb}MB"}), 413


@app.get("/api/posters")
def api_posters():
    query = request.args.get("q", "")
    category = request.args.get("category", CATEGORY_ALL) or CATEGORY_ALL
    sort = request.args.get("sort", SORT_LATEST) or SORT_LATEST
    try:
        rows = GATEWAY.select(order_by="created_at", descending=True)
        posters = filter_and_sort([Poster.from_record(r) for r in rows], query, category, sort)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except BackendError as e:
        _log_event(logging.ERROR, "api_posters.failed", error=str(e))
        return jsonify({"error": FETCH_FAILED_MESSAGE}), 500
    return jsonify({"posters": [p.to_record() for p in posters], "total": len(posters)})


@app.post("/api/upload")
def api_upload():
    asset = _asset_from_form("file")
    thumbnail = _asset_from_form("thumbnail")
    title = (request.form.get("title") or "").strip()
    category = (request.form.get("category") or "").strip()
    is_editable = _coerce_request_bool(request.form.get("isEditable"), False)
    font_family = (request.form.get("fontFamily") or "").strip()
    if asset is None or not title or not category:
        return jsonify({"error": "Missing file, title, or category"}), 400
    try:
        result = UPLOADS.submit(asset, thumbnail, title, category, is_editable, font_family)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except BackendError as e:
        _log_event(logging.ERROR, "api_upload.backend_failed", title=title, error=str(e))
        return jsonify({"error": f"Upload failed: {e}"}), 400
    except Exception as e:
        _log_exception("api_upload.failed", title=title)
        return jsonify({"error": f"Upload failed: {e}"}), 500
    _log_event(logging.INFO, "api_upload.ok", poster_id=result.poster.id, title=title, category=category)
    return jsonify(
        {
            "downloadLink": result.public_url,
            "title": title,
            "category": category,
            "isEditable": is_editable,
            "fontFamily": font_family,
        }
    )


@app.put("/api/update")
def api_update():
    try:
        data = _json_body()
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    title = str(data.get("title") or "").strip()
    category = str(data.get("category") or "").strip()
    if not data.get("id") or not title or not category:
        return jsonify({"error": "Missing id, title, or category"}), 400
    try:
        poster_id = _coerce_id(data.get("id"))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    if category not in CATEGORIES:
        return jsonify({"error": f"Category must be one of: {', '.join(CATEGORIES)}"}), 400
    fields = {"title": title, "category": category}
    if "fontFamily" in data:
        fields["font_family"] = str(data.get("fontFamily") or "").strip() or None
    if "isEditable" in data:
        fields["is_editable"] = _coerce_request_bool(data.get("isEditable"), False)
    try:
        GATEWAY.update(poster_id, fields)
    except BackendError as e:
        _log_event(logging.ERROR, "api_update.failed", poster_id=poster_id, error=str(e))
        return jsonify({"error": f"Failed to update poster: {e}"}), 400
    except Exception as e:
        _log_exception("api_update.failed", poster_id=poster_id)
        return jsonify({"error": f"Update failed: {e}"}), 500
    _log_event(logging.INFO, "api_update.ok", poster_id=poster_id, title=title, category=category)
    return jsonify({"message": "Poster updated successfully"})


@app.delete("/api/delete")
def api_delete():
    try:
        data = _json_body()
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    filename = str(data.get("filename") or "").strip()
    if not data.get("id") or not filename:
        return jsonify({"error": "Missing id or filename"}), 400
    try:
        poster_id = _coerce_id(data.get("id"))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    try:
        path = _storage_path_for(filename)
        GATEWAY.remove([path])
    except BackendError as e:
        _log_event(logging.ERROR, "api_delete.storage_failed", poster_id=poster_id, filename=filename, error=str(e))
        return jsonify({"error": f"Failed to delete file: {e}"}), 400
    except Exception as e:
        _log_exception("api_delete.failed", poster_id=poster_id)
        return jsonify({"error": f"Delete failed: {e}"}), 500
    try:
        GATEWAY.delete(poster_id)
    except BackendError as e:
        _log_event(logging.ERROR, "api_delete.table_failed", poster_id=poster_id, error=str(e))
        return jsonify({"error": f"Failed to delete poster: {e}"}), 400
    except Exception as e:
        _log_exception("api_delete.failed", poster_id=poster_id)
        return jsonify({"error": f"Delete failed: {e}"}), 500
    _log_event(logging.INFO, "api_delete.ok", poster_id=poster_id, path=path)
    return jsonify({"message": "Poster deleted successfully"})


@app.get(f"{STORAGE_ROUTE}/<path:relpath>")
def storage_object(relpath):
    try:
        data = GATEWAY.read_object(relpath)
    except BackendError:
        return jsonify({"error": "File not found"}), 404
    mimetype = GATEWAY.store.content_type(relpath)
    if mimetype == "application/octet-stream":
        mimetype = mimetypes.guess_type(relpath)[0] or mimetype
    resp = Response(data, mimetype=mimetype)
    resp.headers["Cache-Control"] = "public, max-age=3600"
    return resp


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5173, debug=DEV_AUTO_RELOAD, use_reloader=DEV_AUTO_RELOAD)
