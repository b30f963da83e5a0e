import importlib
import io
import sys
from pathlib import Path

import pytest
from PIL import Image


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def app_module(monkeypatch, tmp_path):
    data_dir = tmp_path / "web_data"
    monkeypatch.setenv("POSTER_DATA_DIR", str(data_dir))
    monkeypatch.delenv("POSTER_REDIS_URL", raising=False)

    if "app" in sys.modules:
        del sys.modules["app"]
    module = importlib.import_module("app")
    module.app.config["TESTING"] = True
    yield module
    module.GATEWAY.close()


@pytest.fixture
def gateway(tmp_path):
    from gallery_backend import build_gateway

    gw = build_gateway(str(tmp_path / "data"), public_base="/storage", timeout=5)
    yield gw
    gw.close()


def png_bytes(size=(32, 32), color="white", fmt="PNG"):
    img = Image.new("RGB", size, color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def make_poster(gateway, title="Diwali Lights", category="Festival", **extra):
    record = {"title": title, "category": category, "download_url": "/storage/thumbnails/x.png"}
    record.update(extra)
    return gateway.insert(record)
