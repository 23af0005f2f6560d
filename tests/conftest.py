from __future__ import annotations

import asyncio
import sys
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image, ImageDraw
from starlette.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.config import Settings  # noqa: E402
from app.main import create_app  # noqa: E402
from app.runtime import build_runtime  # noqa: E402


@pytest.fixture()
def settings(monkeypatch):
    # Local adapters only; never reach for a real oracle, backend or Redis.
    for name in (
        "SCORE_ORACLE_URL",
        "VISION_ORACLE_URL",
        "GENERATIVE_BACKEND_URL",
        "REDIS_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STORE_BACKEND", "memory")
    return Settings(_env_file=None)


@pytest.fixture()
def runtime(settings):
    return build_runtime(settings)


@pytest.fixture()
def app(settings, runtime):
    # Function scope: new app (and fresh stores) for each test.
    return create_app(settings, runtime=runtime)


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


def _make_artwork(seed: int = 0, size: int = 128) -> Image.Image:
    """Deterministic, structured test image (bands + shapes vary with ``seed``)."""

    img = Image.new("RGB", (size, size), (20 + seed * 30 % 200, 40, 90))
    draw = ImageDraw.Draw(img)
    step = size // 8
    for i in range(8):
        shade = (i * 31 + seed * 57) % 256
        draw.rectangle([0, i * step, size // 2, (i + 1) * step], fill=(shade, 255 - shade, 128))
    draw.ellipse(
        [size // 2, (seed * 13) % (size // 2), size - 4, (seed * 13) % (size // 2) + size // 2],
        fill=(250, 220 - seed * 20 % 200, 30),
    )
    return img


def _png_bytes(img: Image.Image) -> bytes:
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def artwork():
    """Factory: ``artwork(seed)`` -> PIL image."""
    return _make_artwork


@pytest.fixture()
def png():
    """Factory: ``png(image)`` -> PNG bytes."""
    return _png_bytes


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Minimal asyncio support without requiring pytest-asyncio."""

    test_func = pyfuncitem.obj
    if asyncio.iscoroutinefunction(test_func):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            call_kwargs = {
                name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames
            }
            loop.run_until_complete(test_func(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None
