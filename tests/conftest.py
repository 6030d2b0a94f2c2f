import io
import stat
import sys
from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image

from upscaler.core.config import settings
from upscaler.core.database import create_db_and_tables, create_db_engine
from upscaler.core.queue import InMemoryWorkQueue
from upscaler.core.storage import LocalStorage
from upscaler.main import app
from upscaler.modules.imagery.models import ImageJob
from upscaler.modules.imagery.repositories import JobStore
from upscaler.modules.imagery.services import SubmissionGateway

# Stand-in for the Real-ESRGAN binary: same argument list, "<float>%" progress
# on stderr, exit code 0 on success. MODE selects the behaviour under test.
FAKE_ENHANCER = '''#!{python}
import sys
import time

from PIL import Image

MODE = {mode!r}
args = sys.argv[1:]
opts = dict(zip(args[::2], args[1::2]))

if MODE == "fail":
    sys.stderr.write("vkCreateInstance failed -9\\n")
    sys.stderr.write("invalid gpu device\\n")
    sys.exit(1)

if MODE == "hang":
    sys.stderr.write("0.00%\\n")
    sys.stderr.flush()
    time.sleep(60)

scale = int(opts["-s"])
for token in ("0.00%", "25.00%", "50.00%", "75.00%", "100.00%"):
    sys.stderr.write(token + "\\n")
    sys.stderr.flush()

with Image.open(opts["-i"]) as image:
    result = image.resize((image.width * scale, image.height * scale))
fmt = {{"jpg": "JPEG", "png": "PNG", "webp": "WEBP"}}[opts["-f"]]
if fmt == "JPEG":
    result = result.convert("RGB")
result.save(opts["-o"], format=fmt)
'''


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return JobStore(engine)


@pytest.fixture
def work_queue():
    return InMemoryWorkQueue(lease_timeout=60)


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path / "storage"))


@pytest.fixture
def gateway(store, work_queue, storage):
    return SubmissionGateway(store, work_queue, storage)


@pytest.fixture
def make_image():
    def _make(size=(64, 48), fmt="PNG", color=(200, 30, 30)):
        buffer = io.BytesIO()
        Image.new("RGB", size, color).save(buffer, format=fmt)
        return buffer.getvalue()
    return _make


@pytest.fixture
def job_factory(store):
    """Create QUEUED job records directly in the store."""
    def _create(**overrides):
        fields = {
            "owner_id": "owner-1",
            "operation_kind": "upscale",
            "scale_factor": 2,
            "input_ref": "jobs/x/original.png",
            "output_ref": "jobs/x/processed.png",
            "file_extension": "png",
        }
        fields.update(overrides)
        return store.create(ImageJob(**fields))
    return _create


@pytest.fixture
def fake_enhancer(tmp_path):
    """Write an executable enhancer script; returns its path."""
    def _write(mode: str = "ok") -> str:
        path = tmp_path / f"fake-enhancer-{mode}"
        path.write_text(FAKE_ENHANCER.format(python=sys.executable, mode=mode))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)
    return _write


@pytest.fixture
async def client(tmp_path, monkeypatch) -> AsyncGenerator[AsyncClient, None]:
    monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setattr(settings, "LOCAL_STORAGE_PATH", str(tmp_path / "storage"))
    monkeypatch.setattr(settings, "QUEUE_BACKEND", "memory")
    monkeypatch.setattr(settings, "EMBEDDED_WORKERS", True)
    monkeypatch.setattr(settings, "WORKER_POLL_TIMEOUT_SECONDS", 0.1)
    monkeypatch.setattr(settings, "PROGRESS_MIN_INTERVAL_SECONDS", 0.0)
    monkeypatch.setattr(settings, "ENHANCE_BINARY_PATH", str(tmp_path / "missing-enhancer"))

    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
