import io
from unittest.mock import MagicMock

import pytest
from PIL import Image
from sqlmodel import Session, select

from upscaler.core.exceptions import InfrastructureError, JobNotFoundError, ValidationError
from upscaler.core.queue import InMemoryWorkQueue
from upscaler.modules.imagery.models import ImageJob, JobState
from upscaler.modules.imagery.schemas import StateTransition
from upscaler.modules.imagery.services import StatusQueryService, SubmissionGateway


def test_submit_stores_input_and_enqueues(store, work_queue, storage, gateway, make_image):
    image_bytes = make_image(size=(64, 48), fmt="JPEG")

    job_id = gateway.submit(
        "owner-1", image_bytes, "holiday.jpeg", "upscale", 4,
        strategy_hint="ai-enhance", quality_tier="quality"
    )

    job = store.get(job_id)
    assert job.job_state == JobState.QUEUED
    assert job.owner_id == "owner-1"
    assert job.strategy == "ai-enhance"
    assert job.quality_tier == "quality"
    assert job.algorithm == "lanczos"
    assert job.input_ref == f"jobs/{job_id}/original.jpg"
    assert job.output_ref == f"jobs/{job_id}/processed.jpg"
    assert (job.input_width, job.input_height) == (64, 48)
    assert storage.path_for(job.input_ref).read_bytes() == image_bytes
    assert not storage.exists(job.output_ref)

    leased = work_queue.dequeue()
    assert leased.job_id == job_id
    assert leased.entry.params.scale_factor == 4
    assert leased.entry.params.file_extension == "jpg"


@pytest.mark.parametrize("operation_kind, scale_factor", [
    ("upscale", 3),
    ("rotate", 2),
])
def test_submit_rejects_invalid_parameters(work_queue, gateway, make_image, operation_kind, scale_factor):
    with pytest.raises(ValidationError) as exc:
        gateway.submit("owner-1", make_image(), "a.png", operation_kind, scale_factor)

    assert exc.value.code == 400
    assert work_queue.depth() == 0


def test_submit_rejects_unknown_strategy(gateway, make_image):
    with pytest.raises(ValidationError):
        gateway.submit("owner-1", make_image(), "a.png", "upscale", 2, strategy_hint="magic")


def test_submit_rejects_unreadable_image(work_queue, gateway):
    with pytest.raises(ValidationError):
        gateway.submit("owner-1", b"definitely not an image", "a.png", "upscale", 2)
    assert work_queue.depth() == 0


def test_submit_rejects_unsupported_format(gateway):
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8)).save(buffer, format="GIF")

    with pytest.raises(ValidationError) as exc:
        gateway.submit("owner-1", buffer.getvalue(), "anim.gif", "upscale", 2)
    assert "Unsupported image format" in exc.value.message


def test_submit_accepts_multi_picture_camera_jpeg(store, gateway):
    buffer = io.BytesIO()
    primary = Image.new("RGB", (32, 24), (10, 20, 30))
    depth_frame = Image.new("RGB", (32, 24), (90, 90, 90))
    primary.save(buffer, format="MPO", save_all=True, append_images=[depth_frame])

    job_id = gateway.submit("owner-1", buffer.getvalue(), "IMG_0042.JPG", "upscale", 2)

    job = store.get(job_id)
    assert job.file_extension == "jpg"
    assert job.input_ref == f"jobs/{job_id}/original.jpg"
    assert (job.input_width, job.input_height) == (32, 24)


def test_submit_rejects_png_with_bad_chunk_checksum(work_queue, gateway, make_image):
    data = bytearray(make_image(fmt="PNG"))
    idat = data.index(b"IDAT")
    length = int.from_bytes(data[idat - 4:idat], "big")
    data[idat + 4 + length] ^= 0xFF

    with pytest.raises(ValidationError) as exc:
        gateway.submit("owner-1", bytes(data), "broken.png", "upscale", 2)

    assert exc.value.code == 400
    assert "Unreadable image" in exc.value.message
    assert work_queue.depth() == 0


def test_submit_requires_owner(gateway, make_image):
    with pytest.raises(ValidationError):
        gateway.submit("", make_image(), "a.png", "upscale", 2)


def test_enqueue_failure_propagates_and_keeps_record_queued(engine, store, storage, make_image):
    queue = MagicMock(spec=InMemoryWorkQueue)
    queue.enqueue.side_effect = InfrastructureError("queue down", component="work_queue")
    gateway = SubmissionGateway(store, queue, storage)

    with pytest.raises(InfrastructureError):
        gateway.submit("owner-1", make_image(), "a.png", "upscale", 2)

    with Session(engine) as session:
        jobs = session.exec(select(ImageJob)).all()
    assert len(jobs) == 1
    assert jobs[0].job_state == JobState.QUEUED


def test_status_of_unknown_job(store):
    with pytest.raises(JobNotFoundError):
        StatusQueryService(store).get_status("missing")


def test_status_hides_output_until_succeeded(store, gateway, make_image):
    status_service = StatusQueryService(store)
    job_id = gateway.submit("owner-1", make_image(size=(10, 20)), "a.png", "upscale", 2)

    queued = status_service.get_status(job_id)
    assert queued.state == JobState.QUEUED
    assert queued.output_ref is None
    assert queued.input_resolution == "10x20"

    store.update_state(job_id, StateTransition.start("fast-resample"))
    store.update_progress(job_id, 42)
    running = status_service.get_status(job_id)
    assert running.progress_percent == 42
    assert running.output_ref is None

    store.update_state(job_id, StateTransition.succeed(store.get(job_id).output_ref, 20, 40, 100))
    done = status_service.get_status(job_id)
    assert done.state == JobState.SUCCEEDED
    assert done.progress_percent == 100
    assert done.output_ref == f"jobs/{job_id}/processed.png"
    assert done.output_resolution == "20x40"
    assert done.error_detail is None


def test_status_shows_error_detail_when_failed(store, gateway, make_image):
    job_id = gateway.submit("owner-1", make_image(), "a.png", "upscale", 2)
    store.update_state(job_id, StateTransition.start("fast-resample"))
    store.update_state(job_id, StateTransition.fail("ExecutionError: boom"))

    failed = StatusQueryService(store).get_status(job_id)

    assert failed.state == JobState.FAILED
    assert failed.error_detail == "ExecutionError: boom"
    assert failed.output_ref is None
