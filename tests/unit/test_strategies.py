import pytest
from PIL import Image

from upscaler.core.exceptions import EnhanceTimeoutError, ExecutionError, UnavailableStrategyError
from upscaler.modules.imagery.schemas import ProcessingParams
from upscaler.pipeline.strategies import (
    EnhanceStrategy,
    ResampleStrategy,
    StrategySelector,
    partial_path,
    target_dimensions,
)


def params(**overrides) -> ProcessingParams:
    fields = {"operation_kind": "upscale", "scale_factor": 2, "file_extension": "png"}
    fields.update(overrides)
    return ProcessingParams(**fields)


@pytest.fixture
def input_png(tmp_path, make_image):
    path = tmp_path / "original.png"
    path.write_bytes(make_image(size=(100, 60)))
    return path


def test_target_dimensions():
    assert target_dimensions(100, 60, params(scale_factor=4)) == (400, 240)
    assert target_dimensions(100, 60, params(operation_kind="downscale", scale_factor=4)) == (25, 15)
    assert target_dimensions(3, 3, params(operation_kind="downscale", scale_factor=8)) == (1, 1)


def test_resample_upscale_writes_output(tmp_path, input_png):
    output = tmp_path / "processed.png"
    calls = []

    result = ResampleStrategy().execute(input_png, output, params(), calls.append)

    assert (result.width, result.height) == (200, 120)
    with Image.open(output) as produced:
        assert produced.size == (200, 120)
    assert not partial_path(output).exists()
    assert calls == [50]


def test_resample_downscale_to_jpeg(tmp_path, input_png):
    output = tmp_path / "processed.jpg"

    result = ResampleStrategy().execute(
        input_png,
        output,
        params(operation_kind="downscale", scale_factor=4, file_extension="jpg", quality_tier="fast"),
        lambda _: None,
    )

    assert (result.width, result.height) == (25, 15)
    with Image.open(output) as produced:
        assert produced.format == "JPEG"


def test_resample_rejects_unreadable_input(tmp_path):
    broken = tmp_path / "original.png"
    broken.write_bytes(b"not an image")
    output = tmp_path / "processed.png"

    with pytest.raises(ExecutionError):
        ResampleStrategy().execute(broken, output, params(), lambda _: None)
    assert not output.exists()


def test_enhance_support_checks(tmp_path, fake_enhancer):
    enhance = EnhanceStrategy(fake_enhancer())

    with pytest.raises(UnavailableStrategyError) as exc:
        enhance.check_supported(params(operation_kind="downscale"))
    assert exc.value.reason == "operation_not_supported"

    with pytest.raises(UnavailableStrategyError) as exc:
        enhance.check_supported(params(scale_factor=8))
    assert exc.value.reason == "scale_not_supported"

    missing = EnhanceStrategy(str(tmp_path / "missing-binary"))
    assert missing.is_available() is False
    with pytest.raises(UnavailableStrategyError) as exc:
        missing.check_supported(params())
    assert exc.value.reason == "binary_unavailable"


def test_enhance_command_line(tmp_path):
    enhance = EnhanceStrategy("/opt/realesrgan", model="realesrgan-x4plus", tile_size=256)

    command = enhance.build_command(tmp_path / "in.png", tmp_path / "out.png", params(scale_factor=4))

    assert command == [
        "/opt/realesrgan",
        "-i", str(tmp_path / "in.png"),
        "-o", str(tmp_path / "out.png"),
        "-n", "realesrgan-x4plus",
        "-s", "4",
        "-f", "png",
        "-t", "256",
    ]
    enhance.gpu_id = "1"
    assert enhance.build_command(tmp_path / "in.png", tmp_path / "out.png", params())[-2:] == ["-g", "1"]


def test_enhance_runs_binary_and_reports_progress(tmp_path, input_png, fake_enhancer):
    output = tmp_path / "processed.png"
    progress = []

    result = EnhanceStrategy(fake_enhancer()).execute(input_png, output, params(), progress.append)

    assert (result.width, result.height) == (200, 120)
    assert output.is_file()
    assert not partial_path(output).exists()
    assert progress == [0.0, 25.0, 50.0, 75.0, 100.0]


def test_enhance_nonzero_exit_carries_diagnostics(tmp_path, input_png, fake_enhancer):
    output = tmp_path / "processed.png"

    with pytest.raises(ExecutionError) as exc:
        EnhanceStrategy(fake_enhancer("fail")).execute(input_png, output, params(), lambda _: None)

    assert "exited with code 1" in exc.value.message
    assert "vkCreateInstance failed" in exc.value.message
    assert not output.exists()


def test_enhance_timeout_kills_process(tmp_path, input_png, fake_enhancer):
    output = tmp_path / "processed.png"
    enhance = EnhanceStrategy(fake_enhancer("hang"), timeout_seconds=1)

    with pytest.raises(EnhanceTimeoutError):
        enhance.execute(input_png, output, params(), lambda _: None)
    assert not output.exists()


def test_selector_routes_and_falls_back(tmp_path, fake_enhancer):
    resample = ResampleStrategy()
    enhance = EnhanceStrategy(fake_enhancer())
    selector = StrategySelector(resample, enhance)

    assert selector.select(params()) == (resample, None)
    assert selector.select(params(strategy_hint="ai-enhance")) == (enhance, None)
    assert selector.select(params(strategy_hint="ai-enhance", scale_factor=8)) == (resample, "scale_not_supported")
    assert selector.select(
        params(strategy_hint="ai-enhance", operation_kind="downscale")
    ) == (resample, "operation_not_supported")

    unavailable = StrategySelector(resample, EnhanceStrategy(str(tmp_path / "missing")))
    assert unavailable.select(params(strategy_hint="ai-enhance")) == (resample, "binary_unavailable")

    assert StrategySelector(resample).select(params(strategy_hint="ai-enhance")) == (resample, "strategy_not_configured")


def test_selector_resume_keeps_recorded_strategy(fake_enhancer):
    resample = ResampleStrategy()
    enhance = EnhanceStrategy(fake_enhancer())
    selector = StrategySelector(resample, enhance)

    assert selector.resume("fast-resample", params()) == (resample, None)
    assert selector.resume("ai-enhance", params()) == (enhance, None)


def test_selector_resume_falls_back_when_enhance_cannot_run_here(tmp_path):
    resample = ResampleStrategy()
    missing = StrategySelector(resample, EnhanceStrategy(str(tmp_path / "missing")))

    assert missing.resume("ai-enhance", params()) == (resample, "binary_unavailable")
    assert StrategySelector(resample).resume("ai-enhance", params()) == (resample, "strategy_not_configured")
    assert missing.resume("retired-strategy", params()) == (resample, "strategy_not_configured")
