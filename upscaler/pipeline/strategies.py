"""
Processing Strategies

Two interchangeable ways to turn an input image into the requested output:

- ResampleStrategy ("fast-resample"): in-process Pillow resize + re-encode.
  Deterministic, always available.
- EnhanceStrategy ("ai-enhance"): the Real-ESRGAN ncnn-vulkan binary run as
  a subprocess. Availability is probed, supported scales are limited, and the
  run is bounded by a hard wall-clock timeout.

The worker depends only on ProcessingStrategy and StrategySelector.
"""

import os
import subprocess
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from PIL import Image

from upscaler.core.config import settings
from upscaler.core.exceptions import (
    EnhanceTimeoutError,
    ExecutionError,
    UnavailableStrategyError,
)
from upscaler.core.logging import get_logger
from upscaler.core.metrics import record_strategy_fallback
from upscaler.modules.imagery.models import (
    OperationKind,
    QualityTier,
    ResampleAlgorithm,
    StrategyName,
)
from upscaler.modules.imagery.schemas import ProcessingParams
from upscaler.pipeline.progress import ProgressCallback, parse_progress_token

logger = get_logger(__name__)

# Encoder quality presets per tier (JPEG / WebP)
QUALITY_PRESETS = {
    QualityTier.FAST: 70,
    QualityTier.BALANCED: 85,
    QualityTier.QUALITY: 95,
}

RESAMPLE_FILTERS = {
    ResampleAlgorithm.LANCZOS: Image.Resampling.LANCZOS,
    ResampleAlgorithm.BICUBIC: Image.Resampling.BICUBIC,
    ResampleAlgorithm.BILINEAR: Image.Resampling.BILINEAR,
    ResampleAlgorithm.NEAREST: Image.Resampling.NEAREST,
}

PIL_FORMATS = {"jpg": "JPEG", "png": "PNG", "webp": "WEBP"}

# Captured diagnostic text kept for error_detail
MAX_DIAGNOSTIC_CHARS = 4000


@dataclass(frozen=True)
class StrategyResult:
    width: int
    height: int


def target_dimensions(width: int, height: int, params: ProcessingParams) -> Tuple[int, int]:
    """Output size for an operation: w*s x h*s, or round(w/s) x round(h/s)."""
    scale = params.scale_factor
    if params.operation_kind == OperationKind.UPSCALE:
        return width * scale, height * scale
    return max(1, round(width / scale)), max(1, round(height / scale))


def partial_path(output_path: Path) -> Path:
    """Scratch file a strategy writes before atomically publishing output_path."""
    return output_path.with_name(f"{output_path.stem}.partial{output_path.suffix}")


def _publish(scratch: Path, output_path: Path) -> StrategyResult:
    if not scratch.is_file() or scratch.stat().st_size == 0:
        raise ExecutionError("Strategy produced no output")
    try:
        with Image.open(scratch) as produced:
            width, height = produced.size
    except (OSError, Image.DecompressionBombError) as e:
        raise ExecutionError(f"Strategy produced an unreadable image: {e}")
    os.replace(scratch, output_path)
    return StrategyResult(width=width, height=height)


class ProcessingStrategy(ABC):
    """Common contract for image transform strategies."""

    name: str

    def is_available(self) -> bool:
        return True

    def check_supported(self, params: ProcessingParams) -> None:
        """Raise UnavailableStrategyError when this strategy cannot serve params."""
        return None

    @abstractmethod
    def execute(
        self,
        input_path: Path,
        output_path: Path,
        params: ProcessingParams,
        progress_callback: ProgressCallback
    ) -> StrategyResult:
        """
        Transform input_path into output_path.

        progress_callback may be called zero or more times with increasing
        percentages. Raises ExecutionError when no valid output is produced.
        """
        pass


# =============================================================================
# Resample Strategy (Pillow)
# =============================================================================

class ResampleStrategy(ProcessingStrategy):
    """Geometric resize by an integer factor followed by re-encoding."""

    name = StrategyName.FAST_RESAMPLE.value

    def execute(
        self,
        input_path: Path,
        output_path: Path,
        params: ProcessingParams,
        progress_callback: ProgressCallback
    ) -> StrategyResult:
        scratch = partial_path(output_path)
        try:
            with Image.open(input_path) as image:
                image.load()
                new_size = target_dimensions(image.width, image.height, params)
                logger.info(
                    "resample_starting",
                    original_dimensions=image.size,
                    target_dimensions=new_size,
                    algorithm=params.algorithm.value
                )
                resized = image.resize(new_size, RESAMPLE_FILTERS[params.algorithm])

            progress_callback(50)
            self._encode(resized, scratch, params)
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            scratch.unlink(missing_ok=True)
            raise ExecutionError(f"Resample failed: {e}", strategy=self.name)

        return _publish(scratch, output_path)

    def _encode(self, image: Image.Image, path: Path, params: ProcessingParams) -> None:
        fmt = PIL_FORMATS[params.file_extension]
        quality = QUALITY_PRESETS[params.quality_tier]

        if fmt == "PNG":
            compress_level = 9 if params.quality_tier == QualityTier.QUALITY else 6
            image.save(path, format="PNG", compress_level=compress_level)
        elif fmt == "JPEG":
            if image.mode not in ("RGB", "L"):
                image = image.convert("RGB")
            image.save(path, format="JPEG", quality=quality)
        else:
            image.save(path, format="WEBP", quality=quality)


# =============================================================================
# Enhance Strategy (Real-ESRGAN subprocess)
# =============================================================================

class EnhanceStrategy(ProcessingStrategy):
    """
    Super-resolution through an external, separately versioned binary.

    Invocation: <binary> -i <in> -o <out> -n <model> -s <scale> -f <format>
    -t <tile> [-g <gpu>]. Exit code 0 means success; progress is read from
    "<float>%" tokens on stderr.
    """

    name = StrategyName.AI_ENHANCE.value

    def __init__(
        self,
        binary_path: str,
        model: str = "realesrgan-x4plus",
        tile_size: int = 400,
        gpu_id: Optional[str] = None,
        timeout_seconds: float = 300.0,
        supported_scales: Iterable[int] = (2, 3, 4)
    ):
        self.binary_path = Path(binary_path)
        self.model = model
        self.tile_size = tile_size
        self.gpu_id = gpu_id
        self.timeout_seconds = timeout_seconds
        self.supported_scales = frozenset(supported_scales)
        self._available: Optional[bool] = None
        self._probe_lock = threading.Lock()

    @classmethod
    def from_settings(cls) -> "EnhanceStrategy":
        return cls(
            binary_path=settings.ENHANCE_BINARY_PATH,
            model=settings.ENHANCE_MODEL,
            tile_size=settings.ENHANCE_TILE_SIZE,
            gpu_id=settings.ENHANCE_GPU_ID,
            timeout_seconds=settings.ENHANCE_TIMEOUT_SECONDS,
            supported_scales=settings.ENHANCE_SUPPORTED_SCALES,
        )

    def is_available(self) -> bool:
        """Probe once: the binary must exist and be executable."""
        with self._probe_lock:
            if self._available is None:
                self._available = self.binary_path.is_file() and os.access(self.binary_path, os.X_OK)
                logger.info(
                    "enhance_availability_probed",
                    binary_path=str(self.binary_path),
                    available=self._available
                )
            return self._available

    def check_supported(self, params: ProcessingParams) -> None:
        if params.operation_kind != OperationKind.UPSCALE:
            raise UnavailableStrategyError(
                "ai-enhance only upscales",
                strategy=self.name,
                reason="operation_not_supported"
            )
        if params.scale_factor not in self.supported_scales:
            raise UnavailableStrategyError(
                f"ai-enhance does not support scale factor {params.scale_factor}",
                strategy=self.name,
                reason="scale_not_supported"
            )
        if not self.is_available():
            raise UnavailableStrategyError(
                f"Enhance binary not found or not executable at: {self.binary_path}",
                strategy=self.name,
                reason="binary_unavailable"
            )

    def build_command(self, input_path: Path, output_path: Path, params: ProcessingParams) -> List[str]:
        command = [
            str(self.binary_path),
            "-i", str(input_path),
            "-o", str(output_path),
            "-n", self.model,
            "-s", str(params.scale_factor),
            "-f", params.file_extension,
            "-t", str(self.tile_size),
        ]
        if self.gpu_id:
            command.extend(["-g", str(self.gpu_id)])
        return command

    def execute(
        self,
        input_path: Path,
        output_path: Path,
        params: ProcessingParams,
        progress_callback: ProgressCallback
    ) -> StrategyResult:
        self.check_supported(params)
        scratch = partial_path(output_path)
        scratch.unlink(missing_ok=True)
        command = self.build_command(input_path, scratch, params)

        logger.info("enhance_starting", command=command, timeout_seconds=self.timeout_seconds)

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise ExecutionError(f"Failed to start enhance process: {e}", strategy=self.name)

        timed_out = threading.Event()

        def _kill_on_timeout():
            timed_out.set()
            process.kill()

        watchdog = threading.Timer(self.timeout_seconds, _kill_on_timeout)
        watchdog.daemon = True
        watchdog.start()

        diagnostics: deque = deque(maxlen=200)
        try:
            # Universal newlines turn the binary's "\r" progress rewrites into lines
            for line in process.stderr:
                diagnostics.append(line)
                percent = parse_progress_token(line)
                if percent is not None:
                    progress_callback(percent)
            returncode = process.wait()
        except BaseException:
            process.kill()
            process.wait()
            raise
        finally:
            watchdog.cancel()
            process.stderr.close()

        diagnostic_text = "".join(diagnostics).strip()[-MAX_DIAGNOSTIC_CHARS:]

        if timed_out.is_set():
            scratch.unlink(missing_ok=True)
            logger.error("enhance_timed_out", timeout_seconds=self.timeout_seconds)
            raise EnhanceTimeoutError(self.timeout_seconds)

        if returncode != 0:
            scratch.unlink(missing_ok=True)
            logger.error("enhance_failed", returncode=returncode, diagnostics=diagnostic_text)
            raise ExecutionError(
                f"Enhance process exited with code {returncode}: {diagnostic_text}",
                strategy=self.name,
                details={"returncode": returncode}
            )

        return _publish(scratch, output_path)


# =============================================================================
# Strategy Selection
# =============================================================================

class StrategySelector:
    """Picks ai-enhance when requested, supported and available, else fast-resample."""

    def __init__(self, resample: ProcessingStrategy, enhance: Optional[ProcessingStrategy] = None):
        self.resample = resample
        self.enhance = enhance

    @classmethod
    def from_settings(cls) -> "StrategySelector":
        return cls(ResampleStrategy(), EnhanceStrategy.from_settings())

    def select(self, params: ProcessingParams) -> Tuple[ProcessingStrategy, Optional[str]]:
        """
        Returns:
            (strategy, fallback_reason); fallback_reason is None unless an
            ai-enhance request was routed to fast-resample.
        """
        if params.strategy_hint != StrategyName.AI_ENHANCE:
            return self.resample, None

        return self._enhance_or_fallback(params)

    def resume(self, name: str, params: ProcessingParams) -> Tuple[ProcessingStrategy, Optional[str]]:
        """
        Strategy for restarting a reclaimed job.

        The job keeps the strategy it was started with unless this worker
        cannot run it (no binary here, or the strategy is not configured), in
        which case it falls back to fast-resample like a fresh selection.
        """
        if name == self.resample.name:
            return self.resample, None
        if name != StrategyName.AI_ENHANCE.value:
            logger.warning("unknown_recorded_strategy", strategy=name)
            record_strategy_fallback("strategy_not_configured")
            return self.resample, "strategy_not_configured"
        return self._enhance_or_fallback(params)

    def _enhance_or_fallback(self, params: ProcessingParams) -> Tuple[ProcessingStrategy, Optional[str]]:
        if self.enhance is None:
            reason = "strategy_not_configured"
        else:
            try:
                self.enhance.check_supported(params)
                return self.enhance, None
            except UnavailableStrategyError as e:
                reason = e.reason

        logger.info(
            "strategy_fallback",
            requested=StrategyName.AI_ENHANCE.value,
            used=self.resample.name,
            reason=reason
        )
        record_strategy_fallback(reason)
        return self.resample, reason
