"""
Pipeline Executor

Applies a TransformationSpec to source bytes:

    crop -> resize -> rotate -> flip -> flop -> filters -> watermark -> encode

Stages whose spec field is absent are skipped. The crop rectangle is given in
source pixel coordinates, so it is cut before the resize: a 500x400 crop of a
1000x800 source resized to 250x200 yields 250x200, not a failed crop.
The executor is pure: it reads bytes and returns bytes, callers decide where
output goes.
"""

import io
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union, Dict, Any, List, Tuple, Callable

from PIL import Image, UnidentifiedImageError

from src.core.exceptions import ProcessingFailedError, SourceUnreadableError
from src.core.logging import get_logger
from src.core.metrics import track_stage_latency
from src.modules.imagery.schemas import TransformationSpec, parse_spec
from src.pipeline import stages

logger = get_logger(__name__)


@dataclass
class ImageInfo:
    format: Optional[str]
    width: int
    height: int
    mode: str
    has_alpha: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": self.format,
            "width": self.width,
            "height": self.height,
            "mode": self.mode,
            "hasAlpha": self.has_alpha,
        }


@dataclass
class PipelineResult:
    data: bytes
    width: int
    height: int
    format: str
    content_type: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)


def output_descriptor(path: str, fmt: str, width: int, height: int, size: int) -> Dict[str, Any]:
    """Description of a stored output, identical for fresh and cached results."""
    return {
        "path": path,
        "filename": Path(path).name,
        "format": fmt,
        "width": width,
        "height": height,
        "size": size,
    }


Stage = Tuple[str, Any, Callable[[Image.Image, Any], Image.Image]]


class PipelineExecutor:
    """Pillow implementation of the transformation pipeline."""

    def _decode(self, data: bytes) -> Image.Image:
        if not data:
            raise SourceUnreadableError("Source image is empty", stage="decode")
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
            raise SourceUnreadableError(f"Cannot decode source image: {e}", stage="decode")
        return image

    def probe(self, data: bytes) -> ImageInfo:
        """Identify an image without transforming it."""
        image = self._decode(data)
        return ImageInfo(
            format=image.format.lower() if image.format else None,
            width=image.width,
            height=image.height,
            mode=image.mode,
            has_alpha=stages.has_alpha(stages.normalize_mode(image)),
        )

    def plan(self, spec: TransformationSpec) -> List[Stage]:
        """Stages that will run for this spec, in execution order."""
        candidates: List[Stage] = [
            ("crop", spec.crop, stages.crop_stage),
            ("resize", spec.resize, stages.resize_stage),
            ("rotate", spec.rotate, stages.rotate_stage),
            ("flip", spec.flip, stages.flip_stage),
            ("flop", spec.flop, stages.flop_stage),
            ("filters", spec.filters, stages.filters_stage),
            ("watermark", spec.watermark, stages.watermark_stage),
        ]
        return [stage for stage in candidates if stage[1]]

    def execute(
        self,
        source_bytes: bytes,
        spec: Union[TransformationSpec, Dict[str, Any], None],
        source_format: Optional[str] = None
    ) -> PipelineResult:
        """
        Run the pipeline.

        Args:
            source_bytes: Encoded source image
            spec: Transformation spec (validated here if given as a dict)
            source_format: Format to keep when the spec names none; defaults
                to the decoded image's own format

        Raises:
            SourceUnreadableError: input is empty or not a decodable image
            ProcessingFailedError: a stage rejected its parameters or the
                output format cannot be written
        """
        spec = parse_spec(spec)
        start = time.time()

        with track_stage_latency("decode"):
            image = self._decode(source_bytes)
        fmt = stages.resolve_format(spec.format, source_format or image.format)
        image = stages.normalize_mode(image)

        applied = []
        for name, params, apply in self.plan(spec):
            with track_stage_latency(name):
                try:
                    image = apply(image, params)
                except ProcessingFailedError:
                    raise
                except (ValueError, OSError, MemoryError) as e:
                    logger.error("pipeline_stage_failed", stage=name, error=str(e))
                    raise ProcessingFailedError(f"{name} failed: {e}", stage=name)
            applied.append(name)

        with track_stage_latency("encode"):
            data = stages.encode_stage(image, fmt, spec.quality, bool(spec.compress))

        result = PipelineResult(
            data=data,
            width=image.width,
            height=image.height,
            format=fmt,
            content_type=stages.content_type_for(fmt),
        )

        logger.info(
            "pipeline_completed",
            stages=applied,
            format=fmt,
            width=result.width,
            height=result.height,
            size_bytes=result.size_bytes,
            duration_ms=int((time.time() - start) * 1000)
        )
        return result
