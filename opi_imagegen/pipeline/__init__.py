"""Stage pipeline: controller, build context and stage definitions."""

from opi_imagegen.pipeline.context import BuildContext
from opi_imagegen.pipeline.controller import (
    Pipeline,
    PipelineReport,
    PipelineStage,
    StageRecord,
)
from opi_imagegen.pipeline.stages import build_pipeline, image_pipeline, run_build

__all__ = [
    "BuildContext",
    "Pipeline",
    "PipelineReport",
    "PipelineStage",
    "StageRecord",
    "build_pipeline",
    "image_pipeline",
    "run_build",
]
