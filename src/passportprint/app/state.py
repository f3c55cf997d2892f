from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from passportprint.core.models import (
    DEFAULT_SIZE_KEY,
    AdjustmentParams,
    ArtifactKind,
    BackgroundSpec,
    CropRectangle,
    ImageBlob,
    PipelineStage,
    StageArtifact,
)

# Artifact that must exist before a stage can be entered.
STAGE_GUARDS: Dict[PipelineStage, ArtifactKind] = {
    PipelineStage.UPLOAD: ArtifactKind.ORIGINAL,
    PipelineStage.BACKGROUND: ArtifactKind.BACKGROUND_REMOVED,
    PipelineStage.ADJUST: ArtifactKind.BACKGROUND_COMPOSITED,
    PipelineStage.CROP: ArtifactKind.BACKGROUND_COMPOSITED,
}


@dataclass
class SessionState:
    """
    Mutable state for one photo session.

    The controller (PipelineController) is the only writer; the GUI reads it.
    Artifacts are keyed by kind and are only replaced by the operation that
    produces them, so moving back through the stages never loses later work.
    """
    stage: PipelineStage = PipelineStage.UPLOAD

    # Session-wide choices (kept across new uploads)
    size_key: str = DEFAULT_SIZE_KEY
    output_format: str = "png"

    # Input
    input_path: Optional[str] = None

    # Stage outputs
    artifacts: Dict[ArtifactKind, StageArtifact] = field(default_factory=dict)

    # Background stage
    background: Optional[BackgroundSpec] = None

    # Adjust stage (single live value)
    params: AdjustmentParams = field(default_factory=AdjustmentParams)
    adjusted_seq: int = 0

    # Crop stage
    crop: Optional[CropRectangle] = None
    crop_source: Optional[ImageBlob] = None
    natural_size: Optional[Tuple[int, int]] = None

    # Activity / errors
    busy: bool = False
    error: Optional[str] = None

    def artifact(self, kind: ArtifactKind) -> Optional[ImageBlob]:
        a = self.artifacts.get(kind)
        return a.image if a is not None else None

    def has(self, kind: ArtifactKind) -> bool:
        return kind in self.artifacts

    def put(self, kind: ArtifactKind, image: ImageBlob) -> None:
        self.artifacts[kind] = StageArtifact(kind, image)

    def drop(self, kind: ArtifactKind) -> None:
        self.artifacts.pop(kind, None)

    def can_enter(self, stage: PipelineStage) -> bool:
        return self.has(STAGE_GUARDS[stage])

    @property
    def adjust_input(self) -> Optional[ImageBlob]:
        """Image the tonal adjustment is applied to (never a previous adjustment)."""
        return self.artifact(ArtifactKind.BACKGROUND_COMPOSITED)

    @property
    def crop_input(self) -> Optional[ImageBlob]:
        """Latest image entering the crop stage: adjusted if present, else composited."""
        return self.artifact(ArtifactKind.ADJUSTED) or self.artifact(ArtifactKind.BACKGROUND_COMPOSITED)

    def reset(self) -> None:
        """Discard the source image and everything derived from it."""
        self.stage = PipelineStage.UPLOAD
        self.input_path = None
        self.artifacts = {}
        self.background = None
        self.params = AdjustmentParams()  # restore defaults
        self.adjusted_seq = 0
        self.crop = None
        self.crop_source = None
        self.natural_size = None
        self.busy = False
        self.error = None
