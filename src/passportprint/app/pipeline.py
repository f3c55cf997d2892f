from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple, Union

from passportprint.app.coalescer import DEFAULT_WINDOW_MS, AdjustmentCoalescer
from passportprint.app.dispatch import Dispatcher, InlineDispatcher, Scheduler
from passportprint.app.export import ExportTarget, save_image
from passportprint.app.state import STAGE_GUARDS, SessionState
from passportprint.core import geometry, resample
from passportprint.core.errors import UserInputError
from passportprint.core.models import (
    DPI,
    PHOTO_SIZES,
    AdjustmentParams,
    ArtifactKind,
    BackgroundSpec,
    CropRectangle,
    ImageBlob,
    PhysicalSize,
    PipelineStage,
    PixelDimensions,
    normalize_format,
)
from passportprint.core.units import pixel_dimensions
from passportprint.services.image_ops import ImageOps

logger = logging.getLogger(__name__)

Listener = Callable[[SessionState], None]


class PipelineController:
    """
    Drives one photo through Upload -> Background -> Adjust -> Crop.

    Owns the SessionState and is the only code that mutates it. Image operations go
    through the injected ImageOps and Dispatcher; their results are committed only if
    they succeed and still belong to the current source image. Failures are recorded
    on `state.error` and leave every existing artifact untouched.
    """

    def __init__(
        self,
        ops: ImageOps,
        scheduler: Scheduler,
        dispatcher: Optional[Dispatcher] = None,
        state: Optional[SessionState] = None,
        dpi: int = DPI,
        adjust_window_ms: int = DEFAULT_WINDOW_MS,
    ):
        self.ops = ops
        self.scheduler = scheduler
        self.dispatcher = dispatcher or InlineDispatcher()
        self.state = state or SessionState()
        self.dpi = dpi
        self.last_error: Optional[BaseException] = None

        # Bumped on every new source image; results from older sessions are dropped.
        self._generation = 0
        self._ops_running = 0
        self._listeners: List[Listener] = []

        self.coalescer = AdjustmentCoalescer(
            scheduler,
            self.dispatcher,
            prepare=self._prepare_adjust,
            on_result=self._on_adjusted,
            on_error=self._on_adjust_failed,
            on_settled=self._on_adjust_settled,
            window_ms=adjust_window_ms,
        )

    # ---------- observers ----------

    def add_listener(self, fn: Listener) -> None:
        self._listeners.append(fn)

    def _notify(self) -> None:
        for fn in list(self._listeners):
            fn(self.state)

    # ---------- derived values ----------

    @property
    def stage(self) -> PipelineStage:
        return self.state.stage

    @property
    def photo_size(self) -> PhysicalSize:
        return PHOTO_SIZES[self.state.size_key]

    @property
    def target_pixels(self) -> PixelDimensions:
        return pixel_dimensions(self.photo_size, self.dpi)

    # ---------- session-wide choices ----------

    def select_size(self, key: str) -> None:
        """
        Pick a catalog size; the crop is recomputed for the new aspect ratio and a
        photo cropped at the previous size is discarded.
        """
        if key not in PHOTO_SIZES:
            raise UserInputError(f"Unknown photo size {key!r}. Choose one of: {', '.join(PHOTO_SIZES)}.")
        if key != self.state.size_key:
            self.state.drop(ArtifactKind.CROPPED)
        self.state.size_key = key
        if self.state.natural_size is not None:
            w, h = self.state.natural_size
            self.state.crop = geometry.initial_crop(w, h, self.photo_size.aspect_ratio)
        self._notify()

    def select_format(self, fmt: str) -> None:
        try:
            self.state.output_format = normalize_format(fmt)
        except ValueError as e:
            raise UserInputError(str(e)) from e
        self._notify()

    # ---------- Stage 1: Upload ----------

    def reset(self) -> None:
        """Forget the current photo and everything derived from it."""
        self.coalescer.cancel()
        self._generation += 1
        self._ops_running = 0
        self.last_error = None
        self.state.reset()
        self._notify()

    def select_source(self, image: ImageBlob, path: Optional[str] = None) -> None:
        """Start over with a new source photo. Everything derived from the old one is discarded."""
        self.reset()
        self.state.input_path = path
        self.state.put(ArtifactKind.ORIGINAL, image)
        logger.info("New source image %s", path or "<memory>")
        self._notify()

    def load_source(self, path: str) -> None:
        try:
            image = ImageBlob.from_path(path)
        except (OSError, ValueError) as e:
            raise UserInputError(f"Could not open image {path!r}: {e}") from e
        self.select_source(image, path)

    def remove_background(self) -> None:
        original = self.state.artifact(ArtifactKind.ORIGINAL)
        if original is None:
            raise UserInputError("Please select an image first.")
        fmt = self.state.output_format

        def commit(result: ImageBlob) -> None:
            self.state.put(ArtifactKind.BACKGROUND_REMOVED, result)
            self.state.stage = PipelineStage.BACKGROUND

        self._run("Background removal", lambda: self.ops.segment(original, fmt), commit)

    # ---------- Stage 2: Background ----------

    def apply_background(self, background: BackgroundSpec) -> None:
        """
        Composite the background-removed photo over `background`. The background
        given here is always the one used, even if an older one is still stored.
        """
        removed = self.state.artifact(ArtifactKind.BACKGROUND_REMOVED)
        if removed is None:
            raise UserInputError("Please complete background removal first.")
        fmt = self.state.output_format

        def commit(result: ImageBlob) -> None:
            self.state.background = background
            self.state.put(ArtifactKind.BACKGROUND_COMPOSITED, result)
            # Adjustments were made against the previous composite.
            self.coalescer.cancel()
            self.state.drop(ArtifactKind.ADJUSTED)
            self.state.params = AdjustmentParams.neutral()
            self.state.adjusted_seq = 0
            self.state.stage = PipelineStage.ADJUST

        self._run("Background change", lambda: self.ops.composite(removed, background, fmt), commit)

    # ---------- Stage 3: Adjust ----------

    def set_adjustment(
        self,
        brightness: Optional[int] = None,
        contrast: Optional[float] = None,
        saturation: Optional[float] = None,
    ) -> int:
        """Change one or more sliders. Returns the sequence number of the scheduled request."""
        if self.state.adjust_input is None:
            raise UserInputError("Please apply a background first.")
        changes = {
            k: v
            for k, v in (("brightness", brightness), ("contrast", contrast), ("saturation", saturation))
            if v is not None
        }
        try:
            params = replace(self.state.params, **changes)
        except ValueError as e:
            raise UserInputError(str(e)) from e
        self.state.params = params
        seq = self.coalescer.schedule(params)
        self._update_busy()
        self._notify()
        return seq

    def reset_adjustments(self) -> int:
        neutral = AdjustmentParams.neutral()
        return self.set_adjustment(neutral.brightness, neutral.contrast, neutral.saturation)

    def _prepare_adjust(self, params: AdjustmentParams) -> Callable[[], Any]:
        source = self.state.adjust_input
        if source is None:
            raise UserInputError("Nothing to adjust.")
        fmt = self.state.output_format
        return lambda: self.ops.adjust(source, params, fmt)

    def _on_adjusted(self, seq: int, params: AdjustmentParams, result: ImageBlob) -> None:
        self.state.put(ArtifactKind.ADJUSTED, result)
        self.state.adjusted_seq = seq
        self.state.error = None
        if self.state.stage == PipelineStage.CROP:
            self._sync_crop_source()
        self._update_busy()
        self._notify()

    def _on_adjust_failed(self, seq: int, params: AdjustmentParams, err: BaseException) -> None:
        self.last_error = err
        self.state.error = f"Adjustment failed: {err}"
        self._update_busy()
        self._notify()

    def _on_adjust_settled(self, seq: int) -> None:
        # A dropped response may have been the last one in flight.
        self._update_busy()
        self._notify()

    # ---------- Stage 4: Crop ----------

    def proceed_to_crop(self) -> None:
        if self.state.adjust_input is None:
            raise UserInputError("Please apply a background first.")
        # Send any slider change still waiting in the window.
        self.coalescer.flush()
        self.state.stage = PipelineStage.CROP
        self._sync_crop_source()
        self._update_busy()
        self._notify()

    def _sync_crop_source(self) -> None:
        """Recompute the crop when the image entering the crop stage changed."""
        source = self.state.crop_input
        if source is None or source is self.state.crop_source:
            return
        self.state.crop_source = source
        self.state.natural_size = source.size
        w, h = self.state.natural_size
        self.state.crop = geometry.initial_crop(w, h, self.photo_size.aspect_ratio)

    def update_crop(self, crop: CropRectangle, displayed_size: Optional[Tuple[float, float]] = None) -> CropRectangle:
        """
        Store a user-edited crop. With `displayed_size`, `crop` is in the coordinates
        of the on-screen image; otherwise it is in natural pixels (or percent).
        """
        if self.state.natural_size is None:
            raise UserInputError("Open the crop step first.")
        w, h = self.state.natural_size
        if displayed_size is not None:
            crop = geometry.display_to_natural(crop, displayed_size, (w, h))
        self.state.crop = geometry.clamp_to_bounds(crop, w, h)
        self._notify()
        return self.state.crop

    def finish_crop(self) -> None:
        """Crop the current image and resample it to the selected print size."""
        source = self.state.crop_source
        crop = self.state.crop
        if source is None or crop is None:
            raise UserInputError("Please complete background removal and cropping first.")
        natural = self.state.natural_size
        target = self.target_pixels
        fmt = self.state.output_format

        def commit(result: ImageBlob) -> None:
            self.state.put(ArtifactKind.CROPPED, result)

        self._run(
            "Crop",
            lambda: resample.crop(source, crop, natural, natural, target, fmt),
            commit,
        )

    # ---------- navigation ----------

    def go_to(self, stage: Union[PipelineStage, int]) -> None:
        """
        Move to any stage whose input exists. Nothing is discarded; coming back to
        Crop keeps the crop unless the image being cropped changed.
        """
        stage = PipelineStage(stage)
        if not self.state.can_enter(stage):
            needed = STAGE_GUARDS[stage].value.replace("_", " ")
            raise UserInputError(f"Cannot open step {int(stage)} yet: no {needed} image.")
        if stage == PipelineStage.CROP:
            self.proceed_to_crop()
            return
        self.state.stage = stage
        self._notify()

    # ---------- export ----------

    def export(self, directory: Union[str, Path], name: str = "") -> Path:
        final = self.state.artifact(ArtifactKind.CROPPED)
        if final is None:
            raise UserInputError("Nothing to export yet. Finish cropping first.")
        return save_image(final, ExportTarget.build(directory, name, self.state.output_format))

    # ---------- internals ----------

    def _update_busy(self) -> None:
        self.state.busy = self._ops_running > 0 or self.coalescer.busy

    def _run(self, what: str, fn: Callable[[], Any], commit: Callable[[Any], None]) -> None:
        generation = self._generation
        self._ops_running += 1
        self.state.error = None
        self.last_error = None
        self._update_busy()
        self._notify()
        logger.info("%s started", what)

        def on_success(result: Any) -> None:
            if generation != self._generation:
                logger.info("%s finished for a replaced photo; result dropped", what)
                return
            self._ops_running -= 1
            commit(result)
            logger.info("%s complete", what)
            self._update_busy()
            self._notify()

        def on_error(err: BaseException) -> None:
            if generation != self._generation:
                return
            self._ops_running -= 1
            self.last_error = err
            self.state.error = f"{what} failed: {err}"
            logger.error("%s failed: %s", what, err)
            self._update_busy()
            self._notify()

        self.dispatcher.submit(fn, on_success, on_error)
