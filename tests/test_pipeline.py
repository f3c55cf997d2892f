import tempfile
import unittest
from pathlib import Path

from PIL import Image

from tests._test_path import SRC  # noqa: F401
from tests.fakes import DeferredDispatcher, FakeOps, make_blob

from passportprint.app.dispatch import InlineDispatcher, ManualScheduler
from passportprint.app.pipeline import PipelineController
from passportprint.core.errors import RemoteError, UserInputError
from passportprint.core.models import (
    AdjustmentParams,
    ArtifactKind,
    ColorBackground,
    CropRectangle,
    PipelineStage,
)

WHITE = ColorBackground("#ffffff")


class PipelineHarness:
    def __init__(self, dispatcher=None):
        self.ops = FakeOps()
        self.scheduler = ManualScheduler()
        self.dispatcher = dispatcher or InlineDispatcher()
        self.controller = PipelineController(self.ops, self.scheduler, self.dispatcher)
        self.notified = 0
        self.controller.add_listener(self._count)

    def _count(self, _state):
        self.notified += 1

    @property
    def state(self):
        return self.controller.state

    def to_adjust(self, size=(400, 600)):
        c = self.controller
        c.select_source(make_blob(size), "photo.png")
        c.remove_background()
        c.apply_background(WHITE)
        return c


class TestHappyPath(unittest.TestCase):
    def test_full_flow_produces_print_size(self):
        h = PipelineHarness()
        c = h.controller
        c.select_size("35x45")
        c.select_source(make_blob((400, 600)), "photo.png")
        self.assertEqual(c.stage, PipelineStage.UPLOAD)

        c.remove_background()
        self.assertEqual(c.stage, PipelineStage.BACKGROUND)
        self.assertTrue(h.state.has(ArtifactKind.BACKGROUND_REMOVED))

        c.apply_background(WHITE)
        self.assertEqual(c.stage, PipelineStage.ADJUST)
        self.assertEqual(h.state.params, AdjustmentParams.neutral())

        c.proceed_to_crop()
        self.assertEqual(c.stage, PipelineStage.CROP)
        self.assertEqual(h.state.natural_size, (400, 600))
        crop = h.state.crop
        self.assertAlmostEqual(crop.width / crop.height, 35 / 45)

        c.finish_crop()
        final = h.state.artifact(ArtifactKind.CROPPED)
        self.assertEqual(final.size, (413, 531))
        self.assertEqual(h.ops.names(), ["segment", "composite"])
        self.assertIsNone(h.state.error)
        self.assertFalse(h.state.busy)
        self.assertGreater(h.notified, 0)

    def test_initial_crop_is_centered(self):
        h = PipelineHarness()
        h.to_adjust((400, 600))
        h.controller.proceed_to_crop()
        crop = h.state.crop
        # 2x2: square, 80% of the limiting (width) side
        self.assertAlmostEqual(crop.width, 320)
        self.assertAlmostEqual(crop.height, 320)
        self.assertAlmostEqual(crop.x, 40)
        self.assertAlmostEqual(crop.y, 140)

    def test_export_uses_format_extension(self):
        h = PipelineHarness()
        c = h.controller
        c.select_format("jpg")
        h.to_adjust()
        c.proceed_to_crop()
        c.finish_crop()
        with tempfile.TemporaryDirectory() as d:
            path = c.export(d)
            self.assertEqual(path, Path(d) / "passport-photo.jpeg")
            with Image.open(path) as img:
                self.assertEqual(img.format, "JPEG")
                self.assertEqual(img.size, (600, 600))

    def test_export_before_crop(self):
        h = PipelineHarness()
        h.to_adjust()
        with self.assertRaises(UserInputError):
            h.controller.export(tempfile.gettempdir())


class TestGuards(unittest.TestCase):
    def test_operations_need_their_inputs(self):
        c = PipelineHarness().controller
        with self.assertRaises(UserInputError):
            c.remove_background()
        with self.assertRaises(UserInputError):
            c.apply_background(WHITE)
        with self.assertRaises(UserInputError):
            c.set_adjustment(brightness=5)
        with self.assertRaises(UserInputError):
            c.finish_crop()

    def test_finish_crop_without_crop_step(self):
        h = PipelineHarness()
        h.to_adjust()
        with self.assertRaises(UserInputError):
            h.controller.finish_crop()

    def test_update_crop_before_crop_step(self):
        h = PipelineHarness()
        h.to_adjust()
        with self.assertRaises(UserInputError):
            h.controller.update_crop(CropRectangle(0, 0, 10, 10))

    def test_forward_navigation_needs_artifact(self):
        h = PipelineHarness()
        h.controller.select_source(make_blob(), "photo.png")
        with self.assertRaises(UserInputError):
            h.controller.go_to(PipelineStage.ADJUST)
        with self.assertRaises(UserInputError):
            h.controller.go_to(PipelineStage.CROP)
        self.assertEqual(h.controller.stage, PipelineStage.UPLOAD)

    def test_unknown_size_and_format(self):
        c = PipelineHarness().controller
        with self.assertRaises(UserInputError):
            c.select_size("4x6")
        with self.assertRaises(UserInputError):
            c.select_format("gif")

    def test_out_of_range_adjustment(self):
        h = PipelineHarness()
        h.to_adjust()
        with self.assertRaises(UserInputError):
            h.controller.set_adjustment(brightness=500)
        self.assertEqual(h.state.params, AdjustmentParams.neutral())


class TestFailures(unittest.TestCase):
    def test_failed_composite_keeps_previous_artifacts(self):
        h = PipelineHarness()
        c = h.controller
        c.select_source(make_blob(), "photo.png")
        c.remove_background()
        removed = h.state.artifact(ArtifactKind.BACKGROUND_REMOVED)

        h.ops.fail_next["composite"] = 503
        c.apply_background(WHITE)

        self.assertEqual(c.stage, PipelineStage.BACKGROUND)
        self.assertIs(h.state.artifact(ArtifactKind.BACKGROUND_REMOVED), removed)
        self.assertFalse(h.state.has(ArtifactKind.BACKGROUND_COMPOSITED))
        self.assertTrue(h.state.error.startswith("Background change failed"))
        self.assertIsInstance(c.last_error, RemoteError)
        self.assertEqual(c.last_error.status, 503)
        self.assertFalse(h.state.busy)

        # retry succeeds and clears the error
        c.apply_background(WHITE)
        self.assertEqual(c.stage, PipelineStage.ADJUST)
        self.assertIsNone(h.state.error)

    def test_failed_segmentation_stays_on_upload(self):
        h = PipelineHarness()
        h.controller.select_source(make_blob(), "photo.png")
        h.ops.fail_next["segment"] = 500
        h.controller.remove_background()
        self.assertEqual(h.controller.stage, PipelineStage.UPLOAD)
        self.assertTrue(h.state.error.startswith("Background removal failed"))

    def test_failed_adjustment_is_reported(self):
        h = PipelineHarness()
        h.to_adjust()
        h.ops.fail_next["adjust"] = 500
        h.controller.set_adjustment(brightness=20)
        h.scheduler.advance(300)
        self.assertTrue(h.state.error.startswith("Adjustment failed"))
        self.assertFalse(h.state.has(ArtifactKind.ADJUSTED))
        self.assertFalse(h.state.busy)


class TestAdjustments(unittest.TestCase):
    def test_slider_burst_sends_one_request(self):
        h = PipelineHarness()
        h.to_adjust()
        c = h.controller
        c.set_adjustment(brightness=10)
        c.set_adjustment(contrast=1.5)
        c.set_adjustment(saturation=2.0)
        self.assertTrue(h.state.busy)
        self.assertNotIn("adjust", h.ops.names())

        h.scheduler.advance(300)
        adjusts = [call for call in h.ops.calls if call[0] == "adjust"]
        self.assertEqual(len(adjusts), 1)
        self.assertEqual(adjusts[0][2], AdjustmentParams(10, 1.5, 2.0))
        self.assertIs(adjusts[0][1], h.state.artifact(ArtifactKind.BACKGROUND_COMPOSITED))
        self.assertTrue(h.state.has(ArtifactKind.ADJUSTED))
        self.assertFalse(h.state.busy)

    def test_adjustments_start_from_composited_image(self):
        h = PipelineHarness()
        h.to_adjust()
        composited = h.state.artifact(ArtifactKind.BACKGROUND_COMPOSITED)
        h.controller.set_adjustment(brightness=10)
        h.scheduler.advance(300)
        h.controller.set_adjustment(brightness=20)
        h.scheduler.advance(300)
        sources = [call[1] for call in h.ops.calls if call[0] == "adjust"]
        self.assertEqual(len(sources), 2)
        self.assertTrue(all(s is composited for s in sources))

    def test_proceed_to_crop_sends_pending_change(self):
        h = PipelineHarness()
        h.to_adjust()
        h.controller.set_adjustment(contrast=2.0)
        h.controller.proceed_to_crop()
        self.assertIn("adjust", h.ops.names())
        self.assertIs(h.state.crop_source, h.state.artifact(ArtifactKind.ADJUSTED))

    def test_new_background_resets_adjustments(self):
        h = PipelineHarness()
        h.to_adjust()
        h.controller.set_adjustment(brightness=40)
        h.scheduler.advance(300)
        h.controller.apply_background(ColorBackground("#0284c7"))
        self.assertFalse(h.state.has(ArtifactKind.ADJUSTED))
        self.assertEqual(h.state.params, AdjustmentParams.neutral())

    def test_composite_uses_latest_background(self):
        h = PipelineHarness()
        h.to_adjust()
        h.controller.go_to(PipelineStage.BACKGROUND)
        red = ColorBackground("#dc2626")
        h.controller.apply_background(red)
        self.assertIs(h.ops.calls[-1][2], red)
        self.assertIs(h.state.background, red)
        pixel = h.state.artifact(ArtifactKind.BACKGROUND_COMPOSITED).to_pil().convert("RGB").getpixel((0, 0))
        self.assertEqual(pixel, (0xDC, 0x26, 0x26))


class TestCropStage(unittest.TestCase):
    def test_size_change_recomputes_crop(self):
        h = PipelineHarness()
        h.to_adjust()
        h.controller.proceed_to_crop()
        h.controller.select_size("5x7")
        crop = h.state.crop
        self.assertAlmostEqual(crop.width / crop.height, 5 / 7)

    def test_returning_without_changes_keeps_crop(self):
        h = PipelineHarness()
        h.to_adjust()
        c = h.controller
        c.proceed_to_crop()
        edited = c.update_crop(CropRectangle(10, 20, 200, 200))
        c.go_to(PipelineStage.ADJUST)
        c.go_to(PipelineStage.CROP)
        self.assertEqual(h.state.crop, edited)

    def test_new_adjusted_image_recomputes_crop(self):
        h = PipelineHarness()
        h.to_adjust()
        c = h.controller
        c.proceed_to_crop()
        initial = h.state.crop
        c.update_crop(CropRectangle(10, 20, 200, 200))
        c.go_to(PipelineStage.ADJUST)
        c.set_adjustment(brightness=15)
        h.scheduler.advance(300)
        c.go_to(PipelineStage.CROP)
        self.assertEqual(h.state.crop, initial)
        self.assertIs(h.state.crop_source, h.state.artifact(ArtifactKind.ADJUSTED))

    def test_update_crop_from_display_coordinates(self):
        h = PipelineHarness()
        h.to_adjust((400, 600))
        c = h.controller
        c.proceed_to_crop()
        # displayed at half size
        crop = c.update_crop(CropRectangle(10, 10, 50, 50), displayed_size=(200, 300))
        self.assertEqual((crop.x, crop.y, crop.width, crop.height), (20, 20, 100, 100))

    def test_update_crop_is_clamped(self):
        h = PipelineHarness()
        h.to_adjust((400, 600))
        c = h.controller
        c.proceed_to_crop()
        crop = c.update_crop(CropRectangle(350, -20, 100, 100))
        self.assertAlmostEqual(crop.right, 400)
        self.assertAlmostEqual(crop.y, 0)
        self.assertAlmostEqual(crop.width, 100)

    def test_backward_navigation_keeps_artifacts(self):
        h = PipelineHarness()
        h.to_adjust()
        c = h.controller
        c.proceed_to_crop()
        c.finish_crop()
        c.go_to(PipelineStage.UPLOAD)
        for kind in (ArtifactKind.BACKGROUND_REMOVED, ArtifactKind.BACKGROUND_COMPOSITED, ArtifactKind.CROPPED):
            self.assertTrue(h.state.has(kind), kind)
        c.go_to(PipelineStage.BACKGROUND)
        self.assertEqual(c.stage, PipelineStage.BACKGROUND)


class TestNewSource(unittest.TestCase):
    def test_reset_discards_everything(self):
        h = PipelineHarness()
        h.to_adjust()
        c = h.controller
        c.proceed_to_crop()
        c.finish_crop()
        c.reset()
        self.assertEqual(c.stage, PipelineStage.UPLOAD)
        self.assertEqual(h.state.artifacts, {})
        self.assertIsNone(h.state.crop)
        with self.assertRaises(UserInputError):
            c.go_to(PipelineStage.CROP)

    def test_new_upload_replaces_old_session(self):
        h = PipelineHarness()
        h.to_adjust()
        second = make_blob((300, 300))
        h.controller.select_source(second, "second.png")
        self.assertIs(h.state.artifact(ArtifactKind.ORIGINAL), second)
        self.assertFalse(h.state.has(ArtifactKind.BACKGROUND_REMOVED))
        self.assertEqual(h.state.input_path, "second.png")

    def test_late_result_for_replaced_photo_is_dropped(self):
        h = PipelineHarness(dispatcher=DeferredDispatcher())
        c = h.controller
        c.select_source(make_blob(), "first.png")
        c.remove_background()
        self.assertTrue(h.state.busy)

        c.select_source(make_blob((300, 300)), "second.png")
        self.assertFalse(h.state.busy)
        h.dispatcher.complete(0)

        self.assertFalse(h.state.has(ArtifactKind.BACKGROUND_REMOVED))
        self.assertEqual(c.stage, PipelineStage.UPLOAD)

    def test_late_adjustment_for_replaced_photo_is_dropped(self):
        h = PipelineHarness(dispatcher=DeferredDispatcher())
        c = h.controller
        c.select_source(make_blob(), "first.png")
        c.remove_background()
        h.dispatcher.complete(0)
        c.apply_background(WHITE)
        h.dispatcher.complete(1)
        c.set_adjustment(brightness=10)
        h.scheduler.advance(300)
        self.assertEqual(len(h.dispatcher.jobs), 3)

        c.select_source(make_blob((300, 300)), "second.png")
        h.dispatcher.complete(2)
        self.assertFalse(h.state.has(ArtifactKind.ADJUSTED))

    def test_busy_while_operation_runs(self):
        h = PipelineHarness(dispatcher=DeferredDispatcher())
        c = h.controller
        c.select_source(make_blob(), "photo.png")
        c.remove_background()
        self.assertTrue(h.state.busy)
        h.dispatcher.complete(0)
        self.assertFalse(h.state.busy)
        self.assertEqual(c.stage, PipelineStage.BACKGROUND)


class TestBusyAfterDroppedAdjustments(unittest.TestCase):
    def _two_adjustments_in_flight(self):
        h = PipelineHarness(dispatcher=DeferredDispatcher())
        c = h.controller
        c.select_source(make_blob(), "photo.png")
        c.remove_background()
        h.dispatcher.complete(0)
        c.apply_background(WHITE)
        h.dispatcher.complete(1)
        c.set_adjustment(brightness=10)
        h.scheduler.advance(300)
        c.set_adjustment(brightness=20)
        h.scheduler.advance(300)
        self.assertEqual(len(h.dispatcher.jobs), 4)
        self.assertTrue(h.state.busy)
        return h

    def test_stale_response_arriving_last_clears_busy(self):
        h = self._two_adjustments_in_flight()
        h.dispatcher.complete(3)  # newer request answers first
        self.assertTrue(h.state.busy)
        seen = h.notified
        h.dispatcher.complete(2)
        self.assertFalse(h.state.busy)
        self.assertGreater(h.notified, seen)
        self.assertEqual(h.state.params.brightness, 20)
        self.assertEqual(h.state.adjusted_seq, 2)

    def test_superseded_error_arriving_last_clears_busy(self):
        h = self._two_adjustments_in_flight()
        h.dispatcher.complete(3)
        h.dispatcher.fail_with(2, RemoteError(500, "boom"))
        self.assertFalse(h.state.busy)
        self.assertIsNone(h.state.error)
        self.assertTrue(h.state.has(ArtifactKind.ADJUSTED))


class TestSizeChangeAfterCrop(unittest.TestCase):
    def test_size_change_discards_cropped_photo(self):
        h = PipelineHarness()
        c = h.controller
        c.select_size("35x45")
        h.to_adjust()
        c.proceed_to_crop()
        c.finish_crop()
        self.assertEqual(h.state.artifact(ArtifactKind.CROPPED).size, (413, 531))

        c.select_size("2x2")
        self.assertFalse(h.state.has(ArtifactKind.CROPPED))
        with self.assertRaises(UserInputError):
            c.export(tempfile.gettempdir())

        c.finish_crop()
        self.assertEqual(h.state.artifact(ArtifactKind.CROPPED).size, (600, 600))

    def test_same_size_keeps_cropped_photo(self):
        h = PipelineHarness()
        h.to_adjust()
        h.controller.proceed_to_crop()
        h.controller.finish_crop()
        h.controller.select_size(h.state.size_key)
        self.assertTrue(h.state.has(ArtifactKind.CROPPED))


class TestBackgroundRecord(unittest.TestCase):
    def test_failed_composite_keeps_previous_background(self):
        h = PipelineHarness()
        h.to_adjust()
        self.assertIs(h.state.background, WHITE)

        h.ops.fail_next["composite"] = 503
        h.controller.apply_background(ColorBackground("#000000"))
        self.assertIs(h.state.background, WHITE)

    def test_first_failed_composite_records_nothing(self):
        h = PipelineHarness()
        h.controller.select_source(make_blob(), "photo.png")
        h.controller.remove_background()
        h.ops.fail_next["composite"] = 503
        h.controller.apply_background(WHITE)
        self.assertIsNone(h.state.background)
