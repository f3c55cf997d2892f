import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

import requests

from tests._test_path import SRC  # noqa: F401

from passportprint.core.errors import RemoteError
from passportprint.core.models import AdjustmentParams, ColorBackground, ImageBackground, ImageBlob
from passportprint.services.image_ops import ADJUST_PHOTO_PATH, PROCESS_PHOTO_PATH, RemoteImageOps


def _response(status=200, content=b"\x89PNG-result", text=""):
    return SimpleNamespace(status_code=status, content=content, text=text)


class TestRemoteImageOps(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.session.post.return_value = _response()
        self.ops = RemoteImageOps("http://svc:8080/", timeout=12.5, session=self.session)
        self.image = ImageBlob(b"source-bytes", "png")

    def _sent(self):
        args, kwargs = self.session.post.call_args
        return args[0], kwargs

    def test_segment_request_shape(self):
        out = self.ops.segment(self.image, "png")
        url, kw = self._sent()
        self.assertEqual(url, "http://svc:8080" + PROCESS_PHOTO_PATH)
        self.assertEqual(kw["data"], {"format": "png"})
        self.assertEqual(kw["files"]["image"][1], b"source-bytes")
        self.assertEqual(kw["timeout"], 12.5)
        self.assertEqual(out.data, b"\x89PNG-result")
        self.assertEqual(out.format, "png")
        self.assertIsNot(out, self.image)

    def test_composite_with_colour(self):
        self.ops.composite(self.image, ColorBackground("#0284c7"), "jpeg")
        url, kw = self._sent()
        self.assertTrue(url.endswith(PROCESS_PHOTO_PATH))
        self.assertEqual(kw["data"], {"format": "jpeg", "backgroundColor": "#0284c7"})
        self.assertNotIn("backgroundImg", kw["files"])

    def test_composite_with_picture(self):
        bg = ImageBackground(ImageBlob(b"bg-bytes", "jpeg"), scale=1.5, offset_x=-0.2, offset_y=0.3)
        self.ops.composite(self.image, bg, "png")
        _, kw = self._sent()
        self.assertEqual(kw["files"]["backgroundImg"][1], b"bg-bytes")
        self.assertEqual(kw["files"]["backgroundImg"][2], "image/jpeg")
        self.assertEqual(kw["data"]["bgScale"], "1.5")
        self.assertEqual(kw["data"]["bgOffsetX"], "-0.2")
        self.assertEqual(kw["data"]["bgOffsetY"], "0.3")
        self.assertNotIn("backgroundColor", kw["data"])

    def test_adjust_request_shape(self):
        self.ops.adjust(self.image, AdjustmentParams(brightness=-15, contrast=1.25, saturation=0.8), "png")
        url, kw = self._sent()
        self.assertTrue(url.endswith(ADJUST_PHOTO_PATH))
        self.assertEqual(
            kw["data"],
            {"brightness": "-15", "contrast": "1.25", "saturation": "0.8", "format": "png"},
        )

    def test_non_2xx_raises_remote_error_with_status(self):
        self.session.post.return_value = _response(status=500, content=b"", text="Failed to process image")
        with self.assertRaises(RemoteError) as ctx:
            self.ops.segment(self.image, "png")
        self.assertEqual(ctx.exception.status, 500)
        self.assertIn("500", str(ctx.exception))

    def test_timeout_raises_remote_error_without_status(self):
        self.session.post.side_effect = requests.exceptions.Timeout("slow")
        with self.assertRaises(RemoteError) as ctx:
            self.ops.adjust(self.image, AdjustmentParams(), "png")
        self.assertIsNone(ctx.exception.status)
        self.assertIn("timed out", str(ctx.exception))

    def test_connection_error_raises_remote_error(self):
        self.session.post.side_effect = requests.exceptions.ConnectionError("refused")
        with self.assertRaises(RemoteError):
            self.ops.segment(self.image, "png")

    def test_empty_body_is_an_error(self):
        self.session.post.return_value = _response(content=b"")
        with self.assertRaises(RemoteError):
            self.ops.segment(self.image, "png")

    def test_each_call_returns_a_new_handle(self):
        a = self.ops.segment(self.image, "png")
        b = self.ops.segment(self.image, "png")
        self.assertIsNot(a, b)
