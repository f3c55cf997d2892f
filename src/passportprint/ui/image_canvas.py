from __future__ import annotations

import tkinter as tk
from tkinter import ttk
from typing import Callable, Optional, Tuple

from PIL import Image, ImageTk

from passportprint.core.models import CropRectangle

# (crop in displayed-image coordinates, displayed image size)
CropCallback = Callable[[CropRectangle, Tuple[int, int]], None]
# (x, y in displayed-image coordinates, displayed image size)
ClickCallback = Callable[[float, float, Tuple[int, int]], None]

# Mouse-wheel step for growing/shrinking the crop box.
_WHEEL_ZOOM = 1.05


class ImageCanvas(ttk.Frame):
    """
    A resizable canvas that displays a PIL image scaled to fit, optionally with a
    movable crop box on top of it.
    """

    def __init__(self, master, *, bg: str = "#f3f3f3"):
        super().__init__(master)
        self._canvas = tk.Canvas(self, highlightthickness=0, bg=bg)
        self._canvas.pack(fill="both", expand=True)

        self._photo: Optional[ImageTk.PhotoImage] = None
        self._pil: Optional[Image.Image] = None

        # Where the scaled image sits on the canvas.
        self._offset: Tuple[int, int] = (0, 0)
        self._displayed: Tuple[int, int] = (0, 0)

        # Crop box in natural image pixels.
        self._crop: Optional[CropRectangle] = None
        self._drag_from: Optional[Tuple[float, float]] = None
        self.on_crop_changed: Optional[CropCallback] = None
        self.on_click: Optional[ClickCallback] = None

        self._canvas.bind("<Configure>", self._on_resize)
        self._canvas.bind("<ButtonPress-1>", self._on_press)
        self._canvas.bind("<B1-Motion>", self._on_drag)
        self._canvas.bind("<ButtonRelease-1>", self._on_release)
        self._canvas.bind("<MouseWheel>", self._on_wheel)

        self._placeholder_id = self._canvas.create_text(
            10, 10, anchor="nw",
            text="No image loaded",
            fill="#555",
            font=("TkDefaultFont", 11),
        )

    # ---------- public ----------

    def set_image(self, pil: Optional[Image.Image]) -> None:
        self._pil = pil
        self._redraw()

    def clear(self) -> None:
        self._crop = None
        self.set_image(None)

    def set_crop(self, crop: Optional[CropRectangle]) -> None:
        self._crop = crop
        self._draw_crop()

    @property
    def displayed_size(self) -> Tuple[int, int]:
        return self._displayed

    # ---------- drawing ----------

    def _on_resize(self, _evt) -> None:
        self._redraw()

    def _fit_size(self, img_w: int, img_h: int, box_w: int, box_h: int) -> Tuple[int, int]:
        if img_w <= 0 or img_h <= 0 or box_w <= 2 or box_h <= 2:
            return (1, 1)
        scale = min(box_w / img_w, box_h / img_h)
        new_w = max(1, int(img_w * scale))
        new_h = max(1, int(img_h * scale))
        return new_w, new_h

    def _redraw(self) -> None:
        self._canvas.delete("img")
        if self._pil is None:
            self._canvas.delete("crop")
            self._displayed = (0, 0)
            self._canvas.itemconfigure(self._placeholder_id, state="normal")
            return

        self._canvas.itemconfigure(self._placeholder_id, state="hidden")

        w = max(1, self._canvas.winfo_width())
        h = max(1, self._canvas.winfo_height())

        pil = self._pil
        new_w, new_h = self._fit_size(pil.width, pil.height, w, h)
        resized = pil.resize((new_w, new_h), Image.LANCZOS)

        self._photo = ImageTk.PhotoImage(resized)
        x = (w - new_w) // 2
        y = (h - new_h) // 2
        self._offset = (x, y)
        self._displayed = (new_w, new_h)
        self._canvas.create_image(x, y, anchor="nw", image=self._photo, tags=("img",))
        self._draw_crop()

    def _scale(self) -> Tuple[float, float]:
        """Displayed pixels per natural pixel, per axis."""
        if self._pil is None or not self._displayed[0]:
            return (1.0, 1.0)
        return (self._displayed[0] / self._pil.width, self._displayed[1] / self._pil.height)

    def _displayed_crop(self) -> Optional[CropRectangle]:
        if self._crop is None:
            return None
        sx, sy = self._scale()
        return self._crop.scaled(sx, sy)

    def _draw_crop(self) -> None:
        self._canvas.delete("crop")
        rect = self._displayed_crop()
        if rect is None or self._pil is None:
            return
        ox, oy = self._offset
        self._canvas.create_rectangle(
            ox + rect.x, oy + rect.y, ox + rect.right, oy + rect.bottom,
            outline="#0284c7", width=2, dash=(6, 3), tags=("crop",),
        )

    # ---------- interaction ----------

    def _to_image_xy(self, evt) -> Tuple[float, float]:
        return (evt.x - self._offset[0], evt.y - self._offset[1])

    def _on_press(self, evt) -> None:
        if self._pil is None:
            return
        x, y = self._to_image_xy(evt)
        if self.on_click is not None and 0 <= x < self._displayed[0] and 0 <= y < self._displayed[1]:
            self.on_click(x, y, self._displayed)
        rect = self._displayed_crop()
        if rect is not None and rect.x <= x <= rect.right and rect.y <= y <= rect.bottom:
            self._drag_from = (x, y)

    def _on_drag(self, evt) -> None:
        if self._drag_from is None or self._crop is None:
            return
        x, y = self._to_image_xy(evt)
        dx, dy = x - self._drag_from[0], y - self._drag_from[1]
        self._drag_from = (x, y)
        sx, sy = self._scale()
        c = self._crop
        self._crop = CropRectangle(c.x + dx / sx, c.y + dy / sy, c.width, c.height, c.unit)
        self._draw_crop()

    def _on_release(self, _evt) -> None:
        if self._drag_from is None:
            return
        self._drag_from = None
        self._emit_crop()

    def _on_wheel(self, evt) -> None:
        if self._crop is None:
            return
        factor = _WHEEL_ZOOM if evt.delta > 0 else 1 / _WHEEL_ZOOM
        c = self._crop
        w, h = c.width * factor, c.height * factor
        self._crop = CropRectangle(c.x - (w - c.width) / 2, c.y - (h - c.height) / 2, w, h, c.unit)
        self._emit_crop()

    def _emit_crop(self) -> None:
        rect = self._displayed_crop()
        if rect is not None and self.on_crop_changed is not None:
            self.on_crop_changed(rect, self._displayed)
