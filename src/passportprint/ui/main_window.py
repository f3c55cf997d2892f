from __future__ import annotations

import os
import tkinter as tk
from pathlib import Path
from tkinter import filedialog, messagebox, ttk
from typing import Dict, Optional

from passportprint.app.dispatch import ThreadDispatcher
from passportprint.app.export import DEFAULT_FILENAME, export_filename
from passportprint.app.pipeline import PipelineController
from passportprint.app.state import SessionState
from passportprint.config import Settings, get_settings
from passportprint.core.errors import PassportPrintError
from passportprint.core.models import (
    BACKGROUND_COLORS,
    OUTPUT_FORMATS,
    PHOTO_SIZES,
    ArtifactKind,
    ColorBackground,
    CropRectangle,
    ImageBackground,
    ImageBlob,
    PipelineStage,
)
from passportprint.core.resample import sample_color
from passportprint.logging_setup import configure_logging
from passportprint.services.factory import build_image_ops
from passportprint.ui.image_canvas import ImageCanvas

# Notebook tab index for each stage after Upload.
_TAB_STAGES = (PipelineStage.BACKGROUND, PipelineStage.ADJUST, PipelineStage.CROP)


class PassportPrintApp(ttk.Frame):
    """PassportPrint GUI: Upload -> Background -> Adjust -> Crop & Save."""

    def __init__(self, master: tk.Tk, controller: PipelineController):
        super().__init__(master)
        self.master = master
        self.controller = controller
        self.state: SessionState = controller.state

        # Decoded previews, keyed by the blob they came from.
        self._preview_cache: Dict[int, object] = {}
        self._bg_image: Optional[ImageBlob] = None
        self._picking_color = False
        self._syncing_tabs = False

        self._build_style()
        self._build_layout()
        self._bind_shortcuts()

        controller.add_listener(lambda _s: self._render())
        self.set_status("Ready. Upload a photo to begin.")
        self._render()

    # ---------- UI construction ----------

    def _build_style(self) -> None:
        style = ttk.Style(self.master)
        if "clam" in style.theme_names():
            style.theme_use("clam")

    def _build_layout(self) -> None:
        self.pack(fill="both", expand=True)

        # Top toolbar
        toolbar = ttk.Frame(self, padding=(10, 8))
        toolbar.pack(side="top", fill="x")

        self.btn_upload = ttk.Button(toolbar, text="Upload", command=self.on_upload)
        self.btn_remove_bg = ttk.Button(toolbar, text="Remove background", command=self.on_remove_background)
        self.btn_reset = ttk.Button(toolbar, text="Reset", command=self.on_reset)

        self.btn_upload.pack(side="left")
        ttk.Separator(toolbar, orient="vertical").pack(side="left", fill="y", padx=8)
        self.btn_remove_bg.pack(side="left")
        self.btn_reset.pack(side="left", padx=(12, 0))

        ttk.Label(toolbar, text="Size:").pack(side="left", padx=(16, 4))
        self._size_labels = {f"{k}  {v.label}": k for k, v in PHOTO_SIZES.items()}
        self.var_size = tk.StringVar(value=self._label_for_size(self.state.size_key))
        cb_size = ttk.Combobox(toolbar, textvariable=self.var_size, values=list(self._size_labels),
                               state="readonly", width=42)
        cb_size.bind("<<ComboboxSelected>>", lambda e: self.on_size_selected())
        cb_size.pack(side="left")

        ttk.Label(toolbar, text="Format:").pack(side="left", padx=(12, 4))
        self.var_format = tk.StringVar(value=self.state.output_format)
        cb_fmt = ttk.Combobox(toolbar, textvariable=self.var_format, values=list(OUTPUT_FORMATS),
                              state="readonly", width=6)
        cb_fmt.bind("<<ComboboxSelected>>", lambda e: self._guard(self.controller.select_format, self.var_format.get()))
        cb_fmt.pack(side="left")

        self.progress = ttk.Progressbar(toolbar, mode="indeterminate", length=120)
        self.progress.pack(side="right")

        # Main split area
        main = ttk.PanedWindow(self, orient="horizontal")
        main.pack(side="top", fill="both", expand=True, padx=10, pady=(0, 10))

        # Left pane: Original
        left = ttk.Frame(main)
        main.add(left, weight=1)

        lf_orig = ttk.LabelFrame(left, text="1. Original", padding=8)
        lf_orig.pack(fill="both", expand=True)

        self.original_canvas = ImageCanvas(lf_orig)
        self.original_canvas.pack(fill="both", expand=True)

        self.original_meta = ttk.Label(lf_orig, text="No file loaded.")
        self.original_meta.pack(side="bottom", anchor="w", pady=(6, 0))

        # Right pane: one tab per stage
        right = ttk.Frame(main)
        main.add(right, weight=1)

        self.nb = ttk.Notebook(right)
        self.nb.pack(fill="both", expand=True)
        self.nb.bind("<<NotebookTabChanged>>", self._on_tab_changed)

        self._build_background_tab()
        self._build_adjust_tab()
        self._build_crop_tab()

        # Status bar
        status = ttk.Frame(self, padding=(10, 6))
        status.pack(side="bottom", fill="x")

        self.status_var = tk.StringVar(value="Ready.")
        self.status_label = ttk.Label(status, textvariable=self.status_var)
        self.status_label.pack(side="left")

    def _build_background_tab(self) -> None:
        tab = ttk.Frame(self.nb, padding=8)
        self.nb.add(tab, text="2. Background")

        preview = ttk.LabelFrame(tab, text="Preview", padding=8)
        preview.pack(fill="both", expand=True)
        self.bg_canvas = ImageCanvas(preview)
        self.bg_canvas.pack(fill="both", expand=True)
        self.bg_canvas.on_click = self._on_bg_canvas_click

        opts = ttk.LabelFrame(tab, text="Background", padding=8)
        opts.pack(fill="x", pady=(8, 0))
        opts.columnconfigure(1, weight=1)

        self.var_bg_type = tk.StringVar(value="color")
        ttk.Radiobutton(opts, text="Colour", value="color", variable=self.var_bg_type).grid(row=0, column=0, sticky="w")
        ttk.Radiobutton(opts, text="Picture", value="image", variable=self.var_bg_type).grid(row=1, column=0, sticky="w")

        color_row = ttk.Frame(opts)
        color_row.grid(row=0, column=1, sticky="w")
        self.var_color = tk.StringVar(value=BACKGROUND_COLORS["White"])
        for name, value in BACKGROUND_COLORS.items():
            ttk.Button(color_row, text=name, width=6,
                       command=lambda v=value: self._set_color(v)).pack(side="left", padx=(0, 4))
        ttk.Entry(color_row, textvariable=self.var_color, width=9).pack(side="left", padx=(4, 4))
        ttk.Button(color_row, text="Pick from photo", command=self.on_pick_color).pack(side="left")

        img_row = ttk.Frame(opts)
        img_row.grid(row=1, column=1, sticky="w")
        ttk.Button(img_row, text="Choose picture…", command=self.on_choose_background).pack(side="left")
        self.bg_file_label = ttk.Label(img_row, text="(none)")
        self.bg_file_label.pack(side="left", padx=(6, 0))

        self.var_bg_scale = tk.DoubleVar(value=1.0)
        self.var_bg_dx = tk.DoubleVar(value=0.0)
        self.var_bg_dy = tk.DoubleVar(value=0.0)
        for row, (label, var, lo, hi) in enumerate(
            (("Scale", self.var_bg_scale, 0.5, 2.0),
             ("Offset X", self.var_bg_dx, -1.0, 1.0),
             ("Offset Y", self.var_bg_dy, -1.0, 1.0)),
            start=2,
        ):
            ttk.Label(opts, text=label + ":").grid(row=row, column=0, sticky="w", pady=2)
            ttk.Scale(opts, from_=lo, to=hi, variable=var, orient="horizontal").grid(row=row, column=1, sticky="ew")

        self.btn_apply_bg = ttk.Button(opts, text="Apply background", command=self.on_apply_background)
        self.btn_apply_bg.grid(row=5, column=0, columnspan=2, sticky="w", pady=(8, 0))

    def _build_adjust_tab(self) -> None:
        tab = ttk.Frame(self.nb, padding=8)
        self.nb.add(tab, text="3. Adjust")

        preview = ttk.LabelFrame(tab, text="Preview", padding=8)
        preview.pack(fill="both", expand=True)
        self.adjust_canvas = ImageCanvas(preview)
        self.adjust_canvas.pack(fill="both", expand=True)

        sliders = ttk.LabelFrame(tab, text="Adjustments", padding=8)
        sliders.pack(fill="x", pady=(8, 0))
        sliders.columnconfigure(1, weight=1)

        self.var_brightness = tk.IntVar(value=0)
        self.var_contrast = tk.DoubleVar(value=1.0)
        self.var_saturation = tk.DoubleVar(value=1.0)
        specs = (
            ("Brightness", self.var_brightness, -100, 100, lambda v: self._adjust(brightness=int(float(v)))),
            ("Contrast", self.var_contrast, 0.5, 3.0, lambda v: self._adjust(contrast=round(float(v), 2))),
            ("Saturation", self.var_saturation, 0.5, 3.0, lambda v: self._adjust(saturation=round(float(v), 2))),
        )
        for row, (label, var, lo, hi, cmd) in enumerate(specs):
            ttk.Label(sliders, text=label + ":").grid(row=row, column=0, sticky="w", pady=2)
            ttk.Scale(sliders, from_=lo, to=hi, variable=var, orient="horizontal", command=cmd).grid(
                row=row, column=1, sticky="ew"
            )

        btns = ttk.Frame(sliders)
        btns.grid(row=3, column=0, columnspan=2, sticky="w", pady=(8, 0))
        ttk.Button(btns, text="Reset", command=lambda: self._guard(self.controller.reset_adjustments)).pack(side="left")
        self.btn_to_crop = ttk.Button(btns, text="Continue to crop", command=lambda: self._guard(self.controller.proceed_to_crop))
        self.btn_to_crop.pack(side="left", padx=(6, 0))

    def _build_crop_tab(self) -> None:
        tab = ttk.Frame(self.nb, padding=8)
        self.nb.add(tab, text="4. Crop & Save")

        paned = ttk.PanedWindow(tab, orient="horizontal")
        paned.pack(fill="both", expand=True)

        crop_frame = ttk.LabelFrame(paned, text="Drag to move, scroll to resize", padding=8)
        self.crop_canvas = ImageCanvas(crop_frame)
        self.crop_canvas.pack(fill="both", expand=True)
        self.crop_canvas.on_crop_changed = self._on_crop_changed
        paned.add(crop_frame, weight=3)

        result_frame = ttk.LabelFrame(paned, text="Result", padding=8)
        self.result_canvas = ImageCanvas(result_frame)
        self.result_canvas.pack(fill="both", expand=True)
        self.result_meta = ttk.Label(result_frame, text="Not cropped yet.")
        self.result_meta.pack(side="bottom", anchor="w", pady=(6, 0))
        paned.add(result_frame, weight=2)

        row = ttk.Frame(tab)
        row.pack(fill="x", pady=(8, 0))
        self.btn_crop = ttk.Button(row, text="Crop", command=lambda: self._guard(self.controller.finish_crop))
        self.btn_crop.pack(side="left")
        ttk.Label(row, text="File name:").pack(side="left", padx=(12, 4))
        self.var_filename = tk.StringVar(value=DEFAULT_FILENAME)
        ttk.Entry(row, textvariable=self.var_filename, width=24).pack(side="left")
        self.ext_label = ttk.Label(row, text=".png")
        self.ext_label.pack(side="left")
        self.btn_save = ttk.Button(row, text="Save…", command=self.on_save)
        self.btn_save.pack(side="left", padx=(8, 0))

    def _bind_shortcuts(self) -> None:
        self.master.bind_all("<Control-o>", lambda e: self.on_upload())
        self.master.bind_all("<Command-o>", lambda e: self.on_upload())

        self.master.bind_all("<Control-s>", lambda e: self.on_save())
        self.master.bind_all("<Command-s>", lambda e: self.on_save())

    # ---------- Utilities ----------

    def set_status(self, text: str) -> None:
        self.status_var.set(text)

    def set_busy(self, busy: bool) -> None:
        if busy:
            self.progress.start(12)
        else:
            self.progress.stop()

    def _label_for_size(self, key: str) -> str:
        return next(label for label, k in self._size_labels.items() if k == key)

    def _guard(self, fn, *args, **kwargs) -> bool:
        """Run a controller action; input/geometry problems go to the status bar."""
        try:
            fn(*args, **kwargs)
        except PassportPrintError as e:
            self.set_status(str(e))
            return False
        return True

    def _preview(self, blob: Optional[ImageBlob]):
        if blob is None:
            return None
        key = id(blob)
        if key not in self._preview_cache:
            # Only the handful of current artifacts are worth keeping decoded.
            live = {id(a.image) for a in self.state.artifacts.values()}
            self._preview_cache = {k: v for k, v in self._preview_cache.items() if k in live}
            self._preview_cache[key] = blob.to_pil()
        return self._preview_cache[key]

    # ---------- rendering ----------

    def _render(self) -> None:
        s = self.state
        original = s.artifact(ArtifactKind.ORIGINAL)
        removed = s.artifact(ArtifactKind.BACKGROUND_REMOVED)
        composited = s.artifact(ArtifactKind.BACKGROUND_COMPOSITED)
        cropped = s.artifact(ArtifactKind.CROPPED)

        self.original_canvas.set_image(self._preview(original))
        if original is not None:
            name = os.path.basename(s.input_path) if s.input_path else "photo"
            w, h = original.size
            self.original_meta.configure(text=f"File: {name}   Size: {w}x{h}")
        else:
            self.original_meta.configure(text="No file loaded.")

        self.bg_canvas.set_image(self._preview(composited or removed))
        self.adjust_canvas.set_image(self._preview(s.crop_input))
        self.crop_canvas.set_image(self._preview(s.crop_source))
        self.crop_canvas.set_crop(s.crop)
        self.result_canvas.set_image(self._preview(cropped))
        if cropped is not None:
            w, h = cropped.size
            self.result_meta.configure(text=f"{w}x{h} px at {self.controller.dpi} DPI")
        else:
            self.result_meta.configure(text="Not cropped yet.")

        self.var_brightness.set(s.params.brightness)
        self.var_contrast.set(s.params.contrast)
        self.var_saturation.set(s.params.saturation)
        self.ext_label.configure(text="." + s.output_format)

        self._render_controls()
        self._select_stage_tab()
        self.set_busy(s.busy)
        if s.error:
            self.set_status(s.error)

    def _render_controls(self) -> None:
        s = self.state
        idle = not s.busy

        def enable(widget, on: bool) -> None:
            widget.state(["!disabled"] if on else ["disabled"])

        enable(self.btn_upload, idle)
        enable(self.btn_reset, idle)
        enable(self.btn_remove_bg, idle and s.has(ArtifactKind.ORIGINAL))
        enable(self.btn_apply_bg, idle and s.has(ArtifactKind.BACKGROUND_REMOVED))
        enable(self.btn_to_crop, s.has(ArtifactKind.BACKGROUND_COMPOSITED))
        enable(self.btn_crop, idle and s.crop is not None)
        enable(self.btn_save, idle and s.has(ArtifactKind.CROPPED))

        for index, stage in enumerate(_TAB_STAGES):
            self.nb.tab(index, state="normal" if s.can_enter(stage) else "disabled")

    def _select_stage_tab(self) -> None:
        stage = self.state.stage
        if stage not in _TAB_STAGES:
            return
        index = _TAB_STAGES.index(stage)
        if self.nb.index("current") != index:
            self._syncing_tabs = True
            try:
                self.nb.select(index)
            finally:
                self._syncing_tabs = False

    def _on_tab_changed(self, _evt) -> None:
        if self._syncing_tabs:
            return
        stage = _TAB_STAGES[self.nb.index("current")]
        if stage != self.state.stage and self.state.can_enter(stage):
            self._guard(self.controller.go_to, stage)

    # ---------- Stage 1: Upload ----------

    def on_upload(self) -> None:
        path = filedialog.askopenfilename(
            title="Select a photo",
            filetypes=[
                ("Image files", "*.jpg *.jpeg *.png *.bmp *.tif *.tiff *.webp"),
                ("All files", "*.*"),
            ],
        )
        if not path:
            return

        try:
            self.controller.load_source(path)
        except PassportPrintError as e:
            messagebox.showerror("Upload failed", str(e))
            self.set_status("Upload failed.")
            return
        self.set_status("Loaded photo. Next: remove the background.")

    def on_remove_background(self) -> None:
        if self._guard(self.controller.remove_background) and self.state.busy:
            self.set_status("Removing background…")

    def on_size_selected(self) -> None:
        key = self._size_labels.get(self.var_size.get())
        if key:
            self._guard(self.controller.select_size, key)

    # ---------- Stage 2: Background ----------

    def _set_color(self, value: str) -> None:
        self.var_color.set(value)
        self.var_bg_type.set("color")

    def on_pick_color(self) -> None:
        self._picking_color = True
        self.set_status("Click the preview to pick a background colour.")

    def _on_bg_canvas_click(self, x: float, y: float, displayed) -> None:
        if not self._picking_color:
            return
        blob = self.state.artifact(ArtifactKind.BACKGROUND_COMPOSITED) or self.state.artifact(
            ArtifactKind.BACKGROUND_REMOVED
        )
        if blob is None:
            return
        self._picking_color = False
        self._set_color(sample_color(blob, (x, y), displayed))
        self.set_status(f"Picked {self.var_color.get()}.")

    def on_choose_background(self) -> None:
        path = filedialog.askopenfilename(
            title="Select a background picture",
            filetypes=[("Image files", "*.jpg *.jpeg *.png *.bmp *.webp"), ("All files", "*.*")],
        )
        if not path:
            return
        try:
            self._bg_image = ImageBlob.from_path(path)
        except OSError as e:
            messagebox.showerror("Background", f"Could not open picture.\n\n{e}")
            return
        self.bg_file_label.configure(text=os.path.basename(path))
        self.var_bg_type.set("image")

    def on_apply_background(self) -> None:
        try:
            if self.var_bg_type.get() == "image":
                if self._bg_image is None:
                    self.set_status("Choose a background picture first.")
                    return
                background = ImageBackground(
                    image=self._bg_image,
                    scale=round(self.var_bg_scale.get(), 2),
                    offset_x=round(self.var_bg_dx.get(), 2),
                    offset_y=round(self.var_bg_dy.get(), 2),
                )
            else:
                background = ColorBackground(self.var_color.get().strip())
        except ValueError as e:
            self.set_status(str(e))
            return
        self._guard(self.controller.apply_background, background)

    # ---------- Stage 3: Adjust ----------

    def _adjust(self, **changes) -> None:
        if self.state.adjust_input is None:
            return
        current = {k: getattr(self.state.params, k) for k in changes}
        if current == changes:
            return
        self._guard(self.controller.set_adjustment, **changes)

    # ---------- Stage 4: Crop ----------

    def _on_crop_changed(self, rect: CropRectangle, displayed) -> None:
        self._guard(self.controller.update_crop, rect, displayed)

    def on_save(self) -> None:
        if not self.state.has(ArtifactKind.CROPPED):
            messagebox.showinfo("Not ready", "Crop the photo first.")
            return
        fmt = self.state.output_format
        initial = export_filename(self.var_filename.get(), fmt)
        path = filedialog.asksaveasfilename(
            title="Save photo",
            initialfile=initial,
            defaultextension="." + fmt,
            filetypes=[(fmt.upper(), "*." + fmt)],
        )
        if not path:
            return
        p = Path(path)
        try:
            out = self.controller.export(p.parent, p.stem)
        except (PassportPrintError, OSError) as e:
            messagebox.showerror("Save failed", str(e))
            return
        self.set_status(f"Saved {out}.")

    def on_reset(self) -> None:
        self.controller.reset()
        self._bg_image = None
        self._preview_cache = {}
        self.bg_file_label.configure(text="(none)")
        self.original_canvas.clear()
        self.bg_canvas.clear()
        self.adjust_canvas.clear()
        self.crop_canvas.clear()
        self.result_canvas.clear()
        self._render()
        self.set_status("Reset complete.")


def run(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    root = tk.Tk()
    root.title("PassportPrint")
    root.geometry("1200x760")
    root.minsize(960, 640)

    controller = PipelineController(
        build_image_ops(settings),
        scheduler=root,
        dispatcher=ThreadDispatcher(root),
        dpi=settings.dpi,
        adjust_window_ms=settings.adjust_debounce_ms,
    )
    if settings.default_size in PHOTO_SIZES:
        controller.select_size(settings.default_size)
    controller.select_format(settings.default_format)
    PassportPrintApp(root, controller)

    root.mainloop()
