# src/fiducial_omr/tools/image_io.py
from __future__ import annotations

import logging
import os
from typing import Iterator, List, Sequence, Tuple

import cv2 as cv
import fitz  # PyMuPDF
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from ..errors import InvalidImageError

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff")
SUPPORTED_EXTENSIONS = IMAGE_EXTENSIONS + (".pdf",)


def is_supported(path: str) -> bool:
    return os.path.splitext(path)[1].lower() in SUPPORTED_EXTENSIONS


# -------------------------
# Image / PDF I/O utilities
# -------------------------

def pil_to_bgr(img: Image.Image) -> np.ndarray:
    return cv.cvtColor(np.array(img.convert("RGB")), cv.COLOR_RGB2BGR)


def imread_any(path: str) -> np.ndarray:
    """
    Read an image file into a BGR array.
    Photos carrying an EXIF orientation are read through Pillow so they come
    out upright; everything else goes through OpenCV first.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Could not read image: {path}")

    try:
        with Image.open(path) as pil:
            if pil.getexif().get(0x0112, 1) != 1:
                return pil_to_bgr(ImageOps.exif_transpose(pil))
    except UnidentifiedImageError:
        logger.debug("Pillow cannot identify %s; trying OpenCV", path)

    img = cv.imdecode(np.fromfile(path, dtype=np.uint8), cv.IMREAD_COLOR)
    if img is not None and img.size > 0:
        return img

    # formats OpenCV was built without (some TIFF variants)
    try:
        with Image.open(path) as pil:
            return pil_to_bgr(pil)
    except UnidentifiedImageError as e:
        raise InvalidImageError(f"Could not decode image: {path}") from e


def render_pdf_pages(pdf_path: str, dpi: int = 300) -> Iterator[np.ndarray]:
    """Yield every page of a PDF as a BGR array."""
    zoom = dpi / 72.0
    mat = fitz.Matrix(zoom, zoom)
    with fitz.open(pdf_path) as doc:
        for page in doc:
            pix = page.get_pixmap(matrix=mat, alpha=False)
            img = Image.frombytes("RGB", [pix.width, pix.height], pix.samples)
            yield pil_to_bgr(img)


def load_pages(paths: Sequence[str], dpi: int = 300) -> Iterator[Tuple[str, np.ndarray]]:
    """
    Yield (label, image) for every input. PDFs contribute one entry per page,
    labelled "file.pdf#3" (1-based).
    """
    for p in paths:
        ext = os.path.splitext(p)[1].lower()
        if ext not in SUPPORTED_EXTENSIONS:
            raise InvalidImageError(f"Unsupported file type '{ext}' for {p}")
        if ext == ".pdf":
            if not os.path.isfile(p):
                raise FileNotFoundError(f"Could not read PDF: {p}")
            for i, img in enumerate(render_pdf_pages(p, dpi=dpi), start=1):
                yield f"{p}#{i}", img
        else:
            yield p, imread_any(p)


def expand_inputs(paths: Sequence[str]) -> List[str]:
    """Directories expand to their supported files (sorted); files pass through."""
    out: List[str] = []
    for p in paths:
        if os.path.isdir(p):
            for name in sorted(os.listdir(p)):
                full = os.path.join(p, name)
                if os.path.isfile(full) and is_supported(full):
                    out.append(full)
        else:
            out.append(p)
    return out
