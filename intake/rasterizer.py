"""
Rasterizer / Extractor
======================
Turns an input file into raw pages for ingestion.

    .pdf            → one JPEG per page (PyMuPDF render)
    .docx           → one text page (python-docx paragraphs)
    .txt / .md      → one text page
    image files     → one JPEG (Pillow, EXIF orientation applied)

One file may yield many pages; callers never assume 1:1.
"""

from __future__ import annotations

import io
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF
from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from PIL import Image, ImageOps, UnidentifiedImageError

from .exceptions import ConversionError
from .models import TEXT_MIME_TYPE

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".bmp", ".gif", ".tif", ".tiff", ".webp"}
TEXT_SUFFIXES = {".txt", ".md"}


@dataclass
class RawPage:
    """One converted page: image bytes or extracted text."""
    file_name: str
    mime_type: str
    data: bytes = b""
    text: Optional[str] = None

    @property
    def is_text(self) -> bool:
        return self.mime_type == TEXT_MIME_TYPE


class Rasterizer:
    """
    Converts PDFs, Word documents and photos into RawPages.
    """

    def __init__(self, dpi: int = 150, jpeg_quality: int = 85):
        self.dpi = dpi
        self.jpeg_quality = jpeg_quality

    def convert(self, path: str) -> list[RawPage]:
        """
        Convert one input file.

        Args:
            path: Path to a PDF, DOCX, text or image file.

        Returns:
            List of RawPages in document order (possibly empty for an
            empty document).

        Raises:
            FileNotFoundError: If the file does not exist.
            ConversionError: If the file type is unsupported or unreadable.
        """
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Input file not found: {path}")

        suffix = file_path.suffix.lower()
        if suffix == ".pdf":
            pages = self._render_pdf(file_path)
        elif suffix == ".docx":
            pages = self._extract_docx(file_path)
        elif suffix in TEXT_SUFFIXES:
            pages = self._read_text(file_path)
        elif suffix in IMAGE_SUFFIXES:
            pages = [self._load_image(file_path)]
        else:
            raise ConversionError(f"Unsupported file type: {file_path.name}")

        logger.info(f"Converted {file_path.name} → {len(pages)} page(s)")
        return pages

    # ─── Formats ──────────────────────────────────────────────────────────

    def _render_pdf(self, path: Path) -> list[RawPage]:
        try:
            doc = fitz.open(str(path))
        except RuntimeError as e:
            raise ConversionError(f"Cannot open PDF {path.name}: {e}") from e

        pages: list[RawPage] = []
        with doc:
            for page_idx in range(doc.page_count):
                pix = doc[page_idx].get_pixmap(dpi=self.dpi, alpha=False)
                image = Image.frombytes(
                    "RGB", (pix.width, pix.height), pix.samples
                )
                pages.append(RawPage(
                    file_name=f"{path.name} (p{page_idx + 1})",
                    mime_type="image/jpeg",
                    data=self._to_jpeg(image),
                ))
        return pages

    def _extract_docx(self, path: Path) -> list[RawPage]:
        try:
            document = Document(str(path))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as e:
            raise ConversionError(f"Cannot read {path.name}: {e}") from e

        chunks = [
            paragraph.text.strip()
            for paragraph in document.paragraphs
            if paragraph.text.strip()
        ]
        text = "\n".join(chunks).strip()
        if not text:
            logger.warning(f"{path.name} contains no text")
            return []
        return [RawPage(file_name=path.name, mime_type=TEXT_MIME_TYPE, text=text)]

    def _read_text(self, path: Path) -> list[RawPage]:
        text = path.read_text(encoding="utf-8", errors="replace").strip()
        if not text:
            return []
        return [RawPage(file_name=path.name, mime_type=TEXT_MIME_TYPE, text=text)]

    def _load_image(self, path: Path) -> RawPage:
        try:
            with Image.open(path) as img:
                image = ImageOps.exif_transpose(img)
                image.load()
        except (UnidentifiedImageError, OSError) as e:
            raise ConversionError(f"Cannot decode image {path.name}: {e}") from e
        return RawPage(
            file_name=path.name,
            mime_type="image/jpeg",
            data=self._to_jpeg(image),
        )

    def _to_jpeg(self, image: Image.Image) -> bytes:
        if image.mode != "RGB":
            image = image.convert("RGB")
        buf = io.BytesIO()
        image.save(buf, format="JPEG", quality=self.jpeg_quality)
        return buf.getvalue()
