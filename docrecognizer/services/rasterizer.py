import io
import logging

from pdf2image import convert_from_bytes
from pdf2image.exceptions import (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFPopplerTimeoutError,
    PDFSyntaxError,
)

from ..errors import NoPagesError, RenderError


class PdfRasterizer:
    """Renders the first page of a PDF to PNG with poppler (via pdf2image).

    Args:
        dpi: Render resolution. Vision models rarely gain anything above 200.
        timeout_s: Upper bound for the poppler subprocess.
    """

    def __init__(self, dpi: int = 200, timeout_s: int = 120, logger: logging.Logger | None = None) -> None:
        self.dpi = dpi
        self.timeout_s = timeout_s
        self.log = logger or logging.getLogger(__name__)

    def first_page(self, document: bytes) -> bytes:
        if not document:
            raise NoPagesError("document is empty")
        try:
            pages = convert_from_bytes(
                document,
                dpi=self.dpi,
                first_page=1,
                last_page=1,
                timeout=self.timeout_s,
            )
        except PDFPageCountError as exc:
            raise RenderError(f"failed to open PDF: {exc}") from exc
        except (PDFSyntaxError, PDFInfoNotInstalledError, PDFPopplerTimeoutError, OSError) as exc:
            raise RenderError(f"failed to render page: {exc}") from exc

        if not pages:
            raise NoPagesError()

        buf = io.BytesIO()
        try:
            pages[0].save(buf, format="PNG")
        except (OSError, ValueError) as exc:
            raise RenderError(f"failed to encode PNG: {exc}") from exc

        self.log.debug("Rendered first page at %d DPI (%d bytes)", self.dpi, buf.tell())
        return buf.getvalue()
