import io
import logging
from typing import Dict, Any, Tuple

import pdfplumber
import pytesseract
from docx import Document as DocxDocument

try:
    import PyPDF2
except ImportError:
    PyPDF2 = None

try:
    from pdf2image import convert_from_bytes
except ImportError:
    convert_from_bytes = None

from .errors import UnsupportedFormat, ParseFailure, EmptyResult

PDF_SIGNATURE = b"%PDF"
ZIP_SIGNATURE = b"PK\x03\x04"
OLE_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


class Document:
    """A simple data class to hold one attachment's extracted text."""
    def __init__(self, filename: str, text: str, method: str, truncated: bool = False):
        self.filename = filename
        self.text = text
        self.method = method  # e.g., "pdf_text", "pdfplumber", "ocr", "docx"
        self.truncated = truncated

    def __repr__(self):
        return f"Document(filename={self.filename}, text_length={len(self.text)}, method='{self.method}')"


def sniff_format(data: bytes) -> str:
    """Identifies the document family from its leading bytes."""
    head = data[:1024]
    if PDF_SIGNATURE in head:
        return "pdf"
    if data.startswith(ZIP_SIGNATURE):
        return "docx"
    if data.startswith(OLE_SIGNATURE):
        return "doc"
    return "unknown"


class DocumentIngester:
    """
    Turns raw attachment bytes into plain text.

    PDFs go through the embedded text layer first and fall back to OCR when
    that layer is too thin to be a real document. Word files are read with
    python-docx. The result is always trimmed to the configured maximum.
    """
    def __init__(self, config: Dict[str, Any]):
        """
        Initializes the DocumentIngester with the application's configuration.

        Args:
            config: The configuration dictionary, typically loaded from config.yaml.
        """
        self.config = config.get('ingestion', {})
        self.max_text_length = int(self.config.get('max_text_length', 10000))
        self.min_pdf_text_length = int(self.config.get('min_pdf_text_length', 150))
        self.logger = logging.getLogger(__name__)

        tesseract_path = self.config.get('ocr', {}).get('tesseract_path')
        if tesseract_path:
            pytesseract.pytesseract.tesseract_cmd = tesseract_path
            self.logger.info(f"Set Tesseract command path to: {tesseract_path}")

    def extract_text(self, data: bytes, filename: str) -> Document:
        """
        Extracts text from a single attachment.

        Args:
            data: The raw file bytes.
            filename: The attachment's filename, used for logging only.

        Returns:
            A Document whose text is non-empty and at most max_text_length long.

        Raises:
            UnsupportedFormat: The bytes are neither PDF nor .docx.
            ParseFailure: The parsing library rejected the file.
            EmptyResult: Parsing succeeded but produced only whitespace.
        """
        if not data:
            raise EmptyResult(f"{filename} is empty.")

        kind = sniff_format(data)
        self.logger.debug(f"Sniffed {filename} as '{kind}' ({len(data)} bytes).")

        if kind == "pdf":
            text, method = self._extract_from_pdf(data, filename)
        elif kind == "docx":
            text, method = self._extract_from_docx(data, filename)
        elif kind == "doc":
            raise UnsupportedFormat(f"{filename} is a legacy Word 97-2003 document. Please re-save it as .docx or PDF.")
        else:
            raise UnsupportedFormat(f"{filename} is not a valid PDF or Word document.")

        return self.from_text(text, filename, method)

    def from_text(self, text: str, filename: str, method: str = "provided") -> Document:
        """
        Wraps already-extracted text in a Document, applying the same checks.

        Raises:
            EmptyResult: The text is empty or whitespace-only.
        """
        text = (text or "").strip()
        if not text:
            raise EmptyResult(f"No text could be extracted from {filename}.")

        text, truncated = self.truncate(text, filename)
        self.logger.info(f"Extracted {len(text)} characters from {filename} using '{method}'.")
        return Document(filename=filename, text=text, method=method, truncated=truncated)

    def truncate(self, text: str, filename: str) -> Tuple[str, bool]:
        """Cuts text to the configured maximum length before it reaches a prompt."""
        text = text or ""
        if len(text) <= self.max_text_length:
            return text, False
        self.logger.warning(f"Text from {filename} is {len(text)} characters. Truncating to {self.max_text_length}.")
        return text[:self.max_text_length], True

    def _extract_from_pdf(self, data: bytes, filename: str) -> Tuple[str, str]:
        """
        Extracts text from a PDF, trying the text layer first and falling back to OCR.
        """
        text, method = "", "pdf_text"
        try:
            text = self._read_with_pypdf2(data)
        except Exception as e:
            self.logger.warning(f"PyPDF2 failed on {filename}: {e}. Trying pdfplumber.")
            try:
                text = self._read_with_pdfplumber(data)
                method = "pdfplumber"
            except Exception as e2:
                raise ParseFailure(f"Failed to extract text from PDF {filename}: {e2}")

        if len(text.strip()) > self.min_pdf_text_length:
            return text, method

        self.logger.info(f"Low text extracted from {filename}. Attempting OCR fallback.")
        ocr_text = self._ocr_pdf(data, filename)
        if len(ocr_text.strip()) > len(text.strip()):
            self.logger.info(f"OCR provided more text for {filename}. Using OCR result.")
            return ocr_text, "ocr"
        return text, method

    def _read_with_pypdf2(self, data: bytes) -> str:
        if not PyPDF2:
            raise ParseFailure("PyPDF2 is not installed. Cannot process PDFs.")
        reader = PyPDF2.PdfReader(io.BytesIO(data))
        return "\n".join(page.extract_text() or "" for page in reader.pages)

    def _read_with_pdfplumber(self, data: bytes) -> str:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            return "\n".join(page.extract_text() or "" for page in pdf.pages)

    def _ocr_pdf(self, data: bytes, filename: str) -> str:
        ocr_config = self.config.get('ocr', {})
        if not ocr_config.get('enabled', True):
            return ""
        if not convert_from_bytes:
            self.logger.error("'pdf2image' is not installed, so OCR on PDFs is unavailable.")
            return ""

        try:
            images = convert_from_bytes(data, dpi=ocr_config.get('resolution_dpi', 300))
            pages = []
            for i, img in enumerate(images):
                self.logger.debug(f"OCR processing page {i + 1} of {filename}")
                pages.append(pytesseract.image_to_string(img))
            return "\n".join(pages)
        except Exception as e:
            self.logger.error(f"OCR fallback failed for {filename}: {e}")
            return ""

    def _extract_from_docx(self, data: bytes, filename: str) -> Tuple[str, str]:
        """Reads paragraphs and table cells from a .docx file."""
        try:
            doc = DocxDocument(io.BytesIO(data))
        except Exception as e:
            raise ParseFailure(f"Failed to read Word document {filename}: {e}")

        parts = [p.text for p in doc.paragraphs if p.text.strip()]
        for table in doc.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    parts.append(" | ".join(cells))
        return "\n".join(parts), "docx"
