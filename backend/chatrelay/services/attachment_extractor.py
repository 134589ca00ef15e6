from pathlib import Path
from typing import Optional
import base64
import csv
import io
import logging

from chatrelay.schemas.chat import AttachmentFile

logger = logging.getLogger(__name__)


class AttachmentExtractor:
    """Turn uploaded files into prompt text or base64 image payloads."""

    PDF_TYPES = {"application/pdf"}
    WORD_TYPES = {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}
    EXCEL_TYPES = {
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-excel",
    }

    # Fallback when the browser sent a generic media type
    EXTENSION_TYPES = {
        ".pdf": "application/pdf",
        ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        ".txt": "text/plain",
        ".md": "text/markdown",
        ".csv": "text/csv",
    }

    def media_type(self, file: AttachmentFile) -> str:
        if file.mimetype and file.mimetype != "application/octet-stream":
            return file.mimetype
        return self.EXTENSION_TYPES.get(Path(file.filename).suffix.lower(), file.mimetype)

    def extract(self, file: AttachmentFile) -> str:
        """Extract labelled text from a non-image file. Never raises."""
        mimetype = self.media_type(file)
        try:
            if mimetype in self.PDF_TYPES:
                return f"[Content from PDF: {file.filename}]\n{self._read_pdf(file.path)}"
            if mimetype in self.EXCEL_TYPES:
                return f"[Content from Excel: {file.filename}]\n{self._read_workbook(file.path)}"
            if mimetype in self.WORD_TYPES:
                return f"[Content from Word Doc: {file.filename}]\n{self._read_docx(file.path)}"
            if mimetype.startswith("text/"):
                content = self.decode_text(Path(file.path).read_bytes(), file.filename)
                return f"[Content from Text File: {file.filename}]\n{content}"
        except Exception:
            logger.exception("Error extracting text from %s", file.filename)
            return f"[Error extracting content from {file.filename}]"

        return (
            f"[File attached: {file.filename} ({mimetype}) - "
            "Content extraction not supported for this type]"
        )

    def encode_image(self, file: AttachmentFile) -> Optional[str]:
        """Read an image as base64, or None when the file is unreadable."""
        try:
            return base64.b64encode(Path(file.path).read_bytes()).decode("ascii")
        except OSError:
            logger.exception("Error reading image %s", file.filename)
            return None

    def load(self, file: AttachmentFile) -> tuple[Optional[str], Optional[str]]:
        """Process one file, returning (image payload, file-context text)."""
        if file.is_image:
            image = self.encode_image(file)
            if image is None:
                return None, f"[Error extracting content from {file.filename}]"
            return image, None
        return None, self.extract(file)

    @staticmethod
    def decode_text(content: bytes, filename: str) -> str:
        try:
            return content.decode("utf-8")
        except UnicodeDecodeError:
            # Try other encodings
            for encoding in ["cp1252", "latin-1"]:
                try:
                    return content.decode(encoding)
                except UnicodeDecodeError:
                    continue
            raise ValueError(f"Could not decode {filename} as text")

    def _read_pdf(self, path: str) -> str:
        import pdfplumber

        with pdfplumber.open(path) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
        return "\n".join(pages)

    def _read_docx(self, path: str) -> str:
        import docx

        document = docx.Document(path)
        return "\n".join(paragraph.text for paragraph in document.paragraphs)

    def _read_workbook(self, path: str) -> str:
        import openpyxl

        workbook = openpyxl.load_workbook(path, read_only=True, data_only=True)
        try:
            text = ""
            for sheet in workbook.worksheets:
                buffer = io.StringIO()
                writer = csv.writer(buffer, lineterminator="\n")
                for row in sheet.iter_rows(values_only=True):
                    writer.writerow(["" if cell is None else cell for cell in row])
                text += f"--- Sheet: {sheet.title} ---\n{buffer.getvalue()}"
            return text
        finally:
            workbook.close()
