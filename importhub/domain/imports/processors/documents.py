"""
Document parsing for asset imports.

Turns an uploaded file into text blocks. PDFs go through ``pypdf`` (one block
per page), spreadsheets through the tabular parser (one block per row), and
plain text is decoded as-is. Formats without a parser raise
``DependencyUnavailable`` so the asset importer can fail that file alone.
"""
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pypdf import PdfReader

from importhub.domain.imports.errors import DependencyUnavailable
from importhub.domain.imports.processors.tabular import TabularParser

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PPTX_MIME = "application/vnd.openxmlformats-officedocument.presentationml.presentation"
XLS_MIME = "application/vnd.ms-excel"
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

SUPPORTED_MIME_TYPES: Dict[str, str] = {
    PDF_MIME: "pdf",
    DOCX_MIME: "docx",
    PPTX_MIME: "pptx",
    "text/plain": "txt",
    "text/markdown": "md",
    "text/csv": "csv",
    XLS_MIME: "xls",
    XLSX_MIME: "xlsx",
}

_SPREADSHEET_MIMES = {"text/csv", XLS_MIME, XLSX_MIME}
_TEXT_MIMES = {"text/plain", "text/markdown"}


@dataclass
class ParsedBlock:
    index: int
    text: str
    block_type: str = "text"
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedDocument:
    file_name: str
    mime_type: str
    blocks: List[ParsedBlock] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n\n".join(block.text for block in self.blocks if block.text)

    def first_line(self) -> Optional[str]:
        for block in self.blocks:
            for line in block.text.splitlines():
                if line.strip():
                    return line.strip()
        return None


def file_type_for(mime_type: str) -> str:
    return SUPPORTED_MIME_TYPES.get(mime_type, "unknown")


class DocumentParser:
    name = "document-parser"

    def __init__(self, tabular_parser: Optional[TabularParser] = None):
        self.tabular_parser = tabular_parser or TabularParser()

    def parse(self, content: bytes, file_name: str, mime_type: str) -> ParsedDocument:
        document = ParsedDocument(file_name=file_name, mime_type=mime_type)
        if mime_type == PDF_MIME:
            document.blocks = self._parse_pdf(content, file_name)
        elif mime_type in _SPREADSHEET_MIMES:
            document.blocks = self._parse_spreadsheet(content, file_name)
        elif mime_type in _TEXT_MIMES or mime_type.startswith("text/"):
            text = content.decode("utf-8", errors="replace")
            document.blocks = [ParsedBlock(index=0, text=text)]
        else:
            raise DependencyUnavailable(
                self.name, f"No parser available for {file_name} ({mime_type})"
            )
        logger.debug("Parsed %s into %d blocks", file_name, len(document.blocks))
        return document

    def _parse_pdf(self, content: bytes, file_name: str) -> List[ParsedBlock]:
        try:
            reader = PdfReader(io.BytesIO(content))
            blocks = []
            for i, page in enumerate(reader.pages):
                page_text = page.extract_text() or ""
                if page_text.strip():
                    blocks.append(ParsedBlock(index=len(blocks), text=page_text, block_type="page",
                                              metadata={"page": i + 1}))
            return blocks
        except Exception as exc:
            raise DependencyUnavailable(self.name, f"Failed to read PDF {file_name}: {exc}") from exc

    def _parse_spreadsheet(self, content: bytes, file_name: str) -> List[ParsedBlock]:
        rows = self.tabular_parser.parse(content, file_name)
        blocks = []
        for i, row in enumerate(rows):
            text = "; ".join(f"{key}: {value}" for key, value in row.items() if value is not None)
            blocks.append(ParsedBlock(index=i, text=text, block_type="row", metadata={"row": i + 1}))
        return blocks
