"""
File Processing Package
═══════════════════════

Everything the extraction stages need to turn stored bytes into text and
structured fields:

  textract_blocks.py  pure parser for the Textract block graph
  ocr.py              OCRProvider interface + Textract backend
  extractor.py        receipt / document field extraction (LLM or heuristic)
  conversion.py       scratch files and local text pre-extraction
"""

from app.processing.ocr import OCRProvider, TextractProvider
from app.processing.textract_blocks import (
    BlockGraphResult,
    FormField,
    format_table_as_text,
    parse_block_graph,
)

__all__ = [
    "BlockGraphResult",
    "FormField",
    "OCRProvider",
    "TextractProvider",
    "format_table_as_text",
    "parse_block_graph",
]
