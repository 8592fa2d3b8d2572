"""
Textract Block Graph Parser
═══════════════════════════

Turns the flat, unordered block list returned by AnalyzeDocument into:

  text        LINE blocks linearized in reading order, pages separated
              by a "--- Page N ---" marker
  confidence  mean LINE confidence, normalized to 0.0–1.0
  pages       sorted page numbers present in the graph
  tables      one sparse grid per TABLE block: {row: {col: text}}, 0-based
  forms       resolved KEY → VALUE pairs with their confidence

Block shape (Textract field names):

  {
    "Id": "…", "BlockType": "LINE" | "WORD" | "TABLE" | "CELL" | "KEY_VALUE_SET",
    "Text": "…", "Confidence": 99.1, "Page": 1,
    "Geometry": {"BoundingBox": {"Top": 0.12, "Left": 0.05, …}},
    "RowIndex": 1, "ColumnIndex": 2,              # CELL only, 1-based
    "EntityTypes": ["KEY"] | ["VALUE"],           # KEY_VALUE_SET only
    "Relationships": [{"Type": "CHILD" | "VALUE", "Ids": ["…"]}]
  }

Ordering
────────
Textract does not guarantee emission order, so nothing here depends on the
position of a block in the input list. Reading order comes from geometry
(Top, then Left) with the block Id as the final tie-breaker; word order
inside a cell or key comes from the CHILD relationship's Ids list.

The parser is pure: no I/O, no logging side effects on the result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

Block = dict[str, Any]
Table = dict[int, dict[int, str]]

LINE = "LINE"
WORD = "WORD"
TABLE = "TABLE"
CELL = "CELL"
KEY_VALUE_SET = "KEY_VALUE_SET"

CHILD = "CHILD"
VALUE = "VALUE"

PAGE_MARKER = "\n\n--- Page {page} ---\n\n"


@dataclass
class FormField:
    key:        str
    value:      str
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "value": self.value, "confidence": self.confidence}


@dataclass
class BlockGraphResult:
    text:       str = ""
    confidence: float = 0.0
    pages:      list[int] = field(default_factory=list)
    tables:     list[Table] = field(default_factory=list)
    forms:      list[FormField] = field(default_factory=list)
    line_count: int = 0

    def forms_as_dict(self) -> dict[str, str]:
        """Key → value map; the first occurrence of a repeated key wins."""
        out: dict[str, str] = {}
        for form in self.forms:
            out.setdefault(form.key, form.value)
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "text":       self.text,
            "confidence": self.confidence,
            "pages":      list(self.pages),
            "tables":     [
                {row: dict(cols) for row, cols in table.items()} for table in self.tables
            ],
            "forms":      [f.to_dict() for f in self.forms],
        }


# ---------------------------------------------------------------------------
# Block accessors
# ---------------------------------------------------------------------------

def _page(block: Block) -> int:
    try:
        return int(block.get("Page") or 1)
    except (TypeError, ValueError):
        return 1


def _box(block: Block) -> dict:
    return (block.get("Geometry") or {}).get("BoundingBox") or {}


def _reading_key(block: Block) -> tuple[float, float, str]:
    box = _box(block)
    return (float(box.get("Top") or 0.0), float(box.get("Left") or 0.0), str(block.get("Id", "")))


def _related_ids(block: Block, rel_type: str) -> list[str]:
    ids: list[str] = []
    for rel in block.get("Relationships") or []:
        if rel.get("Type") == rel_type:
            ids.extend(rel.get("Ids") or [])
    return ids


def _confidence(block: Block | None) -> float | None:
    if block is None or block.get("Confidence") is None:
        return None
    return float(block["Confidence"])


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


def resolve_text(ids: Iterable[str], by_id: dict[str, Block]) -> str:
    """Space-join the Text of each referenced block, skipping unknown/empty ones."""
    parts = []
    for block_id in ids:
        text = (by_id.get(block_id) or {}).get("Text")
        if text:
            parts.append(str(text).strip())
    return " ".join(p for p in parts if p).strip()


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

def parse_table(table_block: Block, by_id: dict[str, Block]) -> Table:
    """Follow TABLE → CELL → WORD edges into a sparse 0-based grid."""
    grid: Table = {}
    for cell_id in _related_ids(table_block, CHILD):
        cell = by_id.get(cell_id)
        if not cell or cell.get("BlockType") != CELL:
            continue
        row = int(cell.get("RowIndex") or 1) - 1
        col = int(cell.get("ColumnIndex") or 1) - 1
        grid.setdefault(row, {})[col] = resolve_text(_related_ids(cell, CHILD), by_id)
    return grid


def format_table_as_text(table: Table) -> str:
    """Render a sparse grid as ' | '-joined rows in row/column order."""
    lines = []
    for row in sorted(table):
        cols = table[row]
        lines.append(" | ".join(cols[c] for c in sorted(cols)))
    return "\n".join(lines).strip()


# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------

def _is_entity(block: Block, entity_type: str) -> bool:
    return block.get("BlockType") == KEY_VALUE_SET and entity_type in (block.get("EntityTypes") or [])


def parse_form_field(key_block: Block, by_id: dict[str, Block]) -> FormField | None:
    key_text = resolve_text(_related_ids(key_block, CHILD), by_id)

    value_parts: list[str] = []
    value_confidences: list[float] = []
    for value_id in _related_ids(key_block, VALUE):
        value_block = by_id.get(value_id)
        if not value_block:
            continue
        text = resolve_text(_related_ids(value_block, CHILD), by_id)
        if text:
            value_parts.append(text)
        conf = _confidence(value_block)
        if conf is not None:
            value_confidences.append(conf)
    value_text = " ".join(value_parts).strip()

    if not key_text or not value_text:
        return None

    scores = [c for c in (_confidence(key_block), *value_confidences) if c is not None]
    confidence = _clamp_unit(sum(scores) / len(scores) / 100.0) if scores else 0.0
    return FormField(key=key_text, value=value_text, confidence=confidence)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def parse_block_graph(blocks: Iterable[Block], inline_tables: bool = False) -> BlockGraphResult:
    """
    Parse a Textract block graph.

    Args:
        blocks:        the response's "Blocks" list, in any order.
        inline_tables: also render each TABLE into the linear text at its
                       reading position (document-style output).
    """
    blocks = [b for b in blocks if b and b.get("Id") is not None]
    by_id: dict[str, Block] = {str(b["Id"]): b for b in blocks}

    by_page: dict[int, list[Block]] = {}
    for block in blocks:
        by_page.setdefault(_page(block), []).append(block)
    pages = sorted(by_page)

    # --- Text linearization ---------------------------------------------
    chunks: list[str] = []
    line_confidences: list[float] = []
    for index, page in enumerate(pages):
        flow = [
            b for b in by_page[page]
            if (b.get("BlockType") == LINE and b.get("Text")) or (inline_tables and b.get("BlockType") == TABLE)
        ]
        flow.sort(key=_reading_key)

        page_lines: list[str] = []
        for block in flow:
            if block["BlockType"] == LINE:
                page_lines.append(str(block["Text"]))
                conf = _confidence(block)
                line_confidences.append(conf if conf is not None else 0.0)
            else:
                rendered = format_table_as_text(parse_table(block, by_id))
                if rendered:
                    page_lines.append(rendered)

        if index > 0:
            chunks.append(PAGE_MARKER.format(page=page))
        chunks.append("\n".join(page_lines) + ("\n" if page_lines else ""))

    text = "".join(chunks).strip()
    confidence = (
        _clamp_unit(sum(line_confidences) / len(line_confidences) / 100.0)
        if line_confidences else 0.0
    )

    # --- Tables -----------------------------------------------------------
    table_blocks = sorted(
        (b for b in blocks if b.get("BlockType") == TABLE),
        key=lambda b: (_page(b), *_reading_key(b)),
    )
    tables = [parse_table(b, by_id) for b in table_blocks]

    # --- Forms ------------------------------------------------------------
    key_blocks = sorted(
        (b for b in blocks if _is_entity(b, "KEY")),
        key=lambda b: (_page(b), *_reading_key(b)),
    )
    forms = [f for f in (parse_form_field(b, by_id) for b in key_blocks) if f is not None]

    return BlockGraphResult(
        text=text,
        confidence=confidence,
        pages=pages,
        tables=tables,
        forms=forms,
        line_count=len(line_confidences),
    )
