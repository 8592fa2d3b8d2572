"""
Unit Tests — Textract block graph parser
════════════════════════════════════════
Coverage targets:
  ✅ Lines linearized top-to-bottom regardless of input order
  ✅ Equal Top breaks on Left, then Id
  ✅ Page marker before every page after the first
  ✅ Confidence = mean LINE confidence normalized to 0..1
  ✅ Table cells converted to 0-based sparse grid, words space-joined
  ✅ KEY → VALUE resolution; pairs with an empty side are dropped
  ✅ Output identical for any permutation of the block list
  ✅ inline_tables renders tables into the text flow
  ✅ format_table_as_text row/column ordering
"""

from __future__ import annotations

import itertools
import random

import pytest

from app.processing.textract_blocks import (
    PAGE_MARKER,
    format_table_as_text,
    parse_block_graph,
)


# ─────────────────────────────────────────────────────────────────────────────
# Block builders
# ─────────────────────────────────────────────────────────────────────────────

def _line(block_id, text, top, left=0.1, page=1, confidence=90.0):
    return {
        "Id": block_id, "BlockType": "LINE", "Text": text, "Page": page,
        "Confidence": confidence,
        "Geometry": {"BoundingBox": {"Top": top, "Left": left}},
    }


def _word(block_id, text, page=1):
    return {"Id": block_id, "BlockType": "WORD", "Text": text, "Page": page, "Confidence": 99.0}


def _cell(block_id, row, col, word_ids, page=1):
    return {
        "Id": block_id, "BlockType": "CELL", "RowIndex": row, "ColumnIndex": col, "Page": page,
        "Relationships": [{"Type": "CHILD", "Ids": list(word_ids)}] if word_ids else [],
    }


def _table(block_id, cell_ids, top=0.5, page=1):
    return {
        "Id": block_id, "BlockType": "TABLE", "Page": page,
        "Geometry": {"BoundingBox": {"Top": top, "Left": 0.1}},
        "Relationships": [{"Type": "CHILD", "Ids": list(cell_ids)}],
    }


def _key(block_id, word_ids, value_id, top=0.3, confidence=80.0):
    return {
        "Id": block_id, "BlockType": "KEY_VALUE_SET", "EntityTypes": ["KEY"], "Page": 1,
        "Confidence": confidence,
        "Geometry": {"BoundingBox": {"Top": top, "Left": 0.1}},
        "Relationships": [
            {"Type": "CHILD", "Ids": list(word_ids)},
            {"Type": "VALUE", "Ids": [value_id]},
        ],
    }


def _value(block_id, word_ids, confidence=90.0):
    return {
        "Id": block_id, "BlockType": "KEY_VALUE_SET", "EntityTypes": ["VALUE"], "Page": 1,
        "Confidence": confidence,
        "Relationships": [{"Type": "CHILD", "Ids": list(word_ids)}] if word_ids else [],
    }


# ─────────────────────────────────────────────────────────────────────────────
# Text linearization
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestLinearization:

    def test_lines_sorted_by_top(self):
        blocks = [_line("b", "Second line", top=0.5), _line("a", "First line", top=0.1)]

        result = parse_block_graph(blocks)

        assert result.text == "First line\nSecond line"
        assert result.text.index("First line") < result.text.index("Second line")

    def test_equal_top_breaks_on_left_then_id(self):
        blocks = [
            _line("z", "right", top=0.2, left=0.6),
            _line("y", "left", top=0.2, left=0.1),
            _line("x", "left-too", top=0.2, left=0.1),
        ]

        result = parse_block_graph(blocks)

        assert result.text.splitlines() == ["left-too", "left", "right"]

    def test_page_marker_between_pages(self):
        blocks = [
            _line("p2", "page two", top=0.1, page=2),
            _line("p1", "page one", top=0.1, page=1),
        ]

        result = parse_block_graph(blocks)

        assert result.pages == [1, 2]
        assert result.text == "page one\n" + PAGE_MARKER.format(page=2) + "page two"
        assert "--- Page 1 ---" not in result.text

    def test_confidence_is_mean_of_lines_normalized(self):
        blocks = [_line("a", "x", 0.1, confidence=90.0), _line("b", "y", 0.2, confidence=70.0)]

        result = parse_block_graph(blocks)

        assert result.confidence == pytest.approx(0.80)
        assert result.line_count == 2

    def test_empty_graph(self):
        result = parse_block_graph([])

        assert result.text == ""
        assert result.confidence == 0.0
        assert result.pages == []
        assert result.tables == []
        assert result.forms == []

    def test_word_blocks_do_not_leak_into_text(self):
        blocks = [_line("l", "Total 12.00", 0.1), _word("w1", "Total"), _word("w2", "12.00")]

        assert parse_block_graph(blocks).text == "Total 12.00"


# ─────────────────────────────────────────────────────────────────────────────
# Tables
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestTables:

    def test_single_cell_is_zero_based(self):
        blocks = [_table("t", ["c"]), _cell("c", 1, 1, ["w"]), _word("w", "A1")]

        result = parse_block_graph(blocks)

        assert result.tables[0][0][0] == "A1"

    def test_cell_words_space_joined_in_relationship_order(self):
        blocks = [
            _table("t", ["c11", "c12", "c21"]),
            _cell("c11", 1, 1, ["w1", "w2"]),
            _cell("c12", 1, 2, ["w3"]),
            _cell("c21", 2, 1, []),
            _word("w2", "Milk"),
            _word("w1", "Whole"),
            _word("w3", "21.90"),
        ]

        grid = parse_block_graph(blocks).tables[0]

        assert grid[0] == {0: "Whole Milk", 1: "21.90"}
        assert grid[1] == {0: ""}

    def test_non_cell_children_ignored(self):
        blocks = [_table("t", ["c", "w"]), _cell("c", 2, 3, ["w"]), _word("w", "x")]

        assert parse_block_graph(blocks).tables == [{1: {2: "x"}}]

    def test_tables_ordered_by_page_then_position(self):
        blocks = [
            _table("late", ["c2"], top=0.1, page=2), _cell("c2", 1, 1, ["w2"], page=2), _word("w2", "p2"),
            _table("early", ["c1"], top=0.9, page=1), _cell("c1", 1, 1, ["w1"]), _word("w1", "p1"),
        ]

        tables = parse_block_graph(blocks).tables

        assert [t[0][0] for t in tables] == ["p1", "p2"]

    def test_inline_tables_render_in_reading_order(self):
        blocks = [
            _line("h", "Statement", top=0.1),
            _table("t", ["c1", "c2"], top=0.5),
            _cell("c1", 1, 1, ["w1"]),
            _cell("c2", 1, 2, ["w2"]),
            _word("w1", "Rent"),
            _word("w2", "900"),
            _line("f", "Thank you", top=0.9),
        ]

        assert parse_block_graph(blocks, inline_tables=True).text == "Statement\nRent | 900\nThank you"
        assert parse_block_graph(blocks).text == "Statement\nThank you"

    def test_format_table_as_text_sorts_rows_and_columns(self):
        table = {1: {1: "d", 0: "c"}, 0: {0: "a", 1: "b"}}

        assert format_table_as_text(table) == "a | b\nc | d"


# ─────────────────────────────────────────────────────────────────────────────
# Forms
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestForms:

    def test_key_value_pair_resolved(self):
        blocks = [
            _key("k", ["kw"], "v"),
            _value("v", ["vw"]),
            _word("kw", "Total"),
            _word("vw", "123.45"),
        ]

        forms = parse_block_graph(blocks).forms

        assert len(forms) == 1
        assert (forms[0].key, forms[0].value) == ("Total", "123.45")
        assert forms[0].confidence == pytest.approx(0.85)

    def test_pair_with_empty_value_dropped(self):
        blocks = [_key("k", ["kw"], "v"), _value("v", []), _word("kw", "Date")]

        assert parse_block_graph(blocks).forms == []

    def test_pair_with_empty_key_dropped(self):
        blocks = [_key("k", [], "v"), _value("v", ["vw"]), _word("vw", "2024-01-01")]

        assert parse_block_graph(blocks).forms == []

    def test_dangling_value_reference_dropped(self):
        blocks = [_key("k", ["kw"], "missing"), _word("kw", "Total")]

        assert parse_block_graph(blocks).forms == []

    def test_forms_as_dict_keeps_first_occurrence(self):
        blocks = [
            _key("k1", ["a"], "v1", top=0.1), _value("v1", ["b"]),
            _key("k2", ["c"], "v2", top=0.2), _value("v2", ["d"]),
            _word("a", "Total"), _word("b", "1.00"), _word("c", "Total"), _word("d", "2.00"),
        ]

        assert parse_block_graph(blocks).forms_as_dict() == {"Total": "1.00"}


# ─────────────────────────────────────────────────────────────────────────────
# Order independence
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestOrderIndependence:

    @pytest.fixture
    def graph(self):
        return [
            _line("l1", "ACME Store", top=0.05),
            _line("l2", "Receipt #42", top=0.10),
            _line("l3", "page two text", top=0.2, page=2),
            _table("t", ["c1", "c2"], top=0.4),
            _cell("c1", 1, 1, ["w1"]),
            _cell("c2", 1, 2, ["w2"]),
            _word("w1", "Bread"),
            _word("w2", "34.50"),
            _key("k", ["kw"], "v"),
            _value("v", ["vw"]),
            _word("kw", "Total"),
            _word("vw", "56.40"),
        ]

    def test_every_rotation_gives_identical_output(self, graph):
        expected = parse_block_graph(graph).to_dict()

        for shift in range(len(graph)):
            rotated = graph[shift:] + graph[:shift]
            assert parse_block_graph(rotated).to_dict() == expected

    def test_shuffled_input_gives_identical_output(self, graph):
        expected = parse_block_graph(graph, inline_tables=True).to_dict()
        rng = random.Random(7)

        for _ in range(20):
            shuffled = graph[:]
            rng.shuffle(shuffled)
            assert parse_block_graph(shuffled, inline_tables=True).to_dict() == expected

    def test_reversed_small_graph_all_permutations(self):
        blocks = [_line("a", "one", 0.1), _line("b", "two", 0.2), _line("c", "three", 0.3)]

        outputs = {parse_block_graph(list(p)).text for p in itertools.permutations(blocks)}

        assert outputs == {"one\ntwo\nthree"}
