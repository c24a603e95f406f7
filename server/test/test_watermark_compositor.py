import io
import math
import datetime as dt

import pikepdf
import pytest

from access_errors import WatermarkFailure
from watermark_compositor import (
    MARGIN_OPTIONS,
    WatermarkCompositor,
    WatermarkOptions,
    compose_watermark_text,
    tile_positions,
)

from conftest import make_pdf, shown_text

TEXT = "Alice Reader | alice@example.com | Order: ORD-100 | 2025-03-01"


def _tm_operands(pdf_bytes: bytes, page_index: int = 0):
    with pikepdf.open(io.BytesIO(pdf_bytes)) as pdf:
        page = pdf.pages[page_index]
        return [
            [float(v) for v in operands]
            for operands, operator in pikepdf.parse_content_stream(page)
            if str(operator) == "Tm"
        ]


# --- text composition ---

def test_compose_watermark_text_joins_all_parts():
    text = compose_watermark_text("Alice Reader", "alice@example.com", "ORD-100", dt.date(2025, 3, 1))
    assert text == TEXT


def test_compose_watermark_text_skips_missing_parts():
    assert compose_watermark_text(None, "+15550100", "ORD-9", None) == "+15550100 | Order: ORD-9"
    assert compose_watermark_text(None, None, None, None) == ""


def test_compose_watermark_text_drops_parts_the_font_cannot_draw():
    assert compose_watermark_text("রহিম করিম", "a@b.c", "ORD-1", None) == "a@b.c | Order: ORD-1"
    assert compose_watermark_text("Zoë", "李@example.cn", "ORD-1", None) == "Zoë | Order: ORD-1"


def test_stamp_for_non_latin_reader_has_no_placeholders():
    text = compose_watermark_text("Дмитрий", "d@example.com", "ORD-2", dt.date(2025, 3, 1))
    out = WatermarkCompositor().compose(make_pdf(), text)
    assert shown_text(out)[0][0] == "d@example.com | Order: ORD-2 | 2025-03-01"
    assert "?" not in shown_text(out)[0][0]


# --- options ---

@pytest.mark.parametrize("kwargs", [
    {"font_size": 0},
    {"opacity": -0.1},
    {"opacity": 1.5},
    {"spacing": 0},
])
def test_options_are_validated(kwargs):
    with pytest.raises(ValueError):
        WatermarkOptions(**kwargs)


def test_options_from_config_reads_ebook_keys():
    opts = WatermarkOptions.from_config({
        "EBOOK_WATERMARK_FONT_SIZE": "18",
        "EBOOK_WATERMARK_OPACITY": 0.5,
        "EBOOK_WATERMARK_ANGLE": 30,
    })
    assert opts == WatermarkOptions(font_size=18, opacity=0.5, angle=30, spacing=200)


# --- tiling ---

def test_tile_positions_for_letter_page():
    tiles = tile_positions(612, 792, 200)
    xs = sorted({x for x, _ in tiles})
    ys = sorted({y for _, y in tiles})
    assert xs[0] == -612 and xs[-1] == 1188
    assert ys[0] == -792 and ys[-1] == 1408
    assert len(tiles) == len(xs) * len(ys) == 120


@pytest.mark.parametrize("width,height", [(612, 792), (100, 2000), (2000, 100), (50, 50)])
def test_every_spacing_cell_of_the_page_has_a_stamp(width, height):
    spacing = 200
    tiles = tile_positions(width, height, spacing)
    xs = {x for x, _ in tiles}
    ys = {y for _, y in tiles}
    samples_x = [width * i / 10 for i in range(11)]
    samples_y = [height * i / 10 for i in range(11)]
    for px in samples_x:
        assert any(px - spacing < x <= px for x in xs), px
    for py in samples_y:
        assert any(py - spacing < y <= py for y in ys), py


def test_tile_positions_rejects_bad_spacing():
    with pytest.raises(ValueError):
        tile_positions(100, 100, 0)


# --- compose ---

def test_compose_stamps_every_page():
    src = make_pdf(pages=3)
    out = WatermarkCompositor().compose(src, TEXT)

    pages = shown_text(out)
    assert len(pages) == 3
    expected = len(tile_positions(612, 792, 200))
    for strings in pages:
        assert len(strings) == expected
        assert set(strings) == {TEXT}


def test_compose_handles_extreme_aspect_ratio():
    src = make_pdf(pages=1, size=(100, 2000))
    out = WatermarkCompositor().compose(src, "narrow")
    assert len(shown_text(out)[0]) == len(tile_positions(100, 2000, 200))


def test_compose_is_deterministic():
    src = make_pdf(pages=2)
    comp = WatermarkCompositor()
    assert comp.compose(src, TEXT) == comp.compose(src, TEXT)


def test_compose_output_depends_on_text():
    src = make_pdf(pages=1)
    comp = WatermarkCompositor()
    assert comp.compose(src, "reader one") != comp.compose(src, "reader two")


def test_compose_does_not_touch_source():
    src = bytearray(make_pdf(pages=1))
    before = bytes(src)
    WatermarkCompositor().compose(src, TEXT)
    assert bytes(src) == before


def test_compose_rejects_malformed_input():
    with pytest.raises(WatermarkFailure):
        WatermarkCompositor().compose(b"this is not a pdf", TEXT)


def test_compose_allows_empty_text():
    out = WatermarkCompositor().compose(make_pdf(), "")
    assert set(shown_text(out)[0]) == {""}


def test_compose_sets_opacity_and_rotation():
    opts = WatermarkOptions(opacity=0.25, angle=-45)
    out = WatermarkCompositor(opts).compose(make_pdf(), TEXT)

    with pikepdf.open(io.BytesIO(out)) as pdf:
        gs = pdf.pages[0].Resources.ExtGState["/GSWm"]
        assert float(gs.ca) == pytest.approx(0.25)
        assert float(gs.CA) == pytest.approx(0.25)
        font = pdf.pages[0].Resources.Font["/FWmHelv"]
        assert font.BaseFont == pikepdf.Name.Helvetica

    a, b, c, d, _, _ = _tm_operands(out)[0]
    assert a == pytest.approx(math.cos(math.radians(-45)), abs=1e-4)
    assert b == pytest.approx(math.sin(math.radians(-45)), abs=1e-4)
    assert c == pytest.approx(-b)
    assert d == pytest.approx(a)


def test_compose_offsets_tiles_by_mediabox_origin():
    pdf = pikepdf.new()
    page = pdf.add_blank_page(page_size=(612, 792))
    page.mediabox = pikepdf.Array([100, 50, 712, 842])
    buf = io.BytesIO()
    pdf.save(buf)

    out = WatermarkCompositor().compose(buf.getvalue(), TEXT)
    placements = [(op[4], op[5]) for op in _tm_operands(out)]
    assert min(x for x, _ in placements) == pytest.approx(100 - 612)
    assert min(y for _, y in placements) == pytest.approx(50 - 792)


def test_compose_encodes_latin_text():
    out = WatermarkCompositor().compose(make_pdf(), "Zoë (Café) \\ Order: 7")
    assert shown_text(out)[0][0] == "Zoë (Café) \\ Order: 7"


def test_original_content_is_wrapped_in_its_own_graphics_state():
    out = WatermarkCompositor().compose(make_pdf(), TEXT)
    with pikepdf.open(io.BytesIO(out)) as pdf:
        ops = [str(op) for _, op in pikepdf.parse_content_stream(pdf.pages[0])]
    # q <original drawing> Q, then our own q ... Q block
    assert ops[0] == "q"
    first_q_end = ops.index("Q")
    assert "re" in ops[:first_q_end]
    assert ops[first_q_end + 1] == "q"
    assert "BT" not in ops[:first_q_end]


# --- margins ---

def test_stamp_margins_adds_footer_line():
    src = make_pdf(pages=2)
    out = WatermarkCompositor().stamp_margins(src, footer="footer line")
    for strings in shown_text(out):
        assert strings == ["footer line"]
    y = _tm_operands(out)[0][5]
    assert y == pytest.approx(20)


def test_stamp_margins_header_and_footer():
    out = WatermarkCompositor().stamp_margins(make_pdf(), header="top", footer="bottom")
    assert shown_text(out)[0] == ["top", "bottom"]
    tms = _tm_operands(out)
    assert tms[0][5] == pytest.approx(792 - 30)
    assert tms[1][5] == pytest.approx(20)


def test_stamp_margins_without_lines_returns_source():
    src = make_pdf()
    assert WatermarkCompositor().stamp_margins(src) == src


def test_margin_defaults_are_horizontal():
    assert MARGIN_OPTIONS.angle == 0
    assert MARGIN_OPTIONS.font_size == 10
