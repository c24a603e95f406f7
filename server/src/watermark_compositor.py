# watermark_compositor.py
"""
Visible, tiled text watermark for PDFs.

Every page gets the same text drawn over and over on a grid that starts one
page-width/height before the page and ends two after it, so that after
rotation no corner of the visible page is left unstamped whatever the aspect
ratio. Stamps are written straight into a new content stream with pikepdf:
Helvetica via a WinAnsi font resource, opacity via an ExtGState, rotation via
the text matrix.

Output is deterministic (no timestamps, content-derived /ID), so the same
source + text + options always gives the same bytes.
"""

from __future__ import annotations

import datetime as dt
import io
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

import pikepdf
from pikepdf import Dictionary, Name

from access_errors import WatermarkFailure

SEPARATOR = " | "
TEXT_ENCODING = "cp1252"

_FONT = Name("/FWmHelv")
_GSTATE = Name("/GSWm")
_GREY = (0.5, 0.5, 0.5)


@dataclass(frozen=True)
class WatermarkOptions:
    font_size: float = 12
    opacity: float = 0.3
    angle: float = -45
    spacing: float = 200

    def __post_init__(self):
        if self.font_size <= 0:
            raise ValueError("font_size must be positive")
        if not 0 <= self.opacity <= 1:
            raise ValueError("opacity must be between 0 and 1")
        if self.spacing <= 0:
            raise ValueError("spacing must be positive")

    @classmethod
    def from_config(cls, cfg) -> "WatermarkOptions":
        return cls(
            font_size=float(cfg.get("EBOOK_WATERMARK_FONT_SIZE", 12)),
            opacity=float(cfg.get("EBOOK_WATERMARK_OPACITY", 0.3)),
            angle=float(cfg.get("EBOOK_WATERMARK_ANGLE", -45)),
            spacing=float(cfg.get("EBOOK_WATERMARK_SPACING", 200)),
        )


MARGIN_OPTIONS = WatermarkOptions(font_size=10, opacity=0.4, angle=0)


def _encodable(value: str) -> bool:
    try:
        value.encode(TEXT_ENCODING)
    except UnicodeEncodeError:
        return False
    return True


def compose_watermark_text(name: str | None, contact: str | None,
                           order_number: str | None, day: dt.date | None) -> str:
    """'Jane Doe | jane@example.com | Order: ORD-1 | 2025-01-01', skipping blanks.

    The stamp font only covers WinAnsi, so a name or contact outside it is
    left out rather than drawn as a row of question marks.
    """
    parts = []
    if name and _encodable(name):
        parts.append(name)
    if contact and _encodable(contact):
        parts.append(contact)
    if order_number:
        parts.append(f"Order: {order_number}")
    if day:
        parts.append(day.isoformat())
    return SEPARATOR.join(parts)


def tile_positions(width: float, height: float, spacing: float) -> list[tuple[float, float]]:
    if spacing <= 0:
        raise ValueError("spacing must be positive")
    xs = _steps(-width, 2 * width, spacing)
    ys = _steps(-height, 2 * height, spacing)
    return [(x, y) for x in xs for y in ys]


def _steps(start: float, stop: float, step: float) -> list[float]:
    out = []
    i = 0
    # multiply instead of accumulating so float error does not creep in
    while start + i * step < stop:
        out.append(start + i * step)
        i += 1
    return out


def _num(v: float) -> bytes:
    s = f"{v:.4f}".rstrip("0").rstrip(".")
    if s in ("-0", ""):
        s = "0"
    return s.encode("ascii")


def _real(v: float) -> Decimal:
    return Decimal(_num(v).decode("ascii"))


def _pdf_string(text: str) -> bytes:
    raw = text.encode(TEXT_ENCODING, errors="replace")
    raw = raw.replace(b"\\", b"\\\\").replace(b"(", b"\\(").replace(b")", b"\\)")
    raw = raw.replace(b"\r", b"\\r").replace(b"\n", b"\\n")
    return b"(" + raw + b")"


def _text_ops(placements: Iterable[tuple[float, float]], text: str, opts: WatermarkOptions) -> bytes:
    rad = math.radians(opts.angle)
    a, b = math.cos(rad), math.sin(rad)
    literal = _pdf_string(text)
    lines = [
        b"q",
        str(_GSTATE).encode() + b" gs",
        b"BT",
        str(_FONT).encode() + b" " + _num(opts.font_size) + b" Tf",
        b" ".join(_num(c) for c in _GREY) + b" rg",
    ]
    for x, y in placements:
        lines.append(b" ".join((_num(a), _num(b), _num(-b), _num(a), _num(x), _num(y))) + b" Tm")
        lines.append(literal + b" Tj")
    lines += [b"ET", b"Q", b""]
    return b"\n".join(lines)


class WatermarkCompositor:
    def __init__(self, options: WatermarkOptions | None = None):
        self.options = options or WatermarkOptions()

    def compose(self, source: bytes, text: str, options: WatermarkOptions | None = None) -> bytes:
        opts = options or self.options

        def place(width, height):
            return tile_positions(width, height, opts.spacing)

        return self._stamp(source, text, opts, place)

    def stamp_margins(self, source: bytes, header: str | None = None, footer: str | None = None,
                      options: WatermarkOptions | None = None) -> bytes:
        """One centred line near the top and/or bottom edge of every page."""
        opts = options or MARGIN_OPTIONS
        if not header and not footer:
            return bytes(source)
        out = bytes(source)
        for line, from_top in ((header, True), (footer, False)):
            if not line:
                continue

            def place(width, height, line=line, from_top=from_top):
                # Helvetica averages about half an em per glyph
                x = width / 2 - len(line) * opts.font_size / 4
                y = height - 30 if from_top else 20
                return [(x, y)]

            out = self._stamp(out, line, opts, place)
        return out

    def _stamp(self, source: bytes, text: str, opts: WatermarkOptions, place) -> bytes:
        try:
            pdf = pikepdf.open(io.BytesIO(bytes(source)))
        except pikepdf.PdfError as e:
            raise WatermarkFailure(f"cannot parse source document: {e}") from e

        with pdf:
            try:
                font = pdf.make_indirect(Dictionary(
                    Type=Name.Font,
                    Subtype=Name.Type1,
                    BaseFont=Name.Helvetica,
                    Encoding=Name.WinAnsiEncoding,
                ))
                gstate = pdf.make_indirect(Dictionary(
                    Type=Name.ExtGState,
                    ca=_real(opts.opacity),
                    CA=_real(opts.opacity),
                ))
                for page in pdf.pages:
                    x0, y0, x1, y1 = (float(v) for v in page.mediabox)
                    width, height = x1 - x0, y1 - y0
                    placements = [(x0 + x, y0 + y) for x, y in place(width, height)]

                    page.add_resource(font, Name.Font, _FONT)
                    page.add_resource(gstate, Name.ExtGState, _GSTATE)
                    # isolate the original content's graphics state from ours
                    page.contents_add(pdf.make_stream(b"q\n"), prepend=True)
                    page.contents_add(pdf.make_stream(b"Q\n" + _text_ops(placements, text, opts)))

                out = io.BytesIO()
                pdf.save(out, deterministic_id=True)
            except pikepdf.PdfError as e:
                raise WatermarkFailure(f"cannot render watermark: {e}") from e
        return out.getvalue()
