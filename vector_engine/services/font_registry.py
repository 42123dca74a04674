from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Optional

from fontTools.ttLib import TTFont as FTFont
from fontTools.ttLib import TTLibError
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFError
from reportlab.pdfbase.ttfonts import TTFont as RLTTFont

logger = logging.getLogger(__name__)

DEFAULT_FONT = "Helvetica"

PDF_CORE_FONTS: frozenset[str] = frozenset(
    {
        "Courier",
        "Courier-Bold",
        "Courier-Oblique",
        "Courier-BoldOblique",
        "Helvetica",
        "Helvetica-Bold",
        "Helvetica-Oblique",
        "Helvetica-BoldOblique",
        "Times-Roman",
        "Times-Bold",
        "Times-Italic",
        "Times-BoldItalic",
        "Symbol",
        "ZapfDingbats",
    }
)

_register_lock = Lock()


@dataclass(frozen=True)
class SystemFont:
    family: str
    path: str
    embeddable: bool


@dataclass(frozen=True)
class FontChoice:
    name: str
    source: str
    embedded: bool


def _system_font_dirs() -> list[Path]:
    if os.name == "nt":
        return [Path(os.environ.get("WINDIR", r"C:\\Windows")) / "Fonts"]

    home = Path.home()
    if sys.platform == "darwin":
        return [Path("/System/Library/Fonts"), Path("/Library/Fonts"), home / "Library" / "Fonts"]

    return [
        Path("/usr/share/fonts"),
        Path("/usr/local/share/fonts"),
        home / ".fonts",
        home / ".local" / "share" / "fonts",
    ]


def _read_system_font(path: Path) -> Optional[SystemFont]:
    try:
        font = FTFont(str(path), recalcBBoxes=False, recalcTimestamp=False, lazy=True)
        family: Optional[str] = None
        for rec in font["name"].names:
            if rec.nameID != 1:
                continue
            try:
                value = str(rec.toUnicode()).strip()
            except UnicodeDecodeError:
                continue
            if value:
                family = value
                if rec.platformID == 3:
                    break
        if not family:
            return None
        os2 = font.get("OS/2")
        fs_type = int(getattr(os2, "fsType", 0) or 0) if os2 is not None else 0
        # fsType bit 1: restricted license embedding.
        return SystemFont(family=family, path=str(path), embeddable=not bool(fs_type & 0x0002))
    except (TTLibError, OSError, KeyError, AssertionError):
        return None


@lru_cache(maxsize=1)
def system_fonts() -> dict[str, SystemFont]:
    found: dict[str, SystemFont] = {}
    for d in _system_font_dirs():
        if not d.is_dir():
            continue
        for p in sorted(d.rglob("*")):
            if p.suffix.lower() != ".ttf" or not p.is_file():
                continue
            font = _read_system_font(p)
            if font is not None:
                found.setdefault(font.family.lower(), font)
    return found


def resolve_font_family(requested: str) -> FontChoice:
    """Map a series/watermark font name onto something ReportLab can draw.

    PDF core fonts and already registered fonts are used as-is; other names
    are looked up among embeddable system TrueType fonts and registered on
    first use. Anything else falls back to Helvetica.
    """
    name = str(requested or "").strip()
    if not name:
        return FontChoice(DEFAULT_FONT, "pdf-core", False)
    if name in PDF_CORE_FONTS:
        return FontChoice(name, "pdf-core", False)
    if name in pdfmetrics.getRegisteredFontNames():
        return FontChoice(name, "registered", True)

    hit = system_fonts().get(name.lower())
    if hit is None or not hit.embeddable:
        logger.warning("FONT_FAMILY_FALLBACK", extra={"requested_font_family": name, "resolved_font_family": DEFAULT_FONT})
        return FontChoice(DEFAULT_FONT, "pdf-core", False)

    with _register_lock:
        if hit.family not in pdfmetrics.getRegisteredFontNames():
            try:
                pdfmetrics.registerFont(RLTTFont(hit.family, hit.path))
            except (TTFError, OSError) as e:
                logger.warning("FONT_REGISTER_FAILED", extra={"family": hit.family, "error": str(e)})
                return FontChoice(DEFAULT_FONT, "pdf-core", False)
    return FontChoice(hit.family, "system", True)
