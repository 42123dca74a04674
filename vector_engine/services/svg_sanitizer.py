from __future__ import annotations

import base64
import binascii
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from lxml import etree

from vector_engine.services.errors import MalformedSvgError, UnsafeContentError
from vector_engine.utils.hash import sha256_hex

logger = logging.getLogger(__name__)

SVG_NS = "http://www.w3.org/2000/svg"
XLINK_NS = "http://www.w3.org/1999/xlink"

EDITOR_NAMESPACES = frozenset(
    {
        "http://www.inkscape.org/namespaces/inkscape",
        "http://sodipodi.sourceforge.net/DTD/sodipodi-0.dtd",
        "http://ns.adobe.com/AdobeIllustrator/10.0/",
        "http://www.w3.org/1999/02/22-rdf-syntax-ns#",
        "http://purl.org/dc/elements/1.1/",
        "http://creativecommons.org/ns#",
    }
)

MAX_SVG_BYTES = 5 * 1024 * 1024
MAX_DEPTH = 64
MAX_ELEMENTS = 20000

# Raster payloads an href inside the drawing may carry.
HREF_DATA_MIMES = frozenset({"image/png", "image/jpeg", "image/gif"})
# Watermark image sources additionally accept SVG, which is sanitized before use.
WATERMARK_DATA_MIMES = HREF_DATA_MIMES | {"image/svg+xml"}


class ElementKind(Enum):
    CONTAINER = "container"
    SHAPE = "shape"
    TEXT = "text"
    PAINT_SERVER = "paint_server"
    DESCRIPTIVE = "descriptive"
    EDITOR = "editor"
    FORBIDDEN = "forbidden"


_ELEMENT_KINDS: dict[str, ElementKind] = {
    "svg": ElementKind.CONTAINER,
    "g": ElementKind.CONTAINER,
    "defs": ElementKind.CONTAINER,
    "clipPath": ElementKind.CONTAINER,
    "path": ElementKind.SHAPE,
    "rect": ElementKind.SHAPE,
    "circle": ElementKind.SHAPE,
    "ellipse": ElementKind.SHAPE,
    "line": ElementKind.SHAPE,
    "polyline": ElementKind.SHAPE,
    "polygon": ElementKind.SHAPE,
    "text": ElementKind.TEXT,
    "tspan": ElementKind.TEXT,
    "linearGradient": ElementKind.PAINT_SERVER,
    "radialGradient": ElementKind.PAINT_SERVER,
    "stop": ElementKind.PAINT_SERVER,
    "title": ElementKind.DESCRIPTIVE,
    "desc": ElementKind.DESCRIPTIVE,
    "metadata": ElementKind.EDITOR,
    "image": ElementKind.FORBIDDEN,
    "use": ElementKind.FORBIDDEN,
    "script": ElementKind.FORBIDDEN,
    "foreignObject": ElementKind.FORBIDDEN,
    "style": ElementKind.FORBIDDEN,
    "a": ElementKind.FORBIDDEN,
    "iframe": ElementKind.FORBIDDEN,
    "pattern": ElementKind.FORBIDDEN,
    "filter": ElementKind.FORBIDDEN,
    "feImage": ElementKind.FORBIDDEN,
    "animate": ElementKind.FORBIDDEN,
    "animateMotion": ElementKind.FORBIDDEN,
    "animateTransform": ElementKind.FORBIDDEN,
    "animateColor": ElementKind.FORBIDDEN,
    "set": ElementKind.FORBIDDEN,
    "mpath": ElementKind.FORBIDDEN,
    "handler": ElementKind.FORBIDDEN,
    "audio": ElementKind.FORBIDDEN,
    "video": ElementKind.FORBIDDEN,
}

_ALLOWED_ATTRIBUTES = frozenset(
    {
        "id", "class", "version", "viewBox", "preserveAspectRatio", "transform",
        "d", "x", "y", "x1", "y1", "x2", "y2", "cx", "cy", "r", "rx", "ry", "fx", "fy", "fr",
        "width", "height", "points", "dx", "dy", "rotate",
        "fill", "fill-opacity", "fill-rule", "opacity", "color", "display", "visibility",
        "stroke", "stroke-width", "stroke-opacity", "stroke-linecap", "stroke-linejoin",
        "stroke-miterlimit", "stroke-dasharray", "stroke-dashoffset",
        "vector-effect", "paint-order", "shape-rendering", "style",
        "clip-path", "clip-rule", "clipPathUnits",
        "gradientUnits", "gradientTransform", "spreadMethod", "offset", "stop-color", "stop-opacity",
        "href", "font-family", "font-size", "font-weight", "font-style",
        "text-anchor", "dominant-baseline", "letter-spacing",
    }
)

_SHAPE_NAMES = frozenset(name for name, kind in _ELEMENT_KINDS.items() if kind is ElementKind.SHAPE)

_CONTROL_RE = re.compile(r"[\s\x00-\x1f\x7f]+")
_URL_REF_RE = re.compile(r"url\(\s*['\"]?([^)'\"]*)", re.IGNORECASE)
_DATA_URI_RE = re.compile(r"^data:([a-z0-9.+-]+/[a-z0-9.+-]+)(;[^,]*)?,", re.IGNORECASE)
_VIEWBOX_SPLIT_RE = re.compile(r"[\s,]+")


@dataclass(frozen=True)
class ViewBox:
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class SvgPrimitive:
    tag: str
    attributes: tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class ParsedSvg:
    view_box: ViewBox
    paths: tuple[SvgPrimitive, ...]


@dataclass(frozen=True)
class SanitizedSvg:
    digest: str
    canonical: str
    view_box: ViewBox
    paths: tuple[SvgPrimitive, ...]


class _WalkState:
    def __init__(self) -> None:
        self.count = 0


def _as_bytes(raw: Union[str, bytes, bytearray]) -> bytes:
    if isinstance(raw, str):
        return raw.encode("utf-8")
    return bytes(raw)


def _split_qname(tag: str) -> tuple[str, str]:
    if tag.startswith("{"):
        ns, _, name = tag[1:].partition("}")
        return ns, name
    return "", tag


def _parse_root(raw: Union[str, bytes, bytearray]) -> etree._Element:
    data = _as_bytes(raw)
    if not data.strip():
        raise MalformedSvgError("empty document")
    if len(data) > MAX_SVG_BYTES:
        raise UnsafeContentError(f"document exceeds {MAX_SVG_BYTES} bytes")

    parser = etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        load_dtd=False,
        dtd_validation=False,
        remove_comments=True,
        remove_pis=True,
        huge_tree=False,
    )
    try:
        root = etree.fromstring(data, parser)
    except etree.XMLSyntaxError as e:
        raise MalformedSvgError(f"not well-formed XML ({e.msg})") from e

    docinfo = root.getroottree().docinfo
    if docinfo.doctype or docinfo.internalDTD is not None:
        raise UnsafeContentError("DOCTYPE declarations are not allowed")
    return root


def _collapse(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    collapsed = " ".join(text.split())
    return collapsed or None


def decode_data_uri(uri: str) -> tuple[bytes, str]:
    s = str(uri or "").strip()
    m = _DATA_URI_RE.match(s)
    if not m:
        raise UnsafeContentError("expected a data: URI")
    mime = m.group(1).lower()
    params = (m.group(2) or "").lower()
    payload = s[m.end():]
    if not payload:
        raise MalformedSvgError("data URI has no payload")
    if ";base64" in params:
        try:
            return base64.b64decode("".join(payload.split()).encode("ascii"), validate=True), mime
        except (binascii.Error, UnicodeEncodeError) as e:
            raise MalformedSvgError("data URI payload is not valid base64") from e
    return payload.encode("utf-8"), mime


def data_uri_mime(uri: str) -> Optional[str]:
    m = _DATA_URI_RE.match(str(uri or "").strip())
    return m.group(1).lower() if m else None


def _check_href(value: str) -> None:
    v = value.strip()
    if v.startswith("#"):
        return
    if data_uri_mime(v) in HREF_DATA_MIMES:
        return
    raise UnsafeContentError(f"external reference {v[:64]!r} is not allowed")


def _clean_attribute(qname: str, value: str) -> Optional[tuple[str, str]]:
    ns, name = _split_qname(qname)
    if ns in EDITOR_NAMESPACES:
        return None
    if ns == XLINK_NS and name == "href":
        ns = ""
    if ns:
        return None

    compact = _CONTROL_RE.sub("", value).lower()
    if name.lower().startswith("on"):
        raise UnsafeContentError(f"event handler attribute {name!r} is not allowed")
    if "javascript:" in compact or "vbscript:" in compact:
        raise UnsafeContentError(f"script URI in attribute {name!r}")
    if name == "href":
        _check_href(value)
    for ref in _URL_REF_RE.findall(value):
        if not ref.strip().startswith("#"):
            raise UnsafeContentError(f"external url() reference in attribute {name!r}")
    if name == "style" and ("@import" in compact or "expression(" in compact):
        raise UnsafeContentError("style attribute imports or expressions are not allowed")

    if name not in _ALLOWED_ATTRIBUTES:
        logger.debug("SVG_ATTRIBUTE_DROPPED", extra={"attribute": name})
        return None
    return name, " ".join(value.split())


def _visit(node: etree._Element, out_parent: Optional[etree._Element], state: _WalkState, depth: int) -> Optional[etree._Element]:
    if depth > MAX_DEPTH:
        raise UnsafeContentError(f"nesting deeper than {MAX_DEPTH} levels")

    ns, name = _split_qname(node.tag)
    if ns in EDITOR_NAMESPACES:
        return None
    if ns not in ("", SVG_NS):
        raise UnsafeContentError(f"foreign namespace element <{name}>")

    kind = _ELEMENT_KINDS.get(name)
    if kind is None:
        raise UnsafeContentError(f"unsupported element <{name}>")
    if kind is ElementKind.FORBIDDEN:
        raise UnsafeContentError(f"forbidden element <{name}>")
    if kind is ElementKind.EDITOR:
        return None

    state.count += 1
    if state.count > MAX_ELEMENTS:
        raise UnsafeContentError(f"more than {MAX_ELEMENTS} elements")

    qualified = f"{{{SVG_NS}}}{name}"
    if out_parent is None:
        out = etree.Element(qualified, nsmap={None: SVG_NS})
    else:
        out = etree.SubElement(out_parent, qualified)

    attrs = [a for a in (_clean_attribute(k, v) for k, v in node.attrib.items()) if a is not None]
    for attr_name, attr_value in sorted(attrs):
        out.set(attr_name, attr_value)

    keeps_text = kind in (ElementKind.TEXT, ElementKind.DESCRIPTIVE)
    if keeps_text:
        out.text = _collapse(node.text)

    for child in node:
        if isinstance(child, etree._Entity):
            raise UnsafeContentError("entity references are not allowed")
        if not isinstance(child.tag, str):
            continue
        cleaned = _visit(child, out, state, depth + 1)
        if cleaned is not None and keeps_text:
            cleaned.tail = _collapse(child.tail)
    return out


def sanitize_svg(raw: Union[str, bytes, bytearray]) -> str:
    """Validate an SVG document against the drawing allow-list and canonicalize it.

    Raises UnsafeContentError for anything that could execute script or fetch
    an external resource, MalformedSvgError for documents that do not parse.
    The canonical form sorts attributes and collapses whitespace so that
    semantically identical inputs serialize to identical bytes.
    """
    root = _parse_root(raw)
    _ns, name = _split_qname(root.tag) if isinstance(root.tag, str) else ("", "")
    if name != "svg":
        raise MalformedSvgError("root element must be <svg>")

    out = _visit(root, None, _WalkState(), 0)
    if out is None:
        raise MalformedSvgError("root element must be <svg>")
    return etree.tostring(out, encoding="unicode")


def _parse_view_box(value: Optional[str]) -> ViewBox:
    if value is None or not value.strip():
        raise MalformedSvgError("missing viewBox")
    parts = [p for p in _VIEWBOX_SPLIT_RE.split(value.strip()) if p]
    if len(parts) != 4:
        raise MalformedSvgError(f"viewBox must have 4 numbers, got {value!r}")
    try:
        x, y, w, h = (float(p) for p in parts)
    except ValueError as e:
        raise MalformedSvgError(f"viewBox is not numeric: {value!r}") from e
    if not all(math.isfinite(n) for n in (x, y, w, h)):
        raise MalformedSvgError(f"viewBox is not finite: {value!r}")
    if w <= 0 or h <= 0:
        raise MalformedSvgError("viewBox width and height must be > 0")
    return ViewBox(x=x, y=y, width=w, height=h)


def parse_svg(canonical: Union[str, bytes]) -> ParsedSvg:
    root = _parse_root(canonical)
    if not isinstance(root.tag, str) or _split_qname(root.tag)[1] != "svg":
        raise MalformedSvgError("root element must be <svg>")

    view_box = _parse_view_box(root.get("viewBox"))
    paths: list[SvgPrimitive] = []
    for el in root.iter():
        if not isinstance(el.tag, str):
            continue
        name = _split_qname(el.tag)[1]
        if name in _SHAPE_NAMES:
            paths.append(SvgPrimitive(tag=name, attributes=tuple(sorted(el.attrib.items()))))
    return ParsedSvg(view_box=view_box, paths=tuple(paths))


def hash_svg(raw_or_canonical: Union[str, bytes, bytearray]) -> str:
    return sha256_hex(_as_bytes(raw_or_canonical))


def sanitize_and_parse(raw: Union[str, bytes, bytearray]) -> SanitizedSvg:
    canonical = sanitize_svg(raw)
    parsed = parse_svg(canonical)
    return SanitizedSvg(
        digest=hash_svg(canonical),
        canonical=canonical,
        view_box=parsed.view_box,
        paths=parsed.paths,
    )
