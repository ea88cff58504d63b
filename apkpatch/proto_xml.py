"""
proto_xml.py  ─  aapt2 proto XML codec
═══════════════════════════════════════════════════════════════════════════════
App bundles (and APKs converted with `aapt2 convert --output-format proto`)
carry AndroidManifest.xml as a protobuf `aapt.pb.XmlNode` message instead of
the classic binary XML chunk format.

Tooling that reads bundles (Android Studio, bundletool) expects fields in
ascending field-number order, oneof members included. Every encoder below
is written field-by-field in that order:

    XmlNode        1 element | 2 text ; 3 source
    XmlElement     1 namespace_declaration*  2 namespace_uri  3 name
                   4 attribute*  5 child*
    XmlNamespace   1 prefix  2 uri  3 source
    XmlAttribute   1 namespace_uri  2 name  3 value  4 source
                   5 resource_id  6 compiled_item
    SourcePosition 1 line_number  2 column_number
    Item           1..7 value (oneof)  8 flag_status  9 flag_negated
                   10 flag_name
    Primitive      1..14 (oneof, see PRIMITIVE_KINDS)

Decoding is lossless: fields this module does not model are kept verbatim
in each record's `unknown` bytes and re-emitted after the known fields.
The exception is the typed value (Item / Primitive): an unrecognised
variant there is a MalformedDocument.
"""

import struct
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Tuple, Union

from apkpatch.errors import MalformedDocument

# ─── Wire types ───────────────────────────────────────────────────────────────
WT_VARINT  = 0
WT_FIXED64 = 1
WT_LEN     = 2
WT_FIXED32 = 5

MAX_DEPTH = 100        # nested XmlNode levels accepted by decode()

_U32 = 0xFFFFFFFF
_U64 = 0xFFFFFFFFFFFFFFFF


# ═══════════════════════════════════════════════════════════════════════════════
#  ①  L O W - L E V E L   W I R E   H E L P E R S
# ═══════════════════════════════════════════════════════════════════════════════

def read_varint(d: bytes, o: int, end: Optional[int] = None) -> Tuple[int, int]:
    """Decode a base-128 varint at `o`. Returns (value, next_offset)."""
    if end is None:
        end = len(d)
    v = s = 0
    while True:
        if o >= end:
            raise MalformedDocument("truncated varint", o)
        b = d[o]; o += 1
        v |= (b & 0x7F) << s; s += 7
        if not (b & 0x80):
            return v & _U64, o
        if s >= 70:
            raise MalformedDocument("varint longer than 10 bytes", o)


def write_varint(v: int) -> bytes:
    """Encode `v` as a varint. Negative values are sign-extended to 64 bits."""
    if v < 0:
        v += 1 << 64
    out = bytearray()
    while v > 0x7F:
        out.append((v & 0x7F) | 0x80); v >>= 7
    out.append(v)
    return bytes(out)


class WireField(NamedTuple):
    number: int
    wire_type: int
    value: Union[int, bytes, None]   # int for varints, raw bytes for fixed, None for LEN
    start: int                       # payload bounds inside the source buffer
    end: int
    raw: bytes                       # key + payload, verbatim


def iter_fields(d: bytes, start: int, end: int) -> Iterator[WireField]:
    """Walk the fields of one message occupying d[start:end]."""
    o = start
    while o < end:
        tag_off = o
        key, o = read_varint(d, o, end)
        number, wt = key >> 3, key & 7
        if number == 0 or number > 0x1FFFFFFF:
            raise MalformedDocument(f"invalid field number {number}", tag_off)
        if wt == WT_VARINT:
            value, p_end = read_varint(d, o, end)
        elif wt in (WT_FIXED64, WT_FIXED32):
            p_end = o + (8 if wt == WT_FIXED64 else 4)
            if p_end > end:
                raise MalformedDocument(f"truncated fixed-width field {number}", o)
            value = bytes(d[o:p_end])
        elif wt == WT_LEN:
            n, o = read_varint(d, o, end)
            p_end = o + n
            if p_end > end:
                raise MalformedDocument(f"field {number} length {n} overruns buffer", o)
            value = None
        else:
            raise MalformedDocument(f"invalid wire type {wt} for field {number}", tag_off)
        yield WireField(number, wt, value, o, p_end, bytes(d[tag_off:p_end]))
        o = p_end


def _expect(f: WireField, wire_type: int) -> None:
    if f.wire_type != wire_type:
        raise MalformedDocument(
            f"field {f.number}: wire type {f.wire_type}, expected {wire_type}", f.start)

def _uint32(f: WireField) -> int:
    _expect(f, WT_VARINT)
    return f.value & _U32

def _int32(f: WireField) -> int:
    _expect(f, WT_VARINT)
    v = f.value & _U32
    return v - (1 << 32) if v & 0x80000000 else v

def _bool(f: WireField) -> bool:
    _expect(f, WT_VARINT)
    return f.value != 0

def _fixed32(f: WireField) -> int:
    _expect(f, WT_FIXED32)
    return struct.unpack('<I', f.value)[0]

def _text(d: bytes, f: WireField) -> str:
    _expect(f, WT_LEN)
    try:
        return bytes(d[f.start:f.end]).decode('utf-8')
    except UnicodeDecodeError:
        raise MalformedDocument(f"field {f.number}: invalid UTF-8", f.start) from None

def _submessage(d: bytes, f: WireField, decoder: Callable, *args):
    _expect(f, WT_LEN)
    return decoder(d, f.start, f.end, *args)


def _key(number: int, wire_type: int) -> bytes:
    return write_varint((number << 3) | wire_type)

def _emit_varint(number: int, v: int) -> bytes:
    return _key(number, WT_VARINT) + write_varint(v)

def _emit_fixed32(number: int, bits: int) -> bytes:
    return _key(number, WT_FIXED32) + struct.pack('<I', bits & _U32)

def _emit_len(number: int, payload: bytes) -> bytes:
    return _key(number, WT_LEN) + write_varint(len(payload)) + payload

# proto3 implicit presence: scalars at their default value are not written
def _opt_varint(number: int, v: int) -> bytes:
    return _emit_varint(number, v) if v else b''

def _opt_text(number: int, s: str) -> bytes:
    return _emit_len(number, s.encode('utf-8')) if s else b''


# ═══════════════════════════════════════════════════════════════════════════════
#  ②  D O C U M E N T   M O D E L
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class SourcePosition:
    line_number: int = 0
    column_number: int = 0
    unknown: bytes = b''


@dataclass
class Boolean:
    value: bool = False
    unknown: bytes = b''


@dataclass
class Reference:
    type: int = 0                 # 0 = REFERENCE, 1 = ATTRIBUTE
    id: int = 0
    name: str = ''
    private: bool = False
    is_dynamic: Optional[Boolean] = None
    type_flags: int = 0
    allow_raw: bool = False
    unknown: bytes = b''


@dataclass
class String:
    value: str = ''
    unknown: bytes = b''


@dataclass
class RawString:
    value: str = ''
    unknown: bytes = b''


@dataclass
class Span:
    tag: str = ''
    first_char: int = 0
    last_char: int = 0
    unknown: bytes = b''


@dataclass
class StyledString:
    value: str = ''
    spans: List[Span] = field(default_factory=list)
    unknown: bytes = b''


@dataclass
class FileReference:
    path: str = ''
    type: int = 0                 # UNKNOWN / PNG / BINARY_XML / PROTO_XML
    unknown: bytes = b''


@dataclass
class Id:
    unknown: bytes = b''


# Primitive oneof: kind -> (field number, wire type)
PRIMITIVE_KINDS: Dict[str, Tuple[int, int]] = {
    "null":                 (1,  WT_LEN),
    "empty":                (2,  WT_LEN),
    "float":                (3,  WT_FIXED32),
    "dimension_deprecated": (4,  WT_FIXED32),
    "fraction_deprecated":  (5,  WT_FIXED32),
    "int_decimal":          (6,  WT_VARINT),
    "int_hexadecimal":      (7,  WT_VARINT),
    "boolean":              (8,  WT_VARINT),
    "color_argb8":          (9,  WT_VARINT),
    "color_rgb8":           (10, WT_VARINT),
    "color_argb4":          (11, WT_VARINT),
    "color_rgb4":           (12, WT_VARINT),
    "dimension":            (13, WT_VARINT),
    "fraction":             (14, WT_VARINT),
}
_PRIMITIVE_BY_NUMBER = {n: (kind, wt) for kind, (n, wt) in PRIMITIVE_KINDS.items()}


@dataclass
class Primitive:
    """
    Tagged union over PRIMITIVE_KINDS. `kind` None means no variant is set.

    value types: the raw IEEE-754 bit pattern (uint32) for the fixed32 kinds,
    bool for "boolean", signed int for "int_decimal", unsigned int for the
    remaining varint kinds and the raw (normally empty) message payload for
    "null" / "empty". Use from_float() / as_float() for the float view.
    """
    kind: Optional[str] = None
    value: Union[int, bool, bytes, None] = None

    @classmethod
    def from_float(cls, kind: str, v: float) -> "Primitive":
        return cls(kind, struct.unpack('<I', struct.pack('<f', v))[0])

    def as_float(self) -> float:
        return struct.unpack('<f', struct.pack('<I', self.value & _U32))[0]


ItemValue = Union[Reference, String, RawString, StyledString, FileReference, Id, Primitive]


@dataclass
class Item:
    """Compiled attribute value. `kind` is one of ITEM_KINDS, or None."""
    kind: Optional[str] = None
    value: Optional[ItemValue] = None
    flag_status: int = 0
    flag_negated: bool = False
    flag_name: str = ''


@dataclass
class XmlNamespace:
    prefix: str = ''
    uri: str = ''
    source: Optional[SourcePosition] = None
    unknown: bytes = b''


@dataclass
class XmlAttribute:
    namespace_uri: str = ''
    name: str = ''
    value: str = ''
    source: Optional[SourcePosition] = None
    resource_id: int = 0
    compiled_item: Optional[Item] = None
    unknown: bytes = b''


@dataclass
class XmlElement:
    namespace_declarations: List[XmlNamespace] = field(default_factory=list)
    namespace_uri: str = ''
    name: str = ''
    attributes: List[XmlAttribute] = field(default_factory=list)
    children: List['XmlNode'] = field(default_factory=list)
    unknown: bytes = b''


@dataclass
class XmlNode:
    """Either an element or a text node (never both)."""
    element: Optional[XmlElement] = None
    text: Optional[str] = None
    source: Optional[SourcePosition] = None
    unknown: bytes = b''


# ═══════════════════════════════════════════════════════════════════════════════
#  ③  D E C O D E R S
# ═══════════════════════════════════════════════════════════════════════════════

def _decode_source(d, start, end) -> SourcePosition:
    pos = SourcePosition()
    for f in iter_fields(d, start, end):
        if f.number == 1:   pos.line_number = _uint32(f)
        elif f.number == 2: pos.column_number = _uint32(f)
        else:               pos.unknown += f.raw
    return pos


def _decode_boolean(d, start, end) -> Boolean:
    b = Boolean()
    for f in iter_fields(d, start, end):
        if f.number == 1: b.value = _bool(f)
        else:             b.unknown += f.raw
    return b


def _decode_reference(d, start, end) -> Reference:
    ref = Reference()
    for f in iter_fields(d, start, end):
        n = f.number
        if n == 1:   ref.type = _uint32(f)
        elif n == 2: ref.id = _uint32(f)
        elif n == 3: ref.name = _text(d, f)
        elif n == 4: ref.private = _bool(f)
        elif n == 5: ref.is_dynamic = _submessage(d, f, _decode_boolean)
        elif n == 6: ref.type_flags = _uint32(f)
        elif n == 7: ref.allow_raw = _bool(f)
        else:        ref.unknown += f.raw
    return ref


def _decode_string(d, start, end) -> String:
    s = String()
    for f in iter_fields(d, start, end):
        if f.number == 1: s.value = _text(d, f)
        else:             s.unknown += f.raw
    return s


def _decode_raw_string(d, start, end) -> RawString:
    s = RawString()
    for f in iter_fields(d, start, end):
        if f.number == 1: s.value = _text(d, f)
        else:             s.unknown += f.raw
    return s


def _decode_span(d, start, end) -> Span:
    span = Span()
    for f in iter_fields(d, start, end):
        if f.number == 1:   span.tag = _text(d, f)
        elif f.number == 2: span.first_char = _uint32(f)
        elif f.number == 3: span.last_char = _uint32(f)
        else:               span.unknown += f.raw
    return span


def _decode_styled_string(d, start, end) -> StyledString:
    s = StyledString()
    for f in iter_fields(d, start, end):
        if f.number == 1:   s.value = _text(d, f)
        elif f.number == 2: s.spans.append(_submessage(d, f, _decode_span))
        else:               s.unknown += f.raw
    return s


def _decode_file_reference(d, start, end) -> FileReference:
    ref = FileReference()
    for f in iter_fields(d, start, end):
        if f.number == 1:   ref.path = _text(d, f)
        elif f.number == 2: ref.type = _uint32(f)
        else:               ref.unknown += f.raw
    return ref


def _decode_id(d, start, end) -> Id:
    return Id(unknown=bytes(d[start:end]))


def _decode_primitive(d, start, end) -> Primitive:
    prim = Primitive()
    for f in iter_fields(d, start, end):
        try:
            kind, wt = _PRIMITIVE_BY_NUMBER[f.number]
        except KeyError:
            raise MalformedDocument(f"unknown Primitive variant {f.number}", f.start) from None
        _expect(f, wt)
        if wt == WT_LEN:
            value = bytes(d[f.start:f.end])
        elif wt == WT_FIXED32:
            value = _fixed32(f)
        elif kind == "int_decimal":
            value = _int32(f)
        elif kind == "boolean":
            value = _bool(f)
        else:
            value = _uint32(f)
        # oneof: the last variant on the wire wins
        prim.kind, prim.value = kind, value
    return prim


# Item oneof: field number -> (kind, decoder)
_ITEM_DECODERS: Dict[int, Tuple[str, Callable]] = {
    1: ("ref",        _decode_reference),
    2: ("str",        _decode_string),
    3: ("raw_str",    _decode_raw_string),
    4: ("styled_str", _decode_styled_string),
    5: ("file",       _decode_file_reference),
    6: ("id",         _decode_id),
    7: ("prim",       _decode_primitive),
}
ITEM_KINDS = tuple(kind for kind, _ in _ITEM_DECODERS.values())


def _decode_item(d, start, end) -> Item:
    item = Item()
    for f in iter_fields(d, start, end):
        n = f.number
        if n in _ITEM_DECODERS:
            kind, decoder = _ITEM_DECODERS[n]
            item.kind, item.value = kind, _submessage(d, f, decoder)
        elif n == 8:  item.flag_status = _uint32(f)
        elif n == 9:  item.flag_negated = _bool(f)
        elif n == 10: item.flag_name = _text(d, f)
        else:
            raise MalformedDocument(f"unknown Item variant {n}", f.start)
    return item


def _decode_namespace(d, start, end) -> XmlNamespace:
    ns = XmlNamespace()
    for f in iter_fields(d, start, end):
        if f.number == 1:   ns.prefix = _text(d, f)
        elif f.number == 2: ns.uri = _text(d, f)
        elif f.number == 3: ns.source = _submessage(d, f, _decode_source)
        else:               ns.unknown += f.raw
    return ns


def _decode_attribute(d, start, end) -> XmlAttribute:
    attr = XmlAttribute()
    for f in iter_fields(d, start, end):
        n = f.number
        if n == 1:   attr.namespace_uri = _text(d, f)
        elif n == 2: attr.name = _text(d, f)
        elif n == 3: attr.value = _text(d, f)
        elif n == 4: attr.source = _submessage(d, f, _decode_source)
        elif n == 5: attr.resource_id = _uint32(f)
        elif n == 6: attr.compiled_item = _submessage(d, f, _decode_item)
        else:        attr.unknown += f.raw
    return attr


def _decode_element(d, start, end, depth: int) -> XmlElement:
    el = XmlElement()
    for f in iter_fields(d, start, end):
        n = f.number
        if n == 1:   el.namespace_declarations.append(_submessage(d, f, _decode_namespace))
        elif n == 2: el.namespace_uri = _text(d, f)
        elif n == 3: el.name = _text(d, f)
        elif n == 4: el.attributes.append(_submessage(d, f, _decode_attribute))
        elif n == 5: el.children.append(_submessage(d, f, _decode_node, depth + 1))
        else:        el.unknown += f.raw
    return el


def _decode_node(d, start, end, depth: int = 0) -> XmlNode:
    if depth > MAX_DEPTH:
        raise MalformedDocument(f"XML nesting deeper than {MAX_DEPTH}", start)
    node = XmlNode()
    for f in iter_fields(d, start, end):
        if f.number == 1:
            node.element, node.text = _submessage(d, f, _decode_element, depth), None
        elif f.number == 2:
            node.text, node.element = _text(d, f), None
        elif f.number == 3:
            node.source = _submessage(d, f, _decode_source)
        else:
            node.unknown += f.raw
    return node


def decode(data: bytes) -> XmlNode:
    """Parse a serialized XmlNode. Raises MalformedDocument on bad input."""
    data = bytes(data)
    return _decode_node(data, 0, len(data))


# ═══════════════════════════════════════════════════════════════════════════════
#  ④  E N C O D E R S   (schema order, one function per record kind)
# ═══════════════════════════════════════════════════════════════════════════════

def _encode_source(pos: SourcePosition) -> bytes:
    return (_opt_varint(1, pos.line_number)
            + _opt_varint(2, pos.column_number)
            + pos.unknown)


def _encode_boolean(b: Boolean) -> bytes:
    return _opt_varint(1, int(b.value)) + b.unknown


def _encode_reference(ref: Reference) -> bytes:
    out = bytearray()
    out += _opt_varint(1, ref.type)
    out += _opt_varint(2, ref.id)
    out += _opt_text(3, ref.name)
    out += _opt_varint(4, int(ref.private))
    if ref.is_dynamic is not None:
        out += _emit_len(5, _encode_boolean(ref.is_dynamic))
    out += _opt_varint(6, ref.type_flags)
    out += _opt_varint(7, int(ref.allow_raw))
    out += ref.unknown
    return bytes(out)


def _encode_string(s: Union[String, RawString]) -> bytes:
    return _opt_text(1, s.value) + s.unknown


def _encode_styled_string(s: StyledString) -> bytes:
    out = bytearray(_opt_text(1, s.value))
    for span in s.spans:
        out += _emit_len(2, _opt_text(1, span.tag)
                            + _opt_varint(2, span.first_char)
                            + _opt_varint(3, span.last_char)
                            + span.unknown)
    out += s.unknown
    return bytes(out)


def _encode_file_reference(ref: FileReference) -> bytes:
    return _opt_text(1, ref.path) + _opt_varint(2, ref.type) + ref.unknown


def _encode_id(i: Id) -> bytes:
    return i.unknown


def _encode_primitive(prim: Primitive) -> bytes:
    if prim.kind is None:
        return b''
    try:
        number, wt = PRIMITIVE_KINDS[prim.kind]
    except KeyError:
        raise ValueError(f"unknown Primitive kind {prim.kind!r}") from None
    if wt == WT_LEN:
        return _emit_len(number, bytes(prim.value or b''))
    if wt == WT_FIXED32:
        return _emit_fixed32(number, int(prim.value))
    if prim.kind == "boolean":
        return _emit_varint(number, int(bool(prim.value)))
    if prim.kind == "int_decimal":
        return _emit_varint(number, int(prim.value))      # int32, sign-extended
    return _emit_varint(number, int(prim.value) & _U32)


# Item oneof: kind -> (field number, encoder)
_ITEM_ENCODERS: Dict[str, Tuple[int, Callable]] = {
    "ref":        (1, _encode_reference),
    "str":        (2, _encode_string),
    "raw_str":    (3, _encode_string),
    "styled_str": (4, _encode_styled_string),
    "file":       (5, _encode_file_reference),
    "id":         (6, _encode_id),
    "prim":       (7, _encode_primitive),
}


def _encode_item(item: Item) -> bytes:
    out = bytearray()
    if item.kind is not None:
        try:
            number, encoder = _ITEM_ENCODERS[item.kind]
        except KeyError:
            raise ValueError(f"unknown Item kind {item.kind!r}") from None
        out += _emit_len(number, encoder(item.value))
    out += _opt_varint(8, item.flag_status)
    out += _opt_varint(9, int(item.flag_negated))
    out += _opt_text(10, item.flag_name)
    return bytes(out)


def _encode_namespace(ns: XmlNamespace) -> bytes:
    out = bytearray()
    out += _opt_text(1, ns.prefix)
    out += _opt_text(2, ns.uri)
    if ns.source is not None:
        out += _emit_len(3, _encode_source(ns.source))
    out += ns.unknown
    return bytes(out)


def _encode_attribute(attr: XmlAttribute) -> bytes:
    out = bytearray()
    out += _opt_text(1, attr.namespace_uri)
    out += _opt_text(2, attr.name)
    out += _opt_text(3, attr.value)
    if attr.source is not None:
        out += _emit_len(4, _encode_source(attr.source))
    out += _opt_varint(5, attr.resource_id)
    if attr.compiled_item is not None:
        out += _emit_len(6, _encode_item(attr.compiled_item))
    out += attr.unknown
    return bytes(out)


def _encode_element(el: XmlElement) -> bytes:
    out = bytearray()
    for ns in el.namespace_declarations:
        out += _emit_len(1, _encode_namespace(ns))
    out += _opt_text(2, el.namespace_uri)
    out += _opt_text(3, el.name)
    for attr in el.attributes:
        out += _emit_len(4, _encode_attribute(attr))
    for child in el.children:
        out += _emit_len(5, _encode_node(child))
    out += el.unknown
    return bytes(out)


def _encode_node(node: XmlNode) -> bytes:
    out = bytearray()
    if node.element is not None:
        out += _emit_len(1, _encode_element(node.element))
    elif node.text is not None:
        out += _emit_len(2, node.text.encode('utf-8'))
    if node.source is not None:
        out += _emit_len(3, _encode_source(node.source))
    out += node.unknown
    return bytes(out)


def encode(node: XmlNode) -> bytes:
    """Serialize `node` in canonical field order."""
    return _encode_node(node)
