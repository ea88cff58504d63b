import math
import struct

import pytest

from apkpatch.errors import MalformedDocument
from apkpatch.proto_xml import (
    Boolean,
    FileReference,
    Id,
    Item,
    Primitive,
    RawString,
    Reference,
    SourcePosition,
    Span,
    String,
    StyledString,
    XmlAttribute,
    XmlElement,
    XmlNode,
    decode,
    encode,
    read_varint,
    write_varint,
)

from conftest import make_manifest


def _wrap_attribute(attr_hex: str) -> bytes:
    """XmlNode{element{attribute{...}}} around a hex-encoded attribute payload."""
    attr = bytes.fromhex(attr_hex)
    element = b"\x22" + bytes([len(attr)]) + attr
    return b"\x0a" + bytes([len(element)]) + element


def test_varint_encoding():
    assert write_varint(0) == b"\x00"
    assert write_varint(1) == b"\x01"
    assert write_varint(300) == b"\xac\x02"
    assert write_varint(-1) == b"\xff" * 9 + b"\x01"
    assert read_varint(b"\xac\x02", 0) == (300, 2)
    assert read_varint(b"\x00\xac\x02", 1) == (300, 3)


def test_truncated_varint_raises():
    with pytest.raises(MalformedDocument):
        read_varint(b"\xac", 0)


def test_round_trip_manifest(manifest_node):
    assert decode(encode(manifest_node)) == manifest_node


def test_round_trip_is_stable(manifest_node):
    once = encode(manifest_node)
    assert encode(decode(once)) == once


def test_round_trip_every_item_kind():
    items = [
        Item("ref", Reference(type=1, id=0x7F010000, name="attr/x", private=True,
                              is_dynamic=Boolean(True), type_flags=4, allow_raw=True)),
        Item("str", String("plain")),
        Item("raw_str", RawString("raw")),
        Item("styled_str", StyledString("bold text", [Span("b", 0, 3), Span("i", 5, 8)])),
        Item("file", FileReference("res/layout/main.xml", 3)),
        Item("id", Id()),
        Item("prim", Primitive("null", b"")),
        Item("prim", Primitive("empty", b"")),
        Item("prim", Primitive.from_float("float", 1.5)),
        Item("prim", Primitive("dimension_deprecated", 0x41200000)),
        Item("prim", Primitive("int_decimal", -7)),
        Item("prim", Primitive("int_hexadecimal", 0xFFFFFFFF)),
        Item("prim", Primitive("boolean", False)),
        Item("prim", Primitive("color_argb8", 0xFF00FF00)),
        Item("prim", Primitive("dimension", 0x1001)),
        Item("prim", Primitive("int_decimal", 0), flag_status=2, flag_negated=True,
             flag_name="com.example.flag"),
    ]
    node = XmlNode(element=XmlElement(
        name="test",
        attributes=[XmlAttribute("", f"a{i}", compiled_item=item) for i, item in enumerate(items)],
    ))
    assert decode(encode(node)) == node


def test_empty_buffer_is_empty_node():
    assert decode(b"") == XmlNode()


def test_text_node_round_trip():
    node = XmlNode(element=XmlElement(name="p", children=[XmlNode(text=""), XmlNode(text="hi")]))
    decoded = decode(encode(node))
    assert decoded.element.children[0].text == ""
    assert decoded.element.children[1].text == "hi"
    assert decoded.element.children[0].element is None


def test_attribute_fields_in_schema_order():
    attr = XmlAttribute(
        namespace_uri="a", name="b", value="c",
        source=SourcePosition(1, 2),
        resource_id=5,
        compiled_item=Item("prim", Primitive("int_decimal", 7)),
    )
    out = encode(XmlNode(element=XmlElement(attributes=[attr])))
    assert out == bytes.fromhex(
        "0a19" "2217"
        "0a0161" "120162" "1a0163"
        "220408011002"
        "2805"
        "32043a023007"
    )


def test_out_of_order_input_is_encoded_canonically():
    # resource_id, name, namespace_uri on the wire; canonical is 1, 2, 5
    data = _wrap_attribute("2805" "120162" "0a0161")
    assert encode(decode(data)) == _wrap_attribute("0a0161" "120162" "2805")


def test_zero_valued_oneof_is_still_emitted():
    out = encode(XmlNode(element=XmlElement(attributes=[
        XmlAttribute(compiled_item=Item("prim", Primitive("int_decimal", 0))),
    ])))
    # compiled_item{prim{int_decimal: 0}}
    assert out.endswith(bytes.fromhex("32043a023000"))


def test_negative_int_decimal_uses_ten_byte_varint():
    node = XmlNode(element=XmlElement(attributes=[
        XmlAttribute(compiled_item=Item("prim", Primitive("int_decimal", -1))),
    ]))
    out = encode(node)
    assert b"\x30" + b"\xff" * 9 + b"\x01" in out
    assert decode(out).element.attributes[0].compiled_item.value.value == -1


def _float_node(prim: Primitive) -> XmlNode:
    return XmlNode(element=XmlElement(attributes=[XmlAttribute(compiled_item=Item("prim", prim))]))


def test_float_view():
    prim = Primitive.from_float("float", 1.5)
    assert prim.value == 0x3FC00000
    assert prim.as_float() == 1.5


def test_nan_float_round_trips():
    node = _float_node(Primitive.from_float("float", math.nan))
    once = decode(encode(node))
    assert once == node
    assert decode(encode(once)) == once
    assert math.isnan(once.element.attributes[0].compiled_item.value.as_float())


@pytest.mark.parametrize("bits", [0x7F800001, 0xFFBFFFFF, 0x80000000])
def test_fixed32_bit_pattern_is_kept(bits):
    # signalling NaN, negative quiet NaN with payload, negative zero
    node = _float_node(Primitive("fraction_deprecated", bits))
    data = encode(node)
    assert struct.pack('<I', bits) in data
    assert decode(data) == node
    assert encode(decode(data)) == data


def test_unknown_fields_are_kept_and_moved_last():
    data = _wrap_attribute("0a0161" "7801" "120162")
    node = decode(data)
    assert node.element.attributes[0].unknown == b"\x78\x01"
    assert encode(node) == _wrap_attribute("0a0161" "120162" "7801")


def test_truncated_document_raises(manifest_node):
    data = encode(manifest_node)
    with pytest.raises(MalformedDocument) as exc_info:
        decode(data[:-1])
    assert exc_info.value.offset >= 0


@pytest.mark.parametrize("data", [
    b"\x02\x00",                                  # field number 0
    b"\x0b",                                      # wire type 3 (start group)
    b"\x0f\x00",                                  # wire type 7
    b"\x08" + b"\xff" * 10 + b"\x01",             # varint longer than 10 bytes
    b"\x0a\x05\x22",                              # length overruns buffer
    bytes.fromhex("0a04" "2202" "1001"),          # attribute name sent as varint
    bytes.fromhex("0a05" "2203" "1201ff"),        # invalid UTF-8 in a string field
], ids=["field-zero", "group", "wire-7", "long-varint", "overrun", "wire-type", "utf8"])
def test_malformed_input_raises(data):
    with pytest.raises(MalformedDocument):
        decode(data)


def test_unknown_primitive_variant_raises():
    # compiled_item{prim{field 15: 1}}
    with pytest.raises(MalformedDocument, match="Primitive variant 15"):
        decode(bytes.fromhex("0a08" "2206" "3204" "3a02" "7801"))


def test_unknown_item_variant_raises():
    # compiled_item{field 11: 1}
    with pytest.raises(MalformedDocument, match="Item variant 11"):
        decode(bytes.fromhex("0a06" "2204" "3202" "5801"))


def test_nesting_limit():
    node = XmlNode(element=XmlElement(name="leaf"))
    for _ in range(150):
        node = XmlNode(element=XmlElement(name="n", children=[node]))
    with pytest.raises(MalformedDocument, match="nesting"):
        decode(encode(node))


def test_encode_rejects_unknown_kind():
    node = XmlNode(element=XmlElement(attributes=[
        XmlAttribute(compiled_item=Item("prim", Primitive("complex", 1))),
    ]))
    with pytest.raises(ValueError):
        encode(node)


def test_decoded_manifest_matches_model():
    node = decode(encode(make_manifest(code=123, code_text="123")))
    version_code = node.element.attributes[0]
    assert version_code.name == "versionCode"
    assert version_code.value == "123"
    assert version_code.resource_id == 0x0101021B
    assert version_code.compiled_item == Item("prim", Primitive("int_decimal", 123))
