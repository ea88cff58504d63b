import io
import zipfile

import pytest

from apkpatch.manifest import ANDROID_NS
from apkpatch.proto_xml import (
    Item,
    Primitive,
    Reference,
    SourcePosition,
    XmlAttribute,
    XmlElement,
    XmlNamespace,
    XmlNode,
    encode,
)

ENV_KEYS = ("AAPT2", "APKPATCH_TMPDIR", "APKPATCH_ALIGNMENT", "APKPATCH_TOOL_TIMEOUT")


def int_item(value: int) -> Item:
    return Item("prim", Primitive("int_decimal", value))


def make_manifest(package="com.example.old", code=5, code_text="5", version_name="1.0") -> XmlNode:
    """A small <manifest> tree shaped like bundletool's output."""
    return XmlNode(
        element=XmlElement(
            namespace_declarations=[
                XmlNamespace(prefix="android", uri=ANDROID_NS, source=SourcePosition(2, 0)),
            ],
            name="manifest",
            attributes=[
                XmlAttribute(ANDROID_NS, "versionCode", code_text,
                             resource_id=0x0101021B, compiled_item=int_item(code)),
                XmlAttribute(ANDROID_NS, "versionName", version_name, resource_id=0x0101021C),
                XmlAttribute(ANDROID_NS, "compileSdkVersion", "34",
                             resource_id=0x01010572, compiled_item=int_item(34)),
                XmlAttribute("", "package", package),
            ],
            children=[
                XmlNode(element=XmlElement(
                    name="uses-sdk",
                    attributes=[
                        XmlAttribute(ANDROID_NS, "minSdkVersion", "21",
                                     resource_id=0x0101020C, compiled_item=int_item(21)),
                    ],
                ), source=SourcePosition(5, 4)),
                XmlNode(element=XmlElement(
                    name="uses-feature",
                    attributes=[
                        XmlAttribute(ANDROID_NS, "versionCode", "9", compiled_item=int_item(9)),
                    ],
                )),
                XmlNode(element=XmlElement(
                    name="application",
                    attributes=[
                        XmlAttribute(ANDROID_NS, "label", "", resource_id=0x01010001,
                                     compiled_item=Item("ref", Reference(id=0x7F0E001B,
                                                                         name="string/app_name"))),
                        XmlAttribute(ANDROID_NS, "debuggable", "true",
                                     compiled_item=Item("prim", Primitive("boolean", True))),
                    ],
                    children=[XmlNode(text="\n  ")],
                )),
            ],
        ),
        source=SourcePosition(1, 0),
    )


def build_zip(entries, comment=b"") -> bytes:
    """entries: iterable of (name, data, compress_type)."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data, compress in entries:
            info = zipfile.ZipInfo(name, date_time=(2020, 1, 1, 0, 0, 0))
            info.compress_type = compress
            zf.writestr(info, data)
        zf.comment = comment
    return buf.getvalue()


def bundle_entries(manifest: bytes = None):
    if manifest is None:
        manifest = encode(make_manifest())
    return [
        ("BundleConfig.pb", b"\x0a\x04\x31\x2e\x30\x30" * 10, zipfile.ZIP_DEFLATED),
        ("base/manifest/AndroidManifest.xml", manifest, zipfile.ZIP_DEFLATED),
        ("base/resources.pb", bytes(range(256)) * 8, zipfile.ZIP_STORED),
        ("base/dex/classes.dex", b"dex\n035\x00" + b"\x01" * 301, zipfile.ZIP_STORED),
        ("base/res/drawable/icon.png", b"\x89PNG" + b"\x00" * 77, zipfile.ZIP_STORED),
        ("base/assets/notes.txt", b"hello world\n" * 50, zipfile.ZIP_DEFLATED),
    ]


@pytest.fixture
def manifest_node():
    return make_manifest()


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No apkpatch settings in the environment and no .env in reach."""
    for key in ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    return monkeypatch
