"""
Root-element attribute overrides for a decoded proto XML manifest.

Only the <manifest> element's own attributes are touched:

    package                  (no namespace)   string value
    android:versionCode      compiled int_decimal and, when present, the
                             redundant decimal string value
    android:versionName      string value
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from apkpatch.errors import AttributeNotFound
from apkpatch.proto_xml import XmlAttribute, XmlNode

logger = logging.getLogger(__name__)

ANDROID_NS       = "http://schemas.android.com/apk/res/android"
PACKAGE_ATTR     = "package"
VERSION_CODE     = "versionCode"
VERSION_NAME     = "versionName"
MAX_VERSION_CODE = 0x7FFFFFFF


@dataclass(frozen=True)
class PatchRequest:
    """Empty string / 0 means "leave this attribute alone"."""
    package: str = ""
    version_code: int = 0
    version_name: str = ""

    def __post_init__(self):
        if not 0 <= self.version_code <= MAX_VERSION_CODE:
            raise ValueError(
                f"versionCode must be between 1 and {MAX_VERSION_CODE} (0 = unset), "
                f"got {self.version_code}")

    def is_empty(self) -> bool:
        return not (self.package or self.version_code or self.version_name)


@dataclass(frozen=True)
class AttributeChange:
    attribute: str
    old: str
    new: str

    def __str__(self) -> str:
        return f"Changing {self.attribute} from {self.old} to {self.new}"


def _patch_version_code(attr: XmlAttribute, code: int) -> Optional[AttributeChange]:
    new = str(code)
    olds = []
    item = attr.compiled_item
    if item is not None and item.kind == "prim" and item.value.kind == "int_decimal":
        olds.append(str(item.value.value))
        item.value.value = code
    # Bundles carry the decimal text too; aapt2-converted APKs drop it
    if attr.value != "":
        olds.append(attr.value)
        attr.value = new
    if not olds:
        logger.warning("versionCode attribute has neither an int_decimal value "
                       "nor a string value, left unchanged")
        return None
    changed = [old for old in olds if old != new]
    if not changed:
        return None
    return AttributeChange(VERSION_CODE, changed[0], new)


def mutate(root: XmlNode, request: PatchRequest, strict: bool = False) -> List[AttributeChange]:
    """
    Apply `request` to the root element's attributes in place and return
    the changes made. An override equal to the current value is not a
    change. Child elements are never visited.

    An override whose attribute does not exist is logged and skipped, or
    raises AttributeNotFound when `strict` is set.
    """
    changes: List[AttributeChange] = []
    matched = set()
    attributes = root.element.attributes if root.element is not None else []

    for attr in attributes:
        if attr.namespace_uri == "" and attr.name == PACKAGE_ATTR:
            if request.package:
                matched.add(PACKAGE_ATTR)
                if attr.value != request.package:
                    changes.append(AttributeChange(PACKAGE_ATTR, attr.value, request.package))
                    attr.value = request.package
        if attr.namespace_uri != ANDROID_NS:
            continue
        if attr.name == VERSION_CODE:
            if request.version_code > 0:
                matched.add(VERSION_CODE)
                change = _patch_version_code(attr, request.version_code)
                if change:
                    changes.append(change)
        elif attr.name == VERSION_NAME:
            if request.version_name:
                matched.add(VERSION_NAME)
                if attr.value != request.version_name:
                    changes.append(AttributeChange(VERSION_NAME, attr.value, request.version_name))
                    attr.value = request.version_name

    wanted = {
        PACKAGE_ATTR: bool(request.package),
        VERSION_CODE: request.version_code > 0,
        VERSION_NAME: bool(request.version_name),
    }
    missing = [name for name, on in wanted.items() if on and name not in matched]
    if missing:
        msg = f"root element has no attribute for: {', '.join(missing)}"
        if strict:
            raise AttributeNotFound(msg)
        logger.warning(f"{msg} (override ignored)")
    return changes
