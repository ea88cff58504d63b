"""
Extract → Decode → Mutate → Encode → Rewrite, per input kind.

  .apk   aapt2 convert → proto APK, patch AndroidManifest.xml, convert back
  .aab   patch base/manifest/AndroidManifest.xml in place
  other  the file itself is a proto XML document

Every stage raises on failure; nothing is written to the target until the
full output exists, and scratch files are removed on every exit path.
"""

import logging
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple, Union

from apkpatch import proto_xml
from apkpatch.aapt2 import Aapt2
from apkpatch.config import Settings
from apkpatch.manifest import AttributeChange, PatchRequest, mutate
from apkpatch.zip_surgeon import ZipArchive, atomic_write, extract, replace_entry

logger = logging.getLogger(__name__)

APK_MANIFEST    = "AndroidManifest.xml"
BUNDLE_MANIFEST = "base/manifest/AndroidManifest.xml"

PathLike = Union[str, Path]


def patch_document_bytes(data: bytes, request: PatchRequest,
                         strict: bool = False) -> Tuple[bytes, List[AttributeChange]]:
    """Decode, mutate and re-encode one proto XML manifest."""
    root = proto_xml.decode(data)
    changes = mutate(root, request, strict=strict)
    return proto_xml.encode(root), changes


def patch_document_file(path: PathLike, request: PatchRequest,
                        strict: bool = False) -> List[AttributeChange]:
    path = Path(path)
    out, changes = patch_document_bytes(path.read_bytes(), request, strict)
    if changes:
        atomic_write(path, out)
    return changes


def patch_archive(path: PathLike, entry: str, request: PatchRequest,
                  strict: bool = False, alignment: Optional[int] = 4) -> List[AttributeChange]:
    """Patch the manifest stored at `entry` inside the zip at `path`."""
    path = Path(path)
    archive = ZipArchive.load(path)
    out, changes = patch_document_bytes(extract(archive, entry), request, strict)
    if not changes:
        logger.info(f"{path.name}: nothing to change")
        return changes
    replace_entry(archive, entry, out, alignment).write(path)
    logger.info(f"{path.name}: {entry} rewritten ({len(archive)} entries)")
    return changes


def patch_apk(path: PathLike, request: PatchRequest, converter: Aapt2,
              strict: bool = False, alignment: Optional[int] = 4,
              tmp_dir: Optional[str] = None) -> List[AttributeChange]:
    """
    Binary-XML APKs go through aapt2: convert to proto format, patch the
    manifest there, convert back. The original is only replaced after the
    final conversion succeeded.
    """
    path = Path(path)
    with tempfile.TemporaryDirectory(prefix="apkpatch_", dir=tmp_dir) as work:
        proto_apk = Path(work) / "proto.apk"
        converter.to_proto(path, proto_apk)
        changes = patch_archive(proto_apk, APK_MANIFEST, request, strict, alignment)
        if not changes:
            return changes
        binary_apk = Path(work) / "binary.apk"
        converter.to_binary(proto_apk, binary_apk)
        atomic_write(path, binary_apk.read_bytes())
    return changes


def patch_path(path: PathLike, request: PatchRequest, settings: Settings,
               strict: bool = False) -> List[AttributeChange]:
    """Dispatch on the file suffix."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".apk":
        converter = Aapt2(settings.aapt2, settings.tool_timeout)
        return patch_apk(path, request, converter, strict, settings.alignment, settings.tmp_dir)
    if suffix == ".aab":
        return patch_archive(path, BUNDLE_MANIFEST, request, strict, settings.alignment)
    return patch_document_file(path, request, strict)
