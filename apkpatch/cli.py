"""
apkpatch  ─  set versionCode / versionName / package in an APK, AAB or a
bare proto XML AndroidManifest.xml.

Usage:
  apkpatch --versionCode 42 --versionName 2.0.1 app-release.aab
  apkpatch --package com.example.new app.apk          (needs aapt2)
  apkpatch --versionCode 7 AndroidManifest.xml        (proto XML file)
"""

import argparse
import dataclasses
import logging
import sys
from typing import List, Optional

from apkpatch.config import load_settings
from apkpatch.errors import PatchError
from apkpatch.manifest import MAX_VERSION_CODE, PatchRequest
from apkpatch.pipeline import patch_path

logger = logging.getLogger("apkpatch")


def _version_code(text: str) -> int:
    try:
        v = int(text, 10)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {text!r}") from None
    if not 0 <= v <= MAX_VERSION_CODE:
        raise argparse.ArgumentTypeError(f"must be between 0 and {MAX_VERSION_CODE}")
    return v


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="apkpatch",
        description="Patch version/package metadata in an APK, AAB or proto XML manifest")
    p.add_argument("file", help=".apk, .aab or proto XML AndroidManifest.xml")
    p.add_argument("--versionCode", dest="version_code", type=_version_code, default=0,
                   help="The versionCode to set (0 = keep)")
    p.add_argument("--versionName", dest="version_name", default="",
                   help="The versionName to set")
    p.add_argument("--package", dest="package", default="",
                   help="The package to set")
    p.add_argument("--strict", action="store_true",
                   help="Fail when a requested attribute is missing from the manifest")
    p.add_argument("--aapt2", default=None,
                   help="aapt2 executable (default: $AAPT2 or 'aapt2')")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
        stream=sys.stderr,
    )

    try:
        settings = load_settings()
        if args.aapt2:
            settings = dataclasses.replace(settings, aapt2=args.aapt2)
        request = PatchRequest(
            package=args.package,
            version_code=args.version_code,
            version_name=args.version_name,
        )
        if request.is_empty():
            logger.warning("No override given, nothing to do")
            return 0
        changes = patch_path(args.file, request, settings, strict=args.strict)
    except PatchError as exc:
        logger.error(str(exc))
        return 1
    except (OSError, ValueError) as exc:
        logger.error(f"{type(exc).__name__}: {exc}")
        return 1

    for change in changes:
        print(change, flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
