"""Thin wrapper around `aapt2 convert` (binary APK ⇄ proto APK)."""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Union

from apkpatch.errors import ExternalToolError

logger = logging.getLogger(__name__)

PROTO  = "proto"
BINARY = "binary"
OUTPUT_FORMATS = (PROTO, BINARY)


class Aapt2:
    def __init__(self, executable: str = "aapt2", timeout: float = 600):
        self.executable = executable
        self.timeout = timeout

    def _resolve(self) -> str:
        exe = shutil.which(self.executable)
        if exe is None:
            raise ExternalToolError(f"'{self.executable}' not found in PATH")
        return exe

    def convert(self, src: Union[str, Path], dst: Union[str, Path], output_format: str) -> None:
        """Run `aapt2 convert -o DST --output-format FMT SRC`. No retry."""
        if output_format not in OUTPUT_FORMATS:
            raise ValueError(f"output_format must be one of {OUTPUT_FORMATS}, got {output_format!r}")
        cmd = [self._resolve(), "convert", "-o", str(dst),
               "--output-format", output_format, str(src)]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            r = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise ExternalToolError(
                f"aapt2 convert timed out after {self.timeout:g}s") from None
        except OSError as exc:
            raise ExternalToolError(f"Failed executing aapt2: {exc}") from exc
        if r.returncode != 0:
            output = (r.stderr or r.stdout or "").strip()
            raise ExternalToolError(
                f"aapt2 convert ({output_format}) failed with exit code {r.returncode}",
                returncode=r.returncode, output=output[:400])
        logger.info(f"aapt2: {Path(src).name} → {output_format}")

    def to_proto(self, src: Union[str, Path], dst: Union[str, Path]) -> None:
        self.convert(src, dst, PROTO)

    def to_binary(self, src: Union[str, Path], dst: Union[str, Path]) -> None:
        self.convert(src, dst, BINARY)
