import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv

# --- DEFAULTS ---
DEFAULT_AAPT2 = "aapt2"
DEFAULT_ALIGNMENT = 4
DEFAULT_TOOL_TIMEOUT = 600.0


@dataclass(frozen=True)
class Settings:
    aapt2: str = DEFAULT_AAPT2
    tmp_dir: Optional[str] = None
    alignment: int = DEFAULT_ALIGNMENT
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def load_settings(dotenv_path: Optional[str] = None) -> Settings:
    """
    Read settings from the environment, after loading a .env file
    (current directory, or `dotenv_path`). Real environment variables win.

      AAPT2                  converter executable
      APKPATCH_TMPDIR        parent directory for scratch files
      APKPATCH_ALIGNMENT     rewriter alignment in bytes (0 or 1 disables)
      APKPATCH_TOOL_TIMEOUT  converter timeout in seconds
    """
    load_dotenv(dotenv_path or find_dotenv(usecwd=True))
    alignment = _env_number("APKPATCH_ALIGNMENT", DEFAULT_ALIGNMENT, int)
    if alignment < 0:
        raise ValueError(f"APKPATCH_ALIGNMENT must be >= 0, got {alignment}")
    return Settings(
        aapt2=os.getenv("AAPT2") or DEFAULT_AAPT2,
        tmp_dir=os.getenv("APKPATCH_TMPDIR") or None,
        alignment=alignment,
        tool_timeout=_env_number("APKPATCH_TOOL_TIMEOUT", DEFAULT_TOOL_TIMEOUT, float),
    )
