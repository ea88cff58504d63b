"""
zip_surgeon.py  ─  single-entry ZIP surgery
═══════════════════════════════════════════════════════════════════════════════
Replaces ONE entry of an APK / AAB and leaves every other entry untouched.

  zipfile is used for reading only, never for writing: passthrough entries
  keep their exact compressed bytes and padding. resources.arsc, *.so and
  classes*.dex in an APK must stay STORED and aligned.

THE APPROACH:
  ① Parse the archive into its raw records
       [LFH 30B][name][extra][data][descriptor?]  ← kept verbatim per entry
       [CFH 46B][name][extra][comment]            ← kept verbatim per entry
  ② Build a fresh local + central record for the target entry only
  ③ Pad the new local record's extra field so its length changes by a
     multiple of `alignment`: every later entry keeps its data offset
     modulo `alignment`, so aligned entries stay aligned
  ④ Lay records out in their original physical order, patch the 4-byte
     local-header offset of each central record, write a new EOCD

Bytes in front of an entry record (a self-extractor stub, slack between
records) are kept verbatim as that entry's `gap`. Bytes between the last
record and the central directory (an APK Signing Block) are dropped.
Zip64 and multi-disk archives are rejected.
"""

import contextlib
import copy
import io
import logging
import os
import shutil
import struct
import tempfile
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from apkpatch.errors import EntryNotFound, MalformedArchive

logger = logging.getLogger(__name__)

# ZIP magic bytes
_LFH  = b'PK\x03\x04'   # Local File Header
_CFH  = b'PK\x01\x02'   # Central Directory Header
_EOCD = b'PK\x05\x06'   # End of Central Directory
_DD   = b'PK\x07\x08'   # Data Descriptor (optional signature)
_Z64L = b'PK\x06\x07'   # Zip64 EOCD locator

# struct formats  (all little-endian)
#  LFH  30 bytes: sig(4) ver(2) flag(2) comp(2) time(2) date(2) crc(4) csz(4) usz(4) fnl(2) exl(2)
_FMT_LFH  = '<4sHHHHHIIIHH'
#  CFH  46 bytes: sig(4) vmade(2) vneed(2) flag(2) comp(2) time(2) date(2)
#                 crc(4) csz(4) usz(4) fnl(2) exl(2) cml(2) dsk(2) iat(2) eat(4) off(4)
_FMT_CFH  = '<4sHHHHHHIIIHHHHHII'
# EOCD 22 bytes: sig(4) dsk(2) dsk_cd(2) ent(2) tot(2) cdsz(4) cdoff(4) cml(2)
_FMT_EOCD = '<4sHHHHIIH'

_LFH_LEN, _CFH_LEN, _EOCD_LEN = 30, 46, 22
_CFH_OFFSET_AT = 42      # local-header offset field inside a CFH

FLAG_ENCRYPTED  = 0x01
FLAG_DESCRIPTOR = 0x08


@dataclass
class ZipEntry:
    """One archive member, held as its verbatim on-disk records."""
    name: str
    info: zipfile.ZipInfo
    local: bytes       # LFH + name + extra + data (+ data descriptor)
    central: bytes     # CFH + name + extra + comment
    offset: int        # position of `local` in the source archive (layout order)
    gap: bytes = b''   # bytes directly in front of `local`, carried over verbatim

    @property
    def compress_type(self) -> int:
        return self.info.compress_type

    def data_offset(self) -> int:
        """Offset of the entry data relative to the start of `local`."""
        fnl, exl = struct.unpack_from('<HH', self.local, 26)
        return _LFH_LEN + fnl + exl


class ZipArchive:
    """An ordered sequence of ZipEntry records plus the archive comment."""

    def __init__(self, entries: List[ZipEntry], comment: bytes = b'', label: str = "archive"):
        self.entries = entries
        self.comment = comment
        self.label = label

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def names(self) -> List[str]:
        return [e.name for e in self.entries]

    def find(self, name: str) -> Optional[ZipEntry]:
        """Exact, case-sensitive lookup. No path normalization."""
        for e in self.entries:
            if e.name == name:
                return e
        return None

    def read(self, name: str) -> bytes:
        return extract(self, name)

    # ── loading ──────────────────────────────────────────────────────────────
    @classmethod
    def load(cls, path: Union[str, Path]) -> "ZipArchive":
        path = Path(path)
        return cls.from_bytes(path.read_bytes(), label=path.name)

    @classmethod
    def from_bytes(cls, raw: bytes, label: str = "archive") -> "ZipArchive":
        raw = bytes(raw)
        try:
            with zipfile.ZipFile(io.BytesIO(raw)) as z:
                infos = z.infolist()
        except (zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
            raise MalformedArchive(f"{label}: {exc}") from exc

        cd_off, n, comment, concat = _read_eocd(raw, label)
        centrals = _read_central_records(raw, cd_off + concat, n, label)
        if len(centrals) != len(infos):
            raise MalformedArchive(
                f"{label}: central directory lists {len(centrals)} entries, "
                f"zipfile sees {len(infos)}")

        entries: List[ZipEntry] = []
        seen = set()
        for info, central in zip(infos, centrals):
            if info.filename in seen:
                raise MalformedArchive(f"{label}: duplicate entry {info.filename!r}")
            seen.add(info.filename)
            local = _read_local_record(raw, info, label)
            entries.append(ZipEntry(info.filename, info, local, central, info.header_offset))

        _check_layout(raw, entries, cd_off + concat, label)
        return cls(entries, comment, label)

    # ── writing ──────────────────────────────────────────────────────────────
    def to_bytes(self) -> bytes:
        buf = io.BytesIO()
        new_off = {}
        for e in sorted(self.entries, key=lambda x: x.offset):
            buf.write(e.gap)
            new_off[id(e)] = buf.tell()
            buf.write(e.local)

        cd_start = buf.tell()
        for e in self.entries:
            off = new_off[id(e)]
            if off > 0xFFFFFFFF:
                raise MalformedArchive(f"{self.label}: output needs zip64 (not supported)")
            c = e.central
            buf.write(c[:_CFH_OFFSET_AT] + struct.pack('<I', off) + c[_CFH_OFFSET_AT + 4:])
        cd_size = buf.tell() - cd_start
        n = len(self.entries)
        if n > 0xFFFF or cd_start > 0xFFFFFFFF:
            raise MalformedArchive(f"{self.label}: output needs zip64 (not supported)")

        buf.write(struct.pack(_FMT_EOCD,
            _EOCD, 0, 0, n, n, cd_size, cd_start, len(self.comment)))
        buf.write(self.comment)
        return buf.getvalue()

    def write(self, dst: Union[str, Path]) -> None:
        atomic_write(Path(dst), self.to_bytes())


# ═══════════════════════════════════════════════════════════════════════════════
#  ①  P A R S I N G
# ═══════════════════════════════════════════════════════════════════════════════

def _read_eocd(raw: bytes, label: str) -> Tuple[int, int, bytes, int]:
    """Return (cd_offset, entry_count, comment, concat)."""
    pos = raw.rfind(_EOCD, max(0, len(raw) - _EOCD_LEN - 0xFFFF))
    while pos >= 0:
        if pos + _EOCD_LEN <= len(raw):
            cml = struct.unpack_from('<H', raw, pos + 20)[0]
            if pos + _EOCD_LEN + cml == len(raw):
                break
        pos = raw.rfind(_EOCD, 0, pos)
    if pos < 0:
        raise MalformedArchive(f"{label}: end of central directory not found")

    _, dsk, dsk_cd, n_disk, n, cd_size, cd_off, cml = struct.unpack_from(_FMT_EOCD, raw, pos)
    if raw[max(0, pos - 20):pos - 16] == _Z64L or 0xFFFF in (n, n_disk) or \
            0xFFFFFFFF in (cd_size, cd_off):
        raise MalformedArchive(f"{label}: zip64 archives are not supported")
    if dsk or dsk_cd or n != n_disk:
        raise MalformedArchive(f"{label}: multi-disk archives are not supported")

    concat = pos - cd_size - cd_off
    if concat < 0:
        raise MalformedArchive(f"{label}: central directory overruns EOCD")
    return cd_off, n, raw[pos + _EOCD_LEN:pos + _EOCD_LEN + cml], concat


def _read_central_records(raw: bytes, o: int, n: int, label: str) -> List[bytes]:
    records = []
    for _ in range(n):
        if raw[o:o + 4] != _CFH or o + _CFH_LEN > len(raw):
            raise MalformedArchive(f"{label}: bad central directory record at {o}")
        fnl, exl, cml = struct.unpack_from('<HHH', raw, o + 28)
        end = o + _CFH_LEN + fnl + exl + cml
        records.append(raw[o:end])
        o = end
    return records


def _read_local_record(raw: bytes, info: zipfile.ZipInfo, label: str) -> bytes:
    lo = info.header_offset
    if lo < 0 or lo + _LFH_LEN > len(raw) or raw[lo:lo + 4] != _LFH:
        raise MalformedArchive(f"{label}: {info.filename!r}: bad local header at {lo}")
    fnl, exl = struct.unpack_from('<HH', raw, lo + 26)
    end = lo + _LFH_LEN + fnl + exl + info.compress_size
    if info.flag_bits & FLAG_DESCRIPTOR:
        end += 16 if raw[end:end + 4] == _DD else 12
    if end > len(raw):
        raise MalformedArchive(f"{label}: {info.filename!r}: record truncated")
    return raw[lo:end]


def _check_layout(raw: bytes, entries: List[ZipEntry], cd_start: int, label: str) -> None:
    """
    Reject overlapping records. Bytes in front of each record become that
    entry's `gap`; bytes after the last record are reported and dropped.
    """
    pos = 0
    for e in sorted(entries, key=lambda x: x.offset):
        if e.offset < pos:
            raise MalformedArchive(f"{label}: {e.name!r} overlaps the previous entry")
        e.gap = raw[pos:e.offset]
        pos = e.offset + len(e.local)
    if pos > cd_start:
        raise MalformedArchive(f"{label}: entry data overlaps the central directory")
    dropped = cd_start - pos
    if dropped:
        logger.warning(f"{label}: {dropped} byte(s) between the last entry and the central "
                       f"directory (signing block?) will not be carried over")


# ═══════════════════════════════════════════════════════════════════════════════
#  ②  R E A D E R
# ═══════════════════════════════════════════════════════════════════════════════

def extract(archive: ZipArchive, name: str) -> bytes:
    """Return the decompressed content of entry `name` (exact match)."""
    entry = archive.find(name)
    if entry is None:
        raise EntryNotFound(name, archive.label)

    info = entry.info
    if info.flag_bits & FLAG_ENCRYPTED:
        raise MalformedArchive(f"{name!r} is encrypted")
    start = entry.data_offset()
    comp = entry.local[start:start + info.compress_size]

    if info.compress_type == zipfile.ZIP_STORED:
        data = comp
    elif info.compress_type == zipfile.ZIP_DEFLATED:
        try:
            data = zlib.decompress(comp, -15)
        except zlib.error as exc:
            raise MalformedArchive(f"{name!r}: corrupt deflate stream: {exc}") from exc
    else:
        raise MalformedArchive(f"{name!r}: unsupported compression method {info.compress_type}")

    if zlib.crc32(data) & 0xFFFFFFFF != info.CRC:
        raise MalformedArchive(f"{name!r}: CRC mismatch")
    return data


# ═══════════════════════════════════════════════════════════════════════════════
#  ③  R E W R I T E R
# ═══════════════════════════════════════════════════════════════════════════════

def replace_entry(archive: ZipArchive, name: str, data: bytes,
                  alignment: Optional[int] = 4) -> ZipArchive:
    """
    Return a new ZipArchive where entry `name` holds `data`.
    Every other entry is carried over as the same record bytes, in the
    same order. Raises EntryNotFound when `name` is absent.
    """
    for idx, old in enumerate(archive.entries):
        if old.name == name:
            break
    else:
        raise EntryNotFound(name, archive.label)

    new = _rebuild_entry(old, bytes(data), alignment)
    entries = list(archive.entries)
    entries[idx] = new
    logger.debug(
        f"{archive.label}: replaced {name!r} "
        f"({len(old.local)}B → {len(new.local)}B record), "
        f"{len(entries) - 1} entries kept verbatim")
    return ZipArchive(entries, archive.comment, archive.label)


def _rebuild_entry(old: ZipEntry, raw: bytes, alignment: Optional[int]) -> ZipEntry:
    (_, vneed, flags, _, ltime, ldate, _, _, _, fnl, exl) = \
        struct.unpack_from(_FMT_LFH, old.local, 0)
    fname_b = old.local[_LFH_LEN:_LFH_LEN + fnl]
    extra   = old.local[_LFH_LEN + fnl:_LFH_LEN + fnl + exl]

    # ── compression decision: STORE stays STORE, everything else deflates ──
    if old.compress_type == zipfile.ZIP_STORED:
        compress = zipfile.ZIP_STORED
        out_data = raw
    else:
        if old.compress_type != zipfile.ZIP_DEFLATED:
            logger.warning(f"{old.name!r}: method {old.compress_type} re-encoded as DEFLATE")
        compress = zipfile.ZIP_DEFLATED
        c = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
        out_data = c.compress(raw) + c.flush()

    crc = zlib.crc32(raw) & 0xFFFFFFFF
    # Clear data-descriptor bit (3); preserve UTF-8 flag (11)
    flags &= ~FLAG_DESCRIPTOR

    # ── padding: keep the record length congruent modulo `alignment` ─────
    if alignment and alignment > 1:
        unpadded = _LFH_LEN + fnl + len(extra) + len(out_data)
        pad = (len(old.local) - unpadded) % alignment
        if len(extra) + pad > 0xFFFF:
            raise MalformedArchive(f"{old.name!r}: extra field too large to pad")
        extra += b'\x00' * pad

    lfh = struct.pack(_FMT_LFH,
        _LFH, vneed, flags, compress, ltime, ldate,
        crc, len(out_data), len(raw), fnl, len(extra))
    local = lfh + fname_b + extra + out_data

    # ── Central Directory record: same metadata, new crc/sizes ───────────────
    (_, vmade, cvneed, _, _, ctime, cdate, _, _, _, cfnl, cexl, ccml,
     dsk, iat, eat, _) = struct.unpack_from(_FMT_CFH, old.central, 0)
    tail = old.central[_CFH_LEN:_CFH_LEN + cfnl + cexl + ccml]
    cfh = struct.pack(_FMT_CFH,
        _CFH, vmade, cvneed, flags, compress, ctime, cdate,
        crc, len(out_data), len(raw),
        cfnl, cexl, ccml, dsk, iat, eat, 0)       # offset patched at layout time
    central = cfh + tail

    info = copy.copy(old.info)
    info.compress_type = compress
    info.flag_bits = flags
    info.CRC = crc
    info.compress_size = len(out_data)
    info.file_size = len(raw)
    return ZipEntry(old.name, info, local, central, old.offset, old.gap)


# ═══════════════════════════════════════════════════════════════════════════════
#  ④  S T A G E D   W R I T E
# ═══════════════════════════════════════════════════════════════════════════════

def atomic_write(dst: Path, data: bytes) -> None:
    """
    Write `data` to a temp file next to `dst`, then os.replace() it over
    `dst`. The temp file is removed if anything fails.
    """
    dst = Path(dst)
    fd, tmp = tempfile.mkstemp(prefix=f".{dst.name}.", suffix=".tmp", dir=dst.parent)
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if dst.exists():
            shutil.copymode(dst, tmp)
        os.replace(tmp, dst)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise
