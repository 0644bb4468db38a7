from __future__ import annotations
import base64
import binascii
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class LogChunk:
    entries: List[str]
    cursor: str
    truncated: bool


def encode_cursor(pos: int, size: int) -> str:
    payload = {"pos": pos, "size": size}
    return base64.urlsafe_b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Optional[dict]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        data = json.loads(raw)
    except (binascii.Error, UnicodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def list_logs(*dirs: Path) -> List[Dict]:
    """Log files of one server: the game's own logs and the launcher's console capture."""
    out = []
    for d in dirs:
        if not d.is_dir():
            continue
        for p in sorted(d.glob("*.log")):
            st = p.stat()
            out.append({
                "id": p.stem,  # ShooterGame, <name>.console, ...
                "path": str(p),
                "size_bytes": st.st_size,
                "modified": int(st.st_mtime),
            })
    return out


def find_log(log_id: str, *dirs: Path) -> Optional[Path]:
    if "/" in log_id or "\\" in log_id or log_id.startswith("."):
        return None
    for d in dirs:
        p = d / f"{log_id}.log"
        if p.is_file():
            return p
    return None


def read_tail(path: Path, tail_lines: int = 200, max_bytes: int = 256_000) -> LogChunk:
    size = path.stat().st_size
    read_from = max(0, size - max_bytes)
    with path.open("rb") as f:
        f.seek(read_from)
        data = f.read()
    lines = data.decode("utf-8", errors="replace").splitlines()
    chunk = lines[-tail_lines:] if tail_lines > 0 else lines
    return LogChunk(entries=chunk, cursor=encode_cursor(size, size), truncated=len(lines) > len(chunk))


def read_from_cursor(path: Path, cursor: str, max_lines: int = 200, max_bytes: int = 256_000) -> LogChunk:
    size = path.stat().st_size
    decoded = decode_cursor(cursor) or {"pos": 0, "size": 0}
    pos = int(decoded.get("pos", 0))
    # file was truncated or rotated: start over
    if pos > size:
        pos = 0

    with path.open("rb") as f:
        f.seek(pos)
        data = f.read(max_bytes)

    raw_lines = data.split(b"\n")
    # last element is either b"" (data ended on newline) or a partial line
    complete, partial = raw_lines[:-1], raw_lines[-1]
    if not complete and partial and len(data) < max_bytes:
        # no newline yet; wait for the writer
        return LogChunk(entries=[], cursor=encode_cursor(pos, size), truncated=False)
    if not complete:
        complete, partial = [partial], b""

    out = complete[:max_lines]
    truncated = len(complete) > len(out) or bool(partial)
    consumed = sum(len(line) + 1 for line in out)
    next_pos = min(size, pos + consumed)
    entries = [line.rstrip(b"\r").decode("utf-8", errors="replace") for line in out]
    return LogChunk(entries=entries, cursor=encode_cursor(next_pos, size), truncated=truncated)
