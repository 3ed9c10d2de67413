"""
Conversion history for mediashrink.

Every completed transition stores a before/after comparison (duration, size,
size per minute, codec, profile, bit depth) in a SQLite database under the
state directory.
"""

import datetime
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from mediashrink.probe import StreamRecord


@dataclass(frozen=True)
class StreamSummary:
    duration: float
    size: int
    size_per_minute: float
    codec: str
    profile: str
    bit_depth: int

    @classmethod
    def of(cls, size: int, duration: float, spm: float, video: Optional[StreamRecord]) -> "StreamSummary":
        if video is None:
            return cls(duration, size, spm, "", "", 0)
        bits = video.bits_per_raw_sample
        if bits is None:
            bits = 10 if "10" in video.pix_fmt or "10" in video.profile else 8
        return cls(duration, size, spm, video.codec_name, video.profile, bits)


@dataclass(frozen=True)
class Summary:
    source: StreamSummary
    destination: StreamSummary

    @property
    def saved_bytes(self) -> int:
        return self.source.size - self.destination.size

    def describe(self) -> str:
        s, d = self.source, self.destination
        return (
            f"duration {s.duration:.0f}s -> {d.duration:.0f}s, "
            f"size {s.size / 1024 / 1024:.1f} MB -> {d.size / 1024 / 1024:.1f} MB, "
            f"{s.size_per_minute:.1f} -> {d.size_per_minute:.1f} MB/min, "
            f"{s.codec} {s.profile} {s.bit_depth}-bit -> {d.codec} {d.profile} {d.bit_depth}-bit"
        )


_COLUMNS = ("duration", "size", "size_per_minute", "codec", "profile", "bit_depth")


class HistoryDB:
    """SQLite store of transition outcomes and their comparisons."""

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        state_dir.mkdir(parents=True, exist_ok=True)
        self._db_path = state_dir / "history.db"
        self._init_sqlite()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path))

    def _init_sqlite(self) -> None:
        """Initialize SQLite database."""
        side_columns = ",\n".join(
            f"{side}_{col} {'TEXT' if col in ('codec', 'profile') else 'REAL'}"
            for side in ("src", "dst")
            for col in _COLUMNS
        )
        conn = self._connect()
        conn.execute(f'''
            CREATE TABLE IF NOT EXISTS transitions (
                id INTEGER PRIMARY KEY,
                source_path TEXT NOT NULL,
                output_path TEXT,
                outcome TEXT NOT NULL,
                recorded_at TEXT NOT NULL,
                message TEXT,
                {side_columns}
            )
        ''')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_recorded ON transitions(recorded_at)')
        conn.commit()
        conn.close()

    def record(
        self,
        source_path: Path,
        output_path: Optional[Path],
        outcome: str,
        summary: Optional[Summary] = None,
        message: str = "",
    ) -> int:
        """Store one transition, return its row id."""
        values: Dict[str, object] = {
            "source_path": str(source_path),
            "output_path": str(output_path) if output_path else None,
            "outcome": outcome,
            "recorded_at": datetime.datetime.now().isoformat(),
            "message": message,
        }
        if summary is not None:
            for side, stats in (("src", summary.source), ("dst", summary.destination)):
                for col in _COLUMNS:
                    values[f"{side}_{col}"] = getattr(stats, col)

        names = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        conn = self._connect()
        cur = conn.execute(f"INSERT INTO transitions ({names}) VALUES ({marks})", tuple(values.values()))
        entry_id = cur.lastrowid or 0
        conn.commit()
        conn.close()
        return entry_id

    def get_recent(self, limit: int = 20) -> List[Dict]:
        """Get recent transitions, newest first."""
        conn = self._connect()
        conn.row_factory = sqlite3.Row
        rows = conn.execute(
            "SELECT * FROM transitions ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        conn.close()
        return [dict(r) for r in rows]

    def get_stats(self) -> Dict[str, int]:
        """Count of transitions per outcome, plus total bytes saved."""
        conn = self._connect()
        stats: Dict[str, int] = {}
        for outcome, count in conn.execute("SELECT outcome, COUNT(*) FROM transitions GROUP BY outcome"):
            stats[outcome] = count
        saved = conn.execute(
            "SELECT COALESCE(SUM(src_size - dst_size), 0) FROM transitions WHERE outcome = 'completed'"
        ).fetchone()[0]
        stats["saved_bytes"] = int(saved or 0)
        conn.close()
        return stats
