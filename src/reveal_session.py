"""
Cumulative follower count carried between runs.

Stored as a single integer in <source image file name>.state. Read once at
start, written once after a fully successful run.
"""
from pathlib import Path


class SessionCounter:
    def __init__(self, state_file):
        self.path = Path(state_file)

    def load(self) -> int:
        """Missing or unparseable -> 0."""
        if not self.path.exists():
            return 0
        try:
            count = int(self.path.read_text(encoding="utf-8").strip())
        except ValueError:
            return 0
        return max(0, count)

    def save(self, total: int) -> None:
        self.path.write_text(str(int(total)), encoding="utf-8")
        print(f"[Session] Saved current total of {total} followers to '{self.path}'.")
