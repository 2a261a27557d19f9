from collections import Counter
from typing import List, Tuple


class PopularityTracker:
    """Counts how often each info-hash shows up in incoming get_peers/announce_peer."""

    def __init__(self):
        self.counts = Counter()

    def record(self, key: str, n: int = 1):
        self.counts[key] += n

    def items(self) -> List[Tuple[str, int]]:
        # copy in first-seen order so callers can sort without racing record()
        return list(self.counts.items())

    def top(self, n=10) -> List[Tuple[str, int]]:
        return sorted(self.items(), key=lambda kv: kv[1], reverse=True)[:n]

    def __len__(self):
        return len(self.counts)
