"""Monitoring and reporting tools for content store."""

import json
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from blobsync.content_store.store import ContentStore
from blobsync.core.hashing import is_valid_hash
from blobsync.core.logging import get_logger

if TYPE_CHECKING:
    from blobsync.ledger import UsageLedger

logger = get_logger("blobsync.content_store.monitor")


class CacheMonitor:
    """Monitor and report on cache usage against its budget."""

    def __init__(
        self,
        content_store: ContentStore,
        budget_bytes: int,
        ledger: Optional["UsageLedger"] = None,
    ):
        """Initialize monitor with content store instance.

        Args:
            content_store: ContentStore instance to monitor
            budget_bytes: Configured size budget
            ledger: Optional usage ledger for peer usage figures
        """
        self.content_store = content_store
        self.budget_bytes = budget_bytes
        self.ledger = ledger

    def get_statistics(self) -> Dict[str, Any]:
        """Get enhanced statistics from content store.

        Returns:
            Dictionary with detailed statistics
        """
        basic_stats = self.content_store.get_statistics()
        size = basic_stats["store_size_bytes"]

        return {
            **basic_stats,
            "budget_bytes": self.budget_bytes,
            "budget_utilization": size / self.budget_bytes if self.budget_bytes > 0 else 0,
            "store_size_mb": size / (1024 * 1024),
        }

    def get_largest_entries(self, limit: int = 10) -> List[Dict[str, Any]]:
        entries = sorted(
            self.content_store.enumerate(), key=lambda e: e.size_bytes, reverse=True
        )[:limit]
        return [
            {
                "hash": e.hash,
                "size_bytes": e.size_bytes,
                "last_accessed_at": e.last_accessed_at.isoformat(),
            }
            for e in entries
        ]

    def get_access_timeline(self, days: int = 7) -> List[Dict[str, Any]]:
        """Count entries by the day they were last accessed.

        Args:
            days: Number of days to look back

        Returns:
            List of daily statistics, oldest first
        """
        start = datetime.now(timezone.utc) - timedelta(days=days)
        buckets: Dict[str, Dict[str, int]] = defaultdict(lambda: {"entries": 0, "bytes": 0})

        for entry in self.content_store.enumerate():
            if entry.last_accessed_at < start:
                continue
            day = entry.last_accessed_at.date().isoformat()
            buckets[day]["entries"] += 1
            buckets[day]["bytes"] += entry.size_bytes

        return [{"date": day, **counts} for day, counts in sorted(buckets.items())]

    def get_usage_summary(self, limit: int = 10) -> Dict[str, Any]:
        """Summarize peer usage recorded in the ledger.

        Returns:
            Dictionary with the most seen hashes and how many are cached
        """
        if self.ledger is None:
            return {"tracked_hashes": 0, "most_seen": []}

        usage = self.ledger.aggregated_usage()
        most_seen = sorted(usage.items(), key=lambda item: item[1].seen_count, reverse=True)[
            :limit
        ]
        return {
            "tracked_hashes": len(usage),
            "most_seen": [
                {
                    "hash": content_hash,
                    "seen_count": stats.seen_count,
                    "last_seen": stats.last_seen.isoformat() if stats.last_seen else None,
                    "cached": is_valid_hash(content_hash) and self.content_store.has(content_hash),
                }
                for content_hash, stats in most_seen
            ],
        }

    def generate_report(self) -> Dict[str, Any]:
        """Generate comprehensive monitoring report.

        Returns:
            Dictionary with full report data
        """
        stats = self.get_statistics()
        report = {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "statistics": stats,
            "largest_entries": self.get_largest_entries(),
            "access_timeline": self.get_access_timeline(),
            "usage": self.get_usage_summary(),
        }
        report["summary"] = {
            "total_content": stats.get("total_content", 0),
            "over_budget": stats["store_size_bytes"] > self.budget_bytes,
            "budget_utilization": stats["budget_utilization"],
        }
        return report

    def export_report(self, output_path: Path) -> None:
        """Export monitoring report to file.

        Args:
            output_path: Path where to save the report
        """
        report = self.generate_report()

        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            json.dump(report, f, indent=2)
        logger.info("report_exported", path=str(output_path))

    def print_summary(self) -> None:
        """Print a human-readable summary to console."""
        stats = self.get_statistics()

        print("\n=== Cache Summary ===")
        print(f"Entries: {stats['total_content']:,}")
        print(f"Store Size: {stats['store_size_mb']:.2f} MB")
        print(f"Budget: {self.budget_bytes / (1024 ** 3):.2f} GiB")
        print(f"Utilization: {stats['budget_utilization']:.1%}")
        if stats["oldest_access"]:
            print(f"Oldest access: {stats['oldest_access']}")

        usage = self.get_usage_summary(limit=5)
        if usage["most_seen"]:
            print("\n=== Most Seen Hashes ===")
            for item in usage["most_seen"]:
                marker = "cached" if item["cached"] else "missing"
                print(f"{item['hash'][:16]}...: {item['seen_count']} sightings ({marker})")
