"""Migration report generation.

A report combines the stored migration record, per-module progress, item
checkpoint counts and the failed items into one document, rendered as JSON
or Markdown.
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from store_migration.migration.checkpoint import CheckpointStore
from store_migration.migration.state import MigrationState
from store_migration.utils.logging import get_logger

logger = get_logger(__name__)


class MigrationReport:
    """Report of one migration.

    Usage:
        report = MigrationReport.build(state, checkpoints, migration_id)
        report.generate_json("reports/migration.json")
    """

    def __init__(self, migration_id: str, summary: dict[str, Any]):
        """
        Args:
            migration_id: Migration identifier
            summary: Collected report data (see ``build``)
        """
        self.migration_id = migration_id
        self.summary = summary
        self.generated_at = datetime.now(UTC)

    @classmethod
    def build(
        cls,
        state: MigrationState,
        checkpoints: CheckpointStore,
        migration_id: str,
        failed_limit: int = 100,
        log_limit: int = 500,
    ) -> "MigrationReport":
        """Collect everything known about a migration."""
        migration = state.get_migration(migration_id)
        counts = checkpoints.status_counts(migration_id)

        modules = {}
        for module in migration.selected:
            progress = migration.progress.get(module.value)
            module_counts = counts.get(module.value, {})
            modules[module.value] = {
                "percentage": progress.percentage if progress else 0,
                "processed": progress.processed if progress else 0,
                "total": progress.total if progress else 0,
                "completed": module_counts.get("completed", 0),
                "failed": module_counts.get("failed", 0),
                "pending": module_counts.get("pending", 0),
            }

        failed = [
            {
                "source_id": item.source_id,
                "retry_count": item.retry_count,
                "error": item.error_message,
            }
            for item in checkpoints.failed_items(migration_id, limit=failed_limit)
        ]

        summary = migration.to_dict()
        summary["modules"] = modules
        summary["failed_items"] = failed
        summary["jobs"] = [
            {"module": job.module, "status": job.status, "attempts": job.attempts, "error": job.last_error}
            for job in state.list_jobs(migration_id=migration_id)
        ]
        summary["logs"] = state.list_logs(migration_id, limit=log_limit)
        return cls(migration_id, summary)

    def statistics(self) -> dict[str, Any]:
        modules = self.summary.get("modules", {})
        completed = sum(m["completed"] for m in modules.values())
        failed = sum(m["failed"] for m in modules.values())
        attempted = completed + failed
        return {
            "items_completed": completed,
            "items_failed": failed,
            "success_rate": (completed / attempted * 100) if attempted else 100.0,
            "module_errors": len(self.summary.get("errors", [])),
        }

    def generate_json(self, output_path: str | Path | None = None) -> str:
        """Generate the JSON report, optionally saving it."""
        report = {
            "report_version": "1.0",
            "generated_at": self.generated_at.isoformat(),
            "migration_id": self.migration_id,
            "summary": self.summary,
            "statistics": self.statistics(),
        }
        json_str = json.dumps(report, indent=2, default=str)
        if output_path:
            _write(output_path, json_str)
            logger.info("json_report_saved", path=str(output_path))
        return json_str

    def generate_markdown(self, output_path: str | Path | None = None) -> str:
        """Generate the Markdown report, optionally saving it."""
        stats = self.statistics()
        lines = [
            "# Store Migration Report",
            "",
            f"**Migration ID:** `{self.migration_id}`  ",
            f"**Generated:** {self.generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}  ",
            f"**Status:** {self.summary.get('status', 'unknown')}  ",
            f"**Source:** {self.summary.get('source_store')}  ",
            f"**Destination:** {self.summary.get('destination_store')}  ",
            "",
            "## Modules",
            "",
            "| Module | Progress | Completed | Failed |",
            "|--------|---------:|----------:|-------:|",
        ]
        for module, data in self.summary.get("modules", {}).items():
            lines.append(
                f"| {module} | {data['percentage']}% | {data['completed']:,} | {data['failed']:,} |"
            )
        lines.extend(
            [
                "",
                f"Success rate: {stats['success_rate']:.1f}%",
                "",
            ]
        )

        errors = self.summary.get("errors", [])
        if errors:
            lines.extend(["## Module Errors", ""])
            for error in errors:
                lines.append(f"- **{error.get('module')}** ({error.get('timestamp')}): {error.get('error')}")
            lines.append("")

        failed = self.summary.get("failed_items", [])
        if failed:
            lines.extend(["## Failed Items", ""])
            for item in failed[:20]:
                lines.append(
                    f"- `{item['source_id']}` after {item['retry_count']} attempt(s): {item['error']}"
                )
            if len(failed) > 20:
                lines.append(f"*... and {len(failed) - 20} more*")
            lines.append("")

        md = "\n".join(lines)
        if output_path:
            _write(output_path, md)
            logger.info("markdown_report_saved", path=str(output_path))
        return md


def _write(output_path: str | Path, content: str) -> None:
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
