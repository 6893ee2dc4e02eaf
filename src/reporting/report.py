"""Apply reporting."""

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from common import to_jsonable

STATUS_MARKS = {
    'succeeded': '✅',
    'failed': '❌',
    'skipped': '⏭️',
    'cancelled': '⏹️',
}


@dataclass
class ApplyReport:
    """Writes JSON and markdown reports for an apply or destroy run."""
    stack: str
    report_dir: Path
    verb: str = 'apply'
    plan: Optional[dict] = None
    result: Optional[dict] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def start(self, plan: dict):
        """Mark run start."""
        self.started_at = datetime.now()
        self.plan = plan
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def finish(self, result: dict) -> list[Path]:
        """Finalize report and write files."""
        self.finished_at = datetime.now()
        self.result = result
        return [self._write_json(), self._write_markdown()]

    @property
    def success(self) -> bool:
        return bool(self.result and self.result.get('success'))

    def _duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        return {
            'stack': self.stack,
            'verb': self.verb,
            'success': self.success,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': self._duration(),
            'plan': self.plan,
            'result': to_jsonable(self.result),
        }

    def _write_json(self) -> Path:
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        status = 'SUCCEEDED' if self.success else 'FAILED'
        result = self.result or {}

        lines = [
            f"# {self.verb} {self.stack}",
            "",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self._duration():.1f}s",
            f"**State version**: {result.get('state_version', 'N/A')}",
            "",
            "## Resources",
            "",
            "| Resource | Action | Status | Duration | Message |",
            "|----------|--------|--------|----------|---------|",
        ]
        for entry in result.get('entries', []):
            mark = STATUS_MARKS.get(entry['status'], '❓')
            lines.append(
                f"| {entry['logical_id']} | {entry['action']} | {mark} {entry['status']} "
                f"| {entry.get('duration', 0):.1f}s | {entry.get('error', '')} |"
            )

        if result.get('aborted'):
            aborted = result['aborted']
            lines.extend(["", f"**Aborted**: {aborted['code']}: {aborted['message']}"])

        if result.get('outputs'):
            lines.extend(["", "## Outputs", "", "| Output | Value |", "|--------|-------|"])
            for name, value in result['outputs'].items():
                lines.append(f"| {name} | {value} |")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """Report filename: {timestamp}.{stack}.{verb}.{status}.{ext}"""
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'succeeded' if self.success else 'failed'
        stack_slug = self.stack.replace('/', '-')
        return self.report_dir / f"{timestamp}.{stack_slug}.{self.verb}.{status}.{ext}"
