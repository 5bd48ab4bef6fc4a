from __future__ import annotations

import json
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from gruntforge.observability import get_logger

_log = get_logger('gruntforge.workspace')

RESULT_DIRS = ('execution-logs', 'generated-code', 'quality-reports')


@dataclass(frozen=True)
class RunWorkspace:
    root: Path
    workspace_dir: Path
    task_dir: Path
    results_dir: Path
    compose_file: Path
    discussion_html: Path
    summary_md: Path
    events_jsonl: Path

    def worker_dir(self, worker_id: str) -> Path:
        return self.task_dir / str(worker_id)


class WorkspaceLifecycleManager:
    """Owns the run-scoped directory tree under ``<root>/runs/<run id>``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def open(self, run_id: str) -> RunWorkspace:
        run_id_text, run_root = self._resolve_run_root(run_id)
        workspace_dir = run_root / 'workspace'
        task_dir = workspace_dir / 'task1'
        results_dir = run_root / 'results'
        task_dir.mkdir(parents=True, exist_ok=True)
        for name in RESULT_DIRS:
            (results_dir / name).mkdir(parents=True, exist_ok=True)
        events_jsonl = run_root / 'events.jsonl'
        summary_md = run_root / 'summary.md'
        self._ensure_text(events_jsonl, '')
        self._ensure_text(summary_md, f'# Summary {run_id_text}\n\n')
        return RunWorkspace(
            root=run_root,
            workspace_dir=workspace_dir,
            task_dir=task_dir,
            results_dir=results_dir,
            compose_file=run_root / 'docker-compose.json',
            discussion_html=run_root / 'discussion.html',
            summary_md=summary_md,
            events_jsonl=events_jsonl,
        )

    def reset(self, run_id: str) -> list[Path]:
        """Delete a previous attempt's generated output and recreate the tree.

        Missing paths are fine; anything else that cannot be removed is
        logged and skipped so a stubborn leftover never blocks a run.
        """
        _, run_root = self._resolve_run_root(run_id)
        workspace_dir = run_root / 'workspace'
        results_dir = run_root / 'results'
        candidates: list[Path] = [
            workspace_dir / 'src',
            workspace_dir / 'generated-code',
            results_dir / 'generated-code',
            results_dir / 'execution-logs',
        ]
        task_dir = workspace_dir / 'task1'
        if task_dir.is_dir():
            candidates.extend(sorted(item for item in task_dir.iterdir() if item.is_dir()))
        if workspace_dir.is_dir():
            for item in sorted(workspace_dir.iterdir()):
                lowered = item.name.lower()
                if 'worker' in lowered or 'output' in lowered:
                    candidates.append(item)

        removed: list[Path] = []
        for path in candidates:
            if not path.exists():
                continue
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
                removed.append(path)
            except OSError as exc:
                _log.warning('workspace_reset_skip path=%s error=%s', path, exc)
        self.open(run_id)
        _log.info('workspace_reset run_id=%s removed=%d', run_id, len(removed))
        return removed

    def append_event(self, run_id: str, event: dict) -> None:
        ws = self.open(run_id)
        payload = dict(event)
        payload.setdefault('ts', self._utc_now_iso())
        line = json.dumps(payload, ensure_ascii=True, default=str)
        with ws.events_jsonl.open('a', encoding='utf-8') as f:
            f.write(line + '\n')

    def write_artifact_json(self, run_id: str, *, category: str, name: str, payload: dict) -> Path:
        ws = self.open(run_id)
        folder = str(category or '').strip()
        if folder not in RESULT_DIRS:
            raise ValueError(f'unknown artifact category: {category}')
        safe_name = str(name or '').strip()
        if not safe_name:
            raise ValueError('artifact name is required')
        safe_name = safe_name.replace('\\', '_').replace('/', '_')
        if not safe_name.endswith('.json'):
            safe_name += '.json'
        path = ws.results_dir / folder / safe_name
        path.write_text(json.dumps(payload, ensure_ascii=True, indent=2, default=str), encoding='utf-8')
        return path

    def write_summary(self, run_id: str, content: str) -> Path:
        ws = self.open(run_id)
        ws.summary_md.write_text(f'# Summary {run_id}\n\n' + (content or '').strip() + '\n', encoding='utf-8')
        return ws.summary_md

    def write_discussion(self, run_id: str, html: str) -> Path:
        ws = self.open(run_id)
        ws.discussion_html.write_text(html or '', encoding='utf-8')
        return ws.discussion_html

    def _resolve_run_root(self, run_id: str) -> tuple[str, Path]:
        run_id_text = str(run_id or '').strip()
        if not run_id_text:
            raise ValueError('run_id is required')
        runs_root = (self.root / 'runs').resolve()
        run_root = (runs_root / run_id_text).resolve(strict=False)
        try:
            run_root.relative_to(runs_root)
        except ValueError as exc:
            raise ValueError('invalid run_id') from exc
        if run_root == runs_root:
            raise ValueError('invalid run_id')
        return run_id_text, run_root

    @staticmethod
    def _ensure_text(path: Path, content: str) -> None:
        if not path.exists():
            path.write_text(content, encoding='utf-8')

    @staticmethod
    def _utc_now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()
