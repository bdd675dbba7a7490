from __future__ import annotations

import json
import os
import stat
from pathlib import Path
from typing import Any, Callable, Sequence

import structlog

from profiler.observability.result import ExportResult


ResultCallback = Callable[[ExportResult], None]

_DIR_MODE = stat.S_IRWXU | stat.S_IRWXG | stat.S_IRWXO
_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH


class FileExporter:
    """Append-only JSON Lines sink.

    Construction creates the parent directory and an empty target file when
    they are missing; failures propagate so startup aborts. Each export opens
    the file, appends the whole batch in one write and closes it again.
    """

    kind = "records"

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self._shutdown = False
        self._log = structlog.get_logger("exporter").bind(sink=self.kind, path=str(self.path))

        log_dir = self.path.parent
        if not log_dir.exists():
            log_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(log_dir, _DIR_MODE)
        if not self.path.exists():
            self.path.touch()
            os.chmod(self.path, _FILE_MODE)

    def format_record(self, record: Any) -> str:
        if hasattr(record, "to_dict"):
            record = record.to_dict()
        return json.dumps(record, ensure_ascii=False, default=str)

    def export(self, records: Sequence[Any], result_callback: ResultCallback | None = None) -> ExportResult:
        if self._shutdown:
            return ExportResult.failed(RuntimeError("exporter is shut down"))

        # Nothing to write: skip the append (and the callback) so no stray newline lands in the file.
        if not records:
            return ExportResult.success()

        try:
            payload = "\n".join(self.format_record(r) for r in records) + "\n"
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(payload)
        except (OSError, TypeError, ValueError) as exc:
            self._log.error(f"{self.kind}_export_failed", error=str(exc), count=len(records))
            result = ExportResult.failed(exc)
        else:
            self._log.debug(f"{self.kind}_exported", count=len(records))
            result = ExportResult.success()

        if result_callback is not None:
            result_callback(result)
        return result

    def shutdown(self) -> None:
        self._shutdown = True

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown


class FileMetricsExporter(FileExporter):
    kind = "metrics"


class FileSpanExporter(FileExporter):
    kind = "spans"
