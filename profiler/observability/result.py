from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ExportResultCode(IntEnum):
    SUCCESS = 0
    FAILED = 1


@dataclass(frozen=True)
class ExportResult:
    """Outcome of one export call. Never retried."""

    code: ExportResultCode
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.code is ExportResultCode.SUCCESS

    @classmethod
    def success(cls) -> ExportResult:
        return cls(ExportResultCode.SUCCESS)

    @classmethod
    def failed(cls, error: BaseException) -> ExportResult:
        return cls(ExportResultCode.FAILED, error)
