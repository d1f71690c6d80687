from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Protocol

import clamd

from upload_scanner.core.config import settings


logger = logging.getLogger(__name__)


class ScanEngineError(Exception):
    """The scan engine could not be reached or could not scan the file."""


class ScanVerdict(str, Enum):
    clean = "clean"
    infected = "infected"


@dataclass(frozen=True)
class ScanResult:
    verdict: ScanVerdict
    raw_report: str

    @property
    def infected(self) -> bool:
        return self.verdict == ScanVerdict.infected


class Scanner(Protocol):
    def scan(self, local_path: Path | str) -> ScanResult: ...


def _format_report_line(path: str, status: str, reason: str | None) -> str:
    # Same shape clamd uses on the wire: "<path>: OK" / "<path>: <signature> FOUND"
    if reason:
        return f"{path}: {reason} {status}"
    return f"{path}: {status}"


class ClamAVScanner:
    """
    Scans files that already sit in a directory shared with clamd.

    ``local_root`` is the scratch directory as the worker sees it; ``engine_root`` is the
    same directory as mounted inside the clamd container.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        *,
        timeout: float | None = None,
        local_root: Path | str | None = None,
        engine_root: str | None = None,
    ) -> None:
        self.host = host or settings.CLAMAV_HOST
        self.port = port or settings.CLAMAV_PORT
        self.timeout = timeout if timeout is not None else settings.CLAMAV_TIMEOUT_SECONDS
        self.local_root = Path(local_root or settings.SCAN_DIRECTORY)
        self.engine_root = engine_root or settings.CLAMAV_SCAN_DIRECTORY

    def _client(self):
        return clamd.ClamdNetworkSocket(host=self.host, port=self.port, timeout=self.timeout)

    def engine_path(self, local_path: Path | str) -> str:
        relative = Path(local_path).resolve().relative_to(self.local_root.resolve())
        return str(PurePosixPath(self.engine_root).joinpath(*relative.parts))

    def ping(self) -> bool:
        try:
            return self._client().ping() == "PONG"
        except (clamd.ClamdError, OSError):
            return False

    def scan(self, local_path: Path | str) -> ScanResult:
        path = self.engine_path(local_path)
        logger.info("Sending %s to clamd at %s:%s", path, self.host, self.port)
        try:
            response = self._client().multiscan(path)
        except (clamd.ClamdError, OSError) as exc:
            raise ScanEngineError(f"clamd scan of {path} failed: {exc}") from exc

        if not response:
            raise ScanEngineError(f"clamd returned no result for {path}")

        lines: list[str] = []
        infected = False
        for scanned_path, (status, reason) in response.items():
            lines.append(_format_report_line(scanned_path, status, reason))
            if status == "FOUND":
                infected = True
            elif status == "ERROR":
                raise ScanEngineError(f"clamd could not scan {scanned_path}: {reason}")

        verdict = ScanVerdict.infected if infected else ScanVerdict.clean
        logger.info("clamd scan of %s completed: %s", path, verdict.value)
        return ScanResult(verdict=verdict, raw_report="\n".join(lines))
