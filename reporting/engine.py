"""
Document Engine - Interface and Process Lifecycle Management

The PDF step drives an external, stateful document engine. This module
owns everything about that resource except the conversion logic itself:

- DocumentEngine / EngineDocument: the operations the converter needs.
- HostProcesses: finds and force-kills engine processes host-wide.
- EngineSession: scoped guard. Serialises sessions per process name,
  kills stray processes before launch, and on every exit path closes the
  open document without saving, stops the engine, kills strays again and
  polls until teardown is confirmed.
- WorkingDirectory: per-request temp directory removed on every exit path.

Cleanup never raises; failures are logged as warnings.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Final, Optional, Sequence

from core.errors import EngineError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_LOCK_TIMEOUT_SECONDS: Final[float] = 300.0
DEFAULT_SETTLE_TIMEOUT_SECONDS: Final[float] = 10.0
POLL_INTERVAL_SECONDS: Final[float] = 0.2
COMMAND_TIMEOUT_SECONDS: Final[int] = 15


# =============================================================================
# Engine Interface
# =============================================================================


class OpenMode(Enum):
    """How a document is opened."""

    REPAIR = "repair"          # interactive instance, auto-repair confirmed
    SIMPLE = "simple"
    EXPLICIT = "explicit"      # full parameter list
    READ_ONLY = "read_only"


# Reopen sequence after a failed repair
FALLBACK_OPEN_MODES: Final[tuple[OpenMode, ...]] = (
    OpenMode.SIMPLE,
    OpenMode.EXPLICIT,
    OpenMode.READ_ONLY,
)


@dataclass(frozen=True)
class PageSetup:
    """Print settings applied to every exported sheet. Margins in inches."""

    fit_to_width: int = 1
    fit_to_height: int = 0  # 0 = as many pages tall as needed
    margin_left: float = 0.5
    margin_right: float = 0.5
    margin_top: float = 0.75
    margin_bottom: float = 0.75
    margin_header: float = 0.3
    margin_footer: float = 0.3
    dpi: int = 600
    draft: bool = False
    black_and_white: bool = False
    print_gridlines: bool = False
    print_headings: bool = False
    print_notes: bool = False


class EngineDocument(ABC):
    """An open document inside the engine."""

    @abstractmethod
    def sheet_names(self) -> list[str]:
        ...

    @abstractmethod
    def set_sheet_visible(self, name: str, visible: bool) -> None:
        ...

    @abstractmethod
    def activate_sheet(self, name: str) -> None:
        ...

    @abstractmethod
    def apply_page_setup(self, name: str, setup: PageSetup) -> None:
        ...

    @abstractmethod
    def export_pdf(self, sheets: Sequence[str], output_dir: Path, *, minimal: bool = False) -> Path:
        """
        Export the given sheets as one PDF.

        ``minimal`` drops every quality and page-range argument.
        """

    @abstractmethod
    def export_sheet_pdf(self, sheet: str, output_dir: Path) -> Path:
        """Export a single sheet to its own PDF."""

    @abstractmethod
    def close(self, save: bool = False) -> None:
        ...


class DocumentEngine(ABC):
    """An external document-automation engine."""

    process_name: str = ""

    @abstractmethod
    def start(self, interactive: bool) -> None:
        """Launch the engine. Interactive instances auto-confirm repair prompts."""

    @abstractmethod
    def open(self, path: Path, mode: OpenMode) -> EngineDocument:
        """
        Open a document.

        Raises:
            CorruptionError: If the document cannot be read in this mode
            EngineError: If the engine is not in a state that allows the mode
        """

    @abstractmethod
    def stop(self) -> None:
        """Terminate the engine instance started by ``start``."""

    @abstractmethod
    def is_running(self) -> bool:
        ...


# =============================================================================
# Host Processes
# =============================================================================


class HostProcesses:
    """Host-wide process lookup and force-kill by executable name."""

    def __init__(self, timeout: int = COMMAND_TIMEOUT_SECONDS):
        self._timeout = timeout

    def _run(self, command: list[str]) -> subprocess.CompletedProcess:
        return subprocess.run(command, capture_output=True, text=True, timeout=self._timeout)

    def running(self, name: str) -> bool:
        """True if any process with this exact name is alive."""
        try:
            if os.name == "nt":
                result = self._run(["tasklist", "/FI", f"IMAGENAME eq {name}", "/NH"])
                return name.lower() in result.stdout.lower()
            result = self._run(["pgrep", "-x", name])
            return result.returncode == 0
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Could not query processes named {name}: {e}")
            return False

    def kill(self, name: str) -> None:
        """Force-kill every process with this name. Failures are logged."""
        try:
            if os.name == "nt":
                self._run(["taskkill", "/F", "/T", "/IM", name])
            else:
                self._run(["pkill", "-9", "-x", name])
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Could not kill stray {name} processes: {e}")


# =============================================================================
# Engine Locks
# =============================================================================

_ENGINE_LOCKS: dict[str, threading.Lock] = {}
_ENGINE_LOCKS_GUARD = threading.Lock()


def engine_lock(process_name: str) -> threading.Lock:
    """The lock serialising sessions of one engine executable in this process."""
    with _ENGINE_LOCKS_GUARD:
        if process_name not in _ENGINE_LOCKS:
            _ENGINE_LOCKS[process_name] = threading.Lock()
        return _ENGINE_LOCKS[process_name]


def wait_until(condition, timeout: float, interval: float = POLL_INTERVAL_SECONDS) -> bool:
    """Poll ``condition`` until it returns True or the timeout passes."""
    deadline = time.monotonic() + timeout
    while True:
        if condition():
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)


# =============================================================================
# Session Guard
# =============================================================================


class EngineSession:
    """
    Scoped ownership of the engine for one conversion.

    Usage:
        with EngineSession(engine) as session:
            document = session.open(path, OpenMode.REPAIR)
            ...
    """

    def __init__(
        self,
        engine: DocumentEngine,
        processes: Optional[HostProcesses] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        settle_timeout: float = DEFAULT_SETTLE_TIMEOUT_SECONDS,
    ):
        self.engine = engine
        self.processes = processes or HostProcesses()
        self.lock_timeout = lock_timeout
        self.settle_timeout = settle_timeout
        self.document: Optional[EngineDocument] = None
        self.interactive = False
        self._lock = engine_lock(engine.process_name)
        self._locked = False

    def __enter__(self) -> "EngineSession":
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise EngineError(
                f"Timed out after {self.lock_timeout:.0f}s waiting for the document engine"
            )
        self._locked = True
        try:
            self._kill_strays()
            self._launch(interactive=True)
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def _kill_strays(self) -> None:
        name = self.engine.process_name
        if not name:
            return
        self.processes.kill(name)
        if not wait_until(lambda: not self.processes.running(name), self.settle_timeout):
            logger.warning(f"Stray {name} processes still present after {self.settle_timeout}s")

    def _launch(self, interactive: bool) -> None:
        logger.info(f"Starting document engine ({'interactive' if interactive else 'non-interactive'})")
        self.engine.start(interactive=interactive)
        self.interactive = interactive

    def _stop_engine(self) -> None:
        self.engine.stop()
        if not wait_until(lambda: not self.engine.is_running(), self.settle_timeout):
            logger.warning(f"Document engine did not exit within {self.settle_timeout}s")

    def open(self, path: Path, mode: OpenMode) -> EngineDocument:
        """Open a document and track it for cleanup."""
        document = self.engine.open(path, mode)
        self.document = document
        return document

    def restart(self, interactive: bool) -> None:
        """Tear the engine down completely and start a fresh instance."""
        self._close_document()
        self._stop_engine()
        self._kill_strays()
        self._launch(interactive=interactive)

    def _close_document(self) -> None:
        if self.document is None:
            return
        document, self.document = self.document, None
        try:
            document.close(save=False)
        except Exception as e:
            logger.warning(f"Error closing document: {e}")

    def _release(self) -> None:
        if self._locked:
            self._locked = False
            self._lock.release()

    def close(self) -> None:
        """Release everything. Safe to call more than once; never raises."""
        try:
            self._close_document()
            try:
                self._stop_engine()
            except Exception as e:
                logger.warning(f"Error stopping document engine: {e}")
            try:
                self._kill_strays()
            except Exception as e:
                logger.warning(f"Error killing stray engine processes: {e}")
        finally:
            self._release()


# =============================================================================
# Working Directory
# =============================================================================


class WorkingDirectory:
    """Unique per-request temp directory, removed with its contents on exit."""

    def __init__(self, root: Optional[str | Path] = None, prefix: str = "report-pdf-"):
        self._root = Path(root) if root else None
        self._prefix = prefix
        self.path: Optional[Path] = None

    def __enter__(self) -> "WorkingDirectory":
        if self._root:
            self._root.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=self._prefix, dir=self._root))
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.cleanup()
        return False

    def file(self, name: str) -> Path:
        if self.path is None:
            raise RuntimeError("Working directory not created")
        return self.path / name

    def cleanup(self) -> list[str]:
        """
        Delete every file, then the directory.

        Returns:
            Descriptions of anything that could not be removed
        """
        if self.path is None or not self.path.exists():
            return []

        failures: list[str] = []
        for entry in sorted(self.path.rglob("*"), reverse=True):
            try:
                if entry.is_dir() and not entry.is_symlink():
                    entry.rmdir()
                else:
                    entry.unlink()
            except OSError as e:
                failures.append(f"{entry.name}: {e}")

        try:
            self.path.rmdir()
        except OSError:
            shutil.rmtree(self.path, ignore_errors=True)
            if self.path.exists():
                failures.append(f"{self.path.name}: directory not removed")

        for failure in failures:
            logger.warning(f"Cleanup failed for {failure}")
        return failures
