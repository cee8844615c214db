"""File reading and directory listing ports.

Two implementations ship here: ``LocalFileSystem`` backed by the real disk
and ``InMemoryFileSystem``, a deterministic double used by tests so the
parser, processor and reconciler run without touching a disk.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Optional, Protocol

from ccjsonl.errors import FileReaderError, FileSystemError
from ccjsonl.models import FileStat


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    is_dir: bool
    is_file: bool


class FileReader(Protocol):
    async def read_file(self, file_path: str, encoding: str = "utf-8") -> str: ...

    async def file_exists(self, file_path: str) -> bool: ...


class FileSystemManager(Protocol):
    async def read_directory(self, path: str) -> list[DirectoryEntry]: ...

    async def stat(self, file_path: str) -> FileStat: ...


def matches_pattern(root: str | Path, file_path: str | Path, pattern: str) -> bool:
    """Return True when ``file_path`` lies under ``root`` and matches the glob ``pattern``."""
    try:
        relative = PurePath(file_path).relative_to(PurePath(root))
    except ValueError:
        return False
    if not relative.parts:
        return False
    if relative.match(pattern):
        return True
    # "**/x" should also match files directly under the root.
    if pattern.startswith("**/"):
        return relative.match(pattern[3:]) and len(relative.parts) == 1
    return False


class LocalFileSystem:
    """Disk-backed FileReader + FileSystemManager."""

    async def read_file(self, file_path: str, encoding: str = "utf-8") -> str:
        """Invalid bytes come back as lone surrogates; the parser skips those lines."""
        try:
            return await asyncio.to_thread(
                Path(file_path).read_text, encoding=encoding, errors="surrogateescape"
            )
        except (OSError, UnicodeDecodeError) as e:
            raise FileReaderError(f"Failed to read file: {file_path}", cause=e) from e

    async def file_exists(self, file_path: str) -> bool:
        try:
            await asyncio.to_thread(Path(file_path).stat)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise FileReaderError(f"Failed to check file existence: {file_path}", cause=e) from e
        return True

    async def read_directory(self, path: str) -> list[DirectoryEntry]:
        def _scan() -> list[DirectoryEntry]:
            entries = []
            for child in Path(path).iterdir():
                entries.append(
                    DirectoryEntry(
                        name=child.name,
                        is_dir=child.is_dir() and not child.is_symlink(),
                        is_file=child.is_file(),
                    )
                )
            return entries

        try:
            return await asyncio.to_thread(_scan)
        except OSError as e:
            raise FileSystemError(f"Failed to read directory: {path}", cause=e) from e

    async def stat(self, file_path: str) -> FileStat:
        try:
            st = await asyncio.to_thread(Path(file_path).stat)
        except OSError as e:
            raise FileSystemError(f"Failed to stat file: {file_path}", cause=e) from e
        return FileStat(size=st.st_size, mtime=st.st_mtime)


@dataclass
class _MemoryFile:
    content: str
    mtime: float


class InMemoryFileSystem:
    """Deterministic in-memory FileReader + FileSystemManager.

    Directories are implied by file paths. Modification times come from an
    internal counter unless passed explicitly, so every write is strictly
    newer than the one before it.
    """

    def __init__(self) -> None:
        self._files: dict[str, _MemoryFile] = {}
        self._clock = 1_000.0
        self._failing_reads: set[str] = set()
        self._failing_dirs: set[str] = set()
        self._dirs: set[str] = set()

    # -- test helpers ------------------------------------------------

    def _tick(self, mtime: Optional[float]) -> float:
        if mtime is not None:
            self._clock = max(self._clock, mtime)
            return mtime
        self._clock += 1.0
        return self._clock

    def write(self, file_path: str, content: str, mtime: Optional[float] = None) -> None:
        self._files[str(PurePath(file_path))] = _MemoryFile(content=content, mtime=self._tick(mtime))

    def append(self, file_path: str, content: str, mtime: Optional[float] = None) -> None:
        key = str(PurePath(file_path))
        existing = self._files.get(key)
        base = existing.content if existing else ""
        self._files[key] = _MemoryFile(content=base + content, mtime=self._tick(mtime))

    def make_dir(self, path: str) -> None:
        self._dirs.add(str(PurePath(path)))

    def remove(self, file_path: str) -> None:
        self._files.pop(str(PurePath(file_path)), None)

    def fail_reads(self, file_path: str, enabled: bool = True) -> None:
        key = str(PurePath(file_path))
        if enabled:
            self._failing_reads.add(key)
        else:
            self._failing_reads.discard(key)

    def fail_directory(self, path: str, enabled: bool = True) -> None:
        key = str(PurePath(path))
        if enabled:
            self._failing_dirs.add(key)
        else:
            self._failing_dirs.discard(key)

    # -- FileReader --------------------------------------------------

    async def read_file(self, file_path: str, encoding: str = "utf-8") -> str:
        key = str(PurePath(file_path))
        if key in self._failing_reads:
            raise FileReaderError(f"Failed to read file: {file_path}", cause=PermissionError(key))
        entry = self._files.get(key)
        if entry is None:
            raise FileReaderError(f"Failed to read file: {file_path}", cause=FileNotFoundError(key))
        return entry.content

    async def file_exists(self, file_path: str) -> bool:
        return str(PurePath(file_path)) in self._files

    # -- FileSystemManager -------------------------------------------

    async def read_directory(self, path: str) -> list[DirectoryEntry]:
        root = PurePath(path)
        if str(root) in self._failing_dirs:
            raise FileSystemError(f"Failed to read directory: {path}")
        children: dict[str, bool] = {}
        for key in self._files:
            try:
                relative = PurePath(key).relative_to(root)
            except ValueError:
                continue
            if not relative.parts:
                continue
            name = relative.parts[0]
            is_dir = len(relative.parts) > 1
            children[name] = children.get(name, False) or is_dir
        if not children and str(root) not in self._dirs:
            raise FileSystemError(f"Directory not found: {path}")
        return [
            DirectoryEntry(name=name, is_dir=is_dir, is_file=not is_dir)
            for name, is_dir in sorted(children.items())
        ]

    async def stat(self, file_path: str) -> FileStat:
        entry = self._files.get(str(PurePath(file_path)))
        if entry is None:
            raise FileSystemError(f"Failed to stat file: {file_path}", cause=FileNotFoundError(file_path))
        return FileStat(size=len(entry.content.encode("utf-8")), mtime=entry.mtime)
