"""File and folder access inside a synced working copy.

All paths handed to these functions are relative to the repository root and
use forward slashes. They are checked with :func:`safe_repo_path` before any
filesystem call so nothing can be read or written outside the root.
"""

import logging
import os
import shutil
from pathlib import Path, PurePosixPath

from errors import AlreadyExists, InvalidArgument, IOFailure, NotFound

logger = logging.getLogger(__name__)

MARKDOWN_EXTENSIONS = {".md"}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".svg"}
EXCLUDED_DIRS = {".git"}


def safe_repo_path(root: Path, raw_path: str) -> Path:

    if not raw_path:
        raise InvalidArgument("Path is required")
    if "\\" in raw_path or "\x00" in raw_path:
        raise InvalidArgument(f"Invalid path: {raw_path}")
    if any(part == "." for part in raw_path.split("/")):
        raise InvalidArgument(f"Invalid path: {raw_path}")
    rel = PurePosixPath(raw_path)
    if rel.is_absolute():
        raise InvalidArgument(f"Absolute paths are not allowed: {raw_path}")
    if any(part == ".." for part in rel.parts):
        raise InvalidArgument(f"Path escapes the repository: {raw_path}")
    if any(part in EXCLUDED_DIRS for part in rel.parts):
        raise InvalidArgument(f"Forbidden path: {raw_path}")
    candidate = (root / Path(*rel.parts)).resolve()
    try:
        candidate.relative_to(root.resolve())
    except ValueError:
        raise InvalidArgument(f"Path escapes the repository: {raw_path}")
    if candidate == root.resolve():
        raise InvalidArgument("Path must name an entry inside the repository")
    return candidate


def is_listed_file(name: str) -> bool:
    ext = Path(name).suffix.lower()
    return ext in MARKDOWN_EXTENSIONS or ext in IMAGE_EXTENSIONS


def list_tree(root: Path, rel: PurePosixPath = None) -> list:
    """Return folders and markdown/image files below ``root``, depth first.

    Each entry is ``{"path": "docs/intro.md", "type": "file"}``; a folder is
    listed before its contents. Hidden entries are skipped and symlinked
    directories are not followed.
    """
    if rel is None:
        rel = PurePosixPath()
    current = root / rel
    try:
        entries = sorted(os.scandir(current), key=lambda e: e.name)
    except OSError as e:
        raise IOFailure(f"Cannot list {rel.as_posix()}: {e.strerror or e}")
    items = []
    for entry in entries:
        if entry.name.startswith("."):
            continue
        relative = rel / entry.name
        if entry.is_dir(follow_symlinks=False):
            items.append({"path": relative.as_posix(), "type": "folder"})
            items.extend(list_tree(root, relative))
        elif is_listed_file(entry.name):
            items.append({"path": relative.as_posix(), "type": "file"})
    return items


def read_file(root: Path, rel_path: str) -> str:
    fpath = safe_repo_path(root, rel_path)
    if not fpath.is_file():
        raise NotFound(f"File not found: {rel_path}")
    try:
        return fpath.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise IOFailure(f"Cannot read {rel_path}: {e.strerror or e}")


def file_path(root: Path, rel_path: str) -> Path:
    """Resolve ``rel_path`` to an existing regular file, for raw serving."""
    fpath = safe_repo_path(root, rel_path)
    if not fpath.is_file():
        raise NotFound(f"File not found: {rel_path}")
    return fpath


def write_file(root: Path, rel_path: str, content: str) -> None:
    # Parent directories are not created here; see create_file.
    fpath = safe_repo_path(root, rel_path)
    try:
        fpath.write_text(content, encoding="utf-8")
    except OSError as e:
        raise IOFailure(f"Cannot write {rel_path}: {e.strerror or e}")


def create_file(root: Path, rel_path: str, content: str = "") -> None:
    fpath = safe_repo_path(root, rel_path)
    if fpath.exists():
        raise AlreadyExists("File already exists")
    try:
        fpath.parent.mkdir(parents=True, exist_ok=True)
        with open(fpath, "x", encoding="utf-8") as f:
            f.write(content)
    except FileExistsError:
        raise AlreadyExists("File already exists")
    except OSError as e:
        raise IOFailure(f"Cannot create {rel_path}: {e.strerror or e}")


def delete_file(root: Path, rel_path: str) -> None:
    fpath = safe_repo_path(root, rel_path)
    if not fpath.exists() and not fpath.is_symlink():
        raise NotFound("File not found")
    if fpath.is_dir():
        raise InvalidArgument("Path is a folder")
    try:
        fpath.unlink()
    except OSError as e:
        raise IOFailure(f"Cannot delete {rel_path}: {e.strerror or e}")


def create_folder(root: Path, rel_path: str) -> None:
    fpath = safe_repo_path(root, rel_path)
    if fpath.exists():
        raise AlreadyExists("Folder already exists")
    try:
        fpath.mkdir(parents=True)
    except FileExistsError:
        raise AlreadyExists("Folder already exists")
    except OSError as e:
        raise IOFailure(f"Cannot create folder {rel_path}: {e.strerror or e}")


def delete_folder(root: Path, rel_path: str) -> None:
    fpath = safe_repo_path(root, rel_path)
    if not fpath.exists():
        raise NotFound("Folder not found")
    if not fpath.is_dir():
        raise InvalidArgument("Path is not a folder")
    try:
        shutil.rmtree(fpath)
    except OSError as e:
        raise IOFailure(f"Cannot delete folder {rel_path}: {e.strerror or e}")


def store_upload(root: Path, folder: str, temp_path: Path, filename: str) -> str:
    """Move an uploaded temporary file to ``root/folder/filename``.

    ``filename`` must already be reduced to a safe single name. An existing
    destination is never overwritten. The temporary file is removed whether
    or not the move succeeds. Returns the stored path relative to ``root``.
    """
    try:
        rel = f"{folder.strip('/')}/{filename}" if folder.strip("/") else filename
        dest = safe_repo_path(root, rel)
        if dest.exists():
            raise AlreadyExists(f"File already exists: {rel}")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IOFailure(f"Cannot create folder for {rel}: {e.strerror or e}")
        try:
            with open(temp_path, "rb") as src, open(dest, "xb") as out:
                try:
                    shutil.copyfileobj(src, out)
                except OSError:
                    out.close()
                    dest.unlink(missing_ok=True)
                    raise
        except FileExistsError:
            raise AlreadyExists(f"File already exists: {rel}")
        except OSError as e:
            raise IOFailure(f"Cannot store upload {rel}: {e.strerror or e}")
        logger.info(f"Stored upload {rel}")
        return rel
    finally:
        try:
            Path(temp_path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove upload temporary {temp_path}: {e}")
