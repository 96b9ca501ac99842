"""Filesystem backend handed to the remediation agent.

The agent edits the repository through a deepagents ``FilesystemBackend``
rooted at the repository. ``ProtectedPathBackend`` wraps it so the agent
cannot touch version-control internals or secrets:

* writes, edits and uploads under ``.git/`` are refused;
* ``.env`` files can be neither read nor written.

Everything else is passed through unchanged.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath

from deepagents.backends import FilesystemBackend
from deepagents.backends.protocol import (
    BackendProtocol,
    EditResult,
    FileDownloadResponse,
    FileInfo,
    FileUploadResponse,
    GrepMatch,
    WriteResult,
)

logger = logging.getLogger(__name__)

_WRITE_PROTECTED_DIRS = frozenset({".git"})
_SECRET_NAMES = frozenset({".env"})


def _parts(path: str) -> tuple[str, ...]:
    return PurePosixPath(path.replace("\\", "/")).parts


def is_secret_path(path: str) -> bool:
    name = PurePosixPath(path.replace("\\", "/")).name
    return name in _SECRET_NAMES or name.startswith(".env.")


def is_write_protected(path: str) -> bool:
    return is_secret_path(path) or any(part in _WRITE_PROTECTED_DIRS for part in _parts(path))


class ProtectedPathBackend(BackendProtocol):
    """Refuses agent access to ``.git/`` internals and ``.env`` secrets.

    Blocked operations return the error forms of the backend protocol
    (``WriteResult(error=...)`` and friends) instead of raising, so the agent
    sees the refusal as a tool result and can carry on.
    """

    _WRITE_ERROR = "Refusing to modify protected path: {path}"
    _READ_ERROR = "Error: access to secret file {path} is not permitted"

    def __init__(self, backend: BackendProtocol) -> None:
        self._backend = backend

    def ls_info(self, path: str) -> list[FileInfo]:
        return [info for info in self._backend.ls_info(path) if not is_secret_path(str(info.get("path", "")))]

    def read(self, file_path: str, offset: int = 0, limit: int = 2000) -> str:
        if is_secret_path(file_path):
            logger.warning("Agent read of secret file blocked: %s", file_path)
            return self._READ_ERROR.format(path=file_path)
        return self._backend.read(file_path, offset=offset, limit=limit)

    def grep_raw(self, pattern: str, path: str | None = None, glob: str | None = None) -> list[GrepMatch] | str:
        matches = self._backend.grep_raw(pattern, path=path, glob=glob)
        if isinstance(matches, str):
            return matches
        return [match for match in matches if not is_secret_path(str(match.get("path", "")))]

    def glob_info(self, pattern: str, path: str = "/") -> list[FileInfo]:
        return [info for info in self._backend.glob_info(pattern, path=path) if not is_secret_path(str(info.get("path", "")))]

    def write(self, file_path: str, content: str) -> WriteResult:
        if is_write_protected(file_path):
            msg = self._WRITE_ERROR.format(path=file_path)
            logger.warning(msg)
            return WriteResult(error=msg)
        return self._backend.write(file_path, content)

    def edit(self, file_path: str, old_string: str, new_string: str, replace_all: bool = False) -> EditResult:
        if is_write_protected(file_path):
            msg = self._WRITE_ERROR.format(path=file_path)
            logger.warning(msg)
            return EditResult(error=msg)
        return self._backend.edit(file_path, old_string, new_string, replace_all=replace_all)

    def upload_files(self, files: list[tuple[str, bytes]]) -> list[FileUploadResponse]:
        """Upload files; if any target is protected the whole batch is refused."""
        blocked = [path for path, _ in files if is_write_protected(path)]
        if blocked:
            return [FileUploadResponse(path=path, error=self._WRITE_ERROR.format(path=path)) for path in blocked]
        return self._backend.upload_files(files)

    def download_files(self, paths: list[str]) -> list[FileDownloadResponse]:
        """Download files, returning one response per path in request order.

        Secret paths get an error response; the rest come from the wrapped backend.
        """
        allowed = [path for path in paths if not is_secret_path(path)]
        fetched = iter(self._backend.download_files(allowed) if allowed else [])
        responses = []
        for path in paths:
            if is_secret_path(path):
                logger.warning("Agent download of secret file blocked: %s", path)
                responses.append(FileDownloadResponse(path=path, content=None, error=self._READ_ERROR.format(path=path)))
            else:
                responses.append(next(fetched))
        return responses


def build_repo_backend(repo_root: Path) -> BackendProtocol:
    """Return the agent's view of the repository at ``repo_root``."""
    return ProtectedPathBackend(FilesystemBackend(root_dir=repo_root, virtual_mode=True))
