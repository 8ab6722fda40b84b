# coverage.py
from __future__ import annotations

import urllib.error
import urllib.request
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import urlencode

from . import settings
from .errors import UploadError


class CoverageUploader(Protocol):
    """External reporting collaborator: takes a finished coverage report."""

    def upload(self, path: Path) -> None: ...


class CodecovUploader:
    """Posts an lcov report to a Codecov-compatible upload endpoint."""

    def __init__(
        self,
        token: str,
        *,
        url: str | None = None,
        slug: str | None = None,
        commit: str | None = None,
        timeout: float = 60.0,
    ):
        """
        Args:
            token: Upload token for the repository
            url: Upload endpoint (defaults to settings.CODECOV_URL)
            slug: owner/repo, when the token alone does not identify it
            commit: Commit SHA the report belongs to
            timeout: Seconds before the request is abandoned
        """
        self.token = token
        self.url = (url or settings.CODECOV_URL).rstrip("/")
        self.slug = slug
        self.commit = commit
        self.timeout = timeout

    def _endpoint(self) -> str:
        params = {"token": self.token}
        if self.slug:
            params["slug"] = self.slug
        if self.commit:
            params["commit"] = self.commit
        return f"{self.url}?{urlencode(params)}"

    def upload(self, path: Path) -> None:
        """
        Upload the report at `path`.

        Raises:
            UploadError: If the file is unreadable or the request fails
        """
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise UploadError(f"cannot read coverage report {path}: {e}") from e

        req = urllib.request.Request(
            self._endpoint(),
            data=data,
            headers={"Content-Type": "text/plain", "Accept": "text/plain"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8", "replace") if e.fp else ""
            raise UploadError(f"upload failed: {e.code} {e.reason}. {error_body}".strip()) from e
        except urllib.error.URLError as e:
            raise UploadError(f"Network error: {e.reason}") from e


def uploader_from_settings() -> Optional[CoverageUploader]:
    """A Codecov uploader when CODECOV_TOKEN is set, else None."""
    if not settings.CODECOV_TOKEN:
        return None
    return CodecovUploader(settings.CODECOV_TOKEN, slug=settings.CODECOV_SLUG)


def report_path(project_root: Path, report: str) -> Optional[Path]:
    """The report file if the stage produced a non-empty one."""
    p = (project_root / report).resolve()
    if p.is_file() and p.stat().st_size > 0:
        return p
    return None
