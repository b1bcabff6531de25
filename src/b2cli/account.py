"""
Persisted account state.

Keeps the application key, the last issued session and a bucket name -> id
cache between CLI invocations, as a JSON document in the user's config dir.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from b2cli.exceptions import B2Error
from b2cli.logging import get_logger
from b2cli.models.api import Session

logger = get_logger(__name__)


class AccountInfo(BaseModel):
    """Credentials and cached state for one account."""

    application_key_id: str = ""
    application_key: str = ""
    session: Session | None = None
    # key id the session and bucket cache were issued for
    session_key_id: str = ""
    buckets: dict[str, str] = Field(default_factory=dict)

    @property
    def has_credentials(self) -> bool:
        return bool(self.application_key_id and self.application_key)

    @property
    def state_key_id(self) -> str:
        """Key id owning the cached session and buckets."""
        return self.session_key_id or self.application_key_id


class AccountStore:
    """
    Load and save AccountInfo at a fixed path.

    The file holds secrets, so it is written with 0600 permissions.

    Example:
        >>> store = AccountStore(Path("~/.config/b2cli/account.json").expanduser())
        >>> info = store.load()
        >>> info.buckets["photos"] = "4a48fe8875c6214145260818"
        >>> store.save(info)
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> AccountInfo:
        """Read account info; a missing file yields empty defaults."""
        if not self._path.exists():
            return AccountInfo()
        try:
            return AccountInfo.model_validate_json(self._path.read_text(encoding="utf-8"))
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable account file {self._path}: {e}")
            return AccountInfo()
        except OSError as e:
            raise B2Error(f"Cannot read account file {self._path}: {e}", cause=e) from e

    def save(self, info: AccountInfo) -> None:
        """Write account info, creating the parent directory as needed."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(info.model_dump_json(indent=2))
        except OSError as e:
            raise B2Error(f"Cannot write account file {self._path}: {e}", cause=e) from e
        logger.debug(f"Saved account info to {self._path}")


__all__ = ["AccountInfo", "AccountStore"]
