"""Persisted, access-scoped reference to the user's chosen output folder.

A bookmark records a directory path together with its filesystem identity
(device and inode) and is signed with a per-install HMAC key, so a value
copied from elsewhere or edited by hand never resolves. Resolving a bookmark
yields an explicit :class:`BookmarkResolution`; a directory that vanished or
was replaced by a different one resolves as *stale*.

Access to the referenced directory is modelled as an :class:`AccessToken`
capability. :meth:`LocationStore.access` pairs every acquire with a release
in a ``finally`` block.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, NamedTuple, TypeVar
import base64
import binascii
import json
import os
import tempfile

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from .config_loader import SETTINGS_FILE
from .errors import AccessDenied, BookmarkCreateFailed, BookmarkStale

T = TypeVar("T")

BOOKMARK_KEY = "output_folder_bookmark"
KEY_FILE = "bookmark.key"
KEY_SIZE = 32
TAG_SIZE = 32


class SettingsStore:
    """Durable key-value settings kept in a JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        # Undecodable content reads as empty and is replaced on the next write.
        with self.path.open("r", encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except ValueError:
                return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=".settings-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            os.replace(temp_name, self.path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Any | None:
        return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


class BookmarkSigner:
    """HMAC-SHA256 signing with a secret generated on first use."""

    def __init__(self, key_path: Path) -> None:
        self.key_path = key_path
        self._key: bytes | None = None

    def _load_key(self) -> bytes:
        if self._key is not None:
            return self._key
        try:
            key = self.key_path.read_bytes()
        except FileNotFoundError:
            key = os.urandom(KEY_SIZE)
            self.key_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as handle:
                handle.write(key)
        if len(key) != KEY_SIZE:
            raise ValueError(f"Bookmark key '{self.key_path}' is corrupt")
        self._key = key
        return key

    def sign(self, payload: bytes) -> bytes:
        mac = hmac.HMAC(self._load_key(), hashes.SHA256())
        mac.update(payload)
        return mac.finalize()

    def verify(self, payload: bytes, tag: bytes) -> None:
        mac = hmac.HMAC(self._load_key(), hashes.SHA256())
        mac.update(payload)
        mac.verify(tag)


class BookmarkResolution(NamedTuple):
    path: Path
    stale: bool


@dataclass(frozen=True, slots=True)
class Bookmark:
    path: str
    device: int
    inode: int

    @classmethod
    def create(cls, path: Path | str) -> "Bookmark":
        target = Path(path).expanduser()
        try:
            resolved = target.resolve(strict=True)
            info = resolved.stat()
        except OSError as exc:
            raise BookmarkCreateFailed(target, exc.strerror or str(exc)) from exc
        if not resolved.is_dir():
            raise BookmarkCreateFailed(target, "not a directory")
        return cls(path=str(resolved), device=info.st_dev, inode=info.st_ino)

    def resolve(self) -> BookmarkResolution:
        path = Path(self.path)
        try:
            info = path.stat()
        except OSError:
            return BookmarkResolution(path, True)
        stale = not path.is_dir() or (info.st_dev, info.st_ino) != (self.device, self.inode)
        return BookmarkResolution(path, stale)

    def encode(self, signer: BookmarkSigner) -> str:
        payload = json.dumps(
            {"path": self.path, "dev": self.device, "ino": self.inode},
            sort_keys=True,
        ).encode("utf-8")
        return base64.urlsafe_b64encode(signer.sign(payload) + payload).decode("ascii")

    @classmethod
    def decode(cls, token: str, signer: BookmarkSigner) -> "Bookmark":
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError, AttributeError) as exc:
            raise BookmarkStale("stored value is not a bookmark") from exc
        tag, payload = raw[:TAG_SIZE], raw[TAG_SIZE:]
        try:
            signer.verify(payload, tag)
        except InvalidSignature as exc:
            raise BookmarkStale("signature mismatch") from exc
        try:
            data = json.loads(payload.decode("utf-8"))
            return cls(path=str(data["path"]), device=int(data["dev"]), inode=int(data["ino"]))
        except (ValueError, KeyError, TypeError) as exc:
            raise BookmarkStale("malformed bookmark payload") from exc


class AccessToken:
    """Capability granting temporary read/write access to one directory."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._holds = 0

    @property
    def active(self) -> bool:
        return self._holds > 0

    def acquire(self) -> None:
        if not self.path.is_dir():
            raise AccessDenied(self.path, "directory does not exist")
        if not os.access(self.path, os.R_OK | os.W_OK | os.X_OK):
            raise AccessDenied(self.path, "permission denied")
        self._holds += 1

    def release(self) -> None:
        if self._holds == 0:
            raise RuntimeError(f"Access to '{self.path}' released more often than acquired")
        self._holds -= 1


class ResolvedLocation(NamedTuple):
    path: Path
    bookmark: Bookmark


class LocationStore:
    """Saves, loads and opens the persisted output folder bookmark."""

    def __init__(self, settings: SettingsStore, signer: BookmarkSigner) -> None:
        self._settings = settings
        self._signer = signer

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> "LocationStore":
        return cls(SettingsStore(config_dir / SETTINGS_FILE), BookmarkSigner(config_dir / KEY_FILE))

    def save(self, bookmark: Bookmark) -> None:
        self._settings.set(BOOKMARK_KEY, bookmark.encode(self._signer))

    def clear(self) -> None:
        self._settings.delete(BOOKMARK_KEY)

    def load(self) -> ResolvedLocation | None:
        token = self._settings.get(BOOKMARK_KEY)
        if token is None:
            return None
        try:
            bookmark = Bookmark.decode(token, self._signer)
        except BookmarkStale:
            self.clear()
            return None
        resolution = bookmark.resolve()
        if resolution.stale:
            self.clear()
            return None
        return ResolvedLocation(resolution.path, bookmark)

    @contextmanager
    def access(self, bookmark: Bookmark) -> Iterator[Path]:
        token = AccessToken(bookmark.resolve().path)
        token.acquire()
        try:
            yield token.path
        finally:
            token.release()

    def with_access(self, bookmark: Bookmark, body: Callable[[Path], T]) -> T:
        with self.access(bookmark) as path:
            return body(path)

    def pick(self, path: Path | str) -> Bookmark:
        """Grant access to ``path``, persist a bookmark for it and return it."""

        token = AccessToken(Path(path).expanduser())
        token.acquire()
        try:
            bookmark = Bookmark.create(token.path)
            self.save(bookmark)
        finally:
            token.release()
        return bookmark


__all__ = [
    "AccessToken",
    "BOOKMARK_KEY",
    "Bookmark",
    "BookmarkResolution",
    "BookmarkSigner",
    "LocationStore",
    "ResolvedLocation",
    "SettingsStore",
]
