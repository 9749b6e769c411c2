"""Credential storage shared between client processes.

A CredentialStore is a small async key-value store of secret strings with
change notification. Notifications carry no payload; subscribers re-read
the key. The store is both durable storage and the only channel through
which separate processes learn about each other's logins and refreshes.

Two implementations are provided:
- MemoryCredentialStore: in-process, for tests and embedding
- FileCredentialStore: one Fernet-encrypted file per key, with the
  encryption key in the OS keyring and change detection by polling
"""

import asyncio
import base64
import hashlib
import logging
import os
import re
import stat
import sys
from abc import ABC, abstractmethod
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path

import keyring
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ChangeListener = Callable[[], None]

KEYRING_SERVICE = "remote-oauth"
KEYRING_USERNAME = "credential-encryption-key"

DEFAULT_STORE_DIR = Path.home() / ".cache" / "remote-oauth" / "credentials"
DEFAULT_POLL_INTERVAL = 1.0

_SAFE_KEY = re.compile(r"[A-Za-z0-9._-]{1,200}")


if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Hold an flock on ``<file>.lock`` for the duration of the block."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Hold a byte-range lock on ``<file>.lock`` (always exclusive on Windows)."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
            try:
                yield
            finally:
                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass


class CredentialStoreError(Exception):
    """Error writing to or deleting from a credential store."""

    pass


class Subscription:
    """Handle returned by ``on_change``; ``dispose()`` is idempotent."""

    def __init__(self, dispose: Callable[[], None]):
        self._dispose: Callable[[], None] | None = dispose

    @property
    def disposed(self) -> bool:
        return self._dispose is None

    def dispose(self) -> None:
        if self._dispose is not None:
            dispose, self._dispose = self._dispose, None
            dispose()


class _ListenerRegistry:
    """Per-key listener lists with deferred, isolated delivery."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[ChangeListener]] = {}

    def add(self, key: str, listener: ChangeListener) -> Subscription:
        self._listeners.setdefault(key, []).append(listener)

        def remove() -> None:
            listeners = self._listeners.get(key, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(key, None)

        return Subscription(remove)

    def keys(self) -> list[str]:
        return list(self._listeners)

    def notify(self, key: str) -> None:
        listeners = list(self._listeners.get(key, []))
        if not listeners:
            return
        loop = asyncio.get_running_loop()
        for listener in listeners:
            loop.call_soon(self._deliver, key, listener)

    @staticmethod
    def _deliver(key: str, listener: ChangeListener) -> None:
        try:
            listener()
        except Exception as e:
            logger.warning(f"Credential change listener for {key} failed: {type(e).__name__}: {e}")


class CredentialStore(ABC):
    """Shared, eventually consistent secret store with change notification.

    ``get`` never raises: unreadable or corrupted entries read as None.
    Listeners are called on the event loop after the write that triggered
    them, for writes from this process and from others alike.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    def on_change(self, key: str, listener: ChangeListener) -> Subscription: ...

    async def close(self) -> None:
        """Release background resources."""
        return None


class MemoryCredentialStore(CredentialStore):
    """In-process store.

    Several TokenLifecycleManager instances sharing one MemoryCredentialStore
    behave like separate windows sharing the OS secret store.
    """

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})
        self._listeners = _ListenerRegistry()

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._listeners.notify(key)

    async def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._listeners.notify(key)

    def on_change(self, key: str, listener: ChangeListener) -> Subscription:
        return self._listeners.add(key, listener)

    def keys(self) -> list[str]:
        return list(self._data)


def _derive_fallback_key() -> bytes:
    """Derive a Fernet key from machine-specific data when keyring is unavailable."""
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "remote-oauth")))

    key_bytes = hashlib.sha256(":".join(components).encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


FileSignature = tuple[int, int, int] | None


class FileCredentialStore(CredentialStore):
    """Encrypted file-backed store shared by every process of one user.

    Each key lives in its own file under ``store_dir`` (mode 0600, directory
    0700), encrypted with Fernet. The Fernet key is kept in the OS keyring;
    without a keyring backend a machine-derived key is used instead.

    Changes made by other processes are detected by polling the
    (inode, mtime, size) signature of watched files every ``poll_interval``
    seconds. Writes made through this instance notify immediately.
    """

    def __init__(
        self,
        store_dir: Path | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        encryption_key: bytes | None = None,
    ):
        """Initialize the store.

        Args:
            store_dir: Directory holding the encrypted files
            poll_interval: Seconds between change-detection scans
            encryption_key: Explicit Fernet key, bypassing the keyring
        """
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        self.poll_interval = poll_interval
        self._using_keyring = False
        self._listeners = _ListenerRegistry()
        self._signatures: dict[str, FileSignature] = {}
        self._poll_task: asyncio.Task[None] | None = None

        self._init_storage()
        self._cipher = Fernet(encryption_key) if encryption_key else self._init_encryption()

    def _init_storage(self) -> None:
        self.store_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.store_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _init_encryption(self) -> Fernet:
        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
            if key is None:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
                logger.debug("Generated new credential encryption key in keyring")
            self._using_keyring = True
            return Fernet(key.encode("ascii"))
        except Exception as e:
            logger.warning(
                f"Keyring not available: {type(e).__name__}: {e}. "
                f"Using machine-derived encryption key for stored credentials."
            )
            return Fernet(_derive_fallback_key())

    def is_using_keyring(self) -> bool:
        return self._using_keyring

    def _path_for(self, key: str) -> Path:
        if _SAFE_KEY.fullmatch(key):
            name = key
        else:
            name = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.store_dir / f"{name}.enc"

    def _signature(self, key: str) -> FileSignature:
        try:
            st = self._path_for(key).stat()
        except OSError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    # Blocking I/O, run in a worker thread

    def _read(self, key: str) -> str | None:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            with _file_lock(path, exclusive=False):
                encrypted = path.read_bytes()
            return self._cipher.decrypt(encrypted).decode("utf-8")
        except FileNotFoundError:
            return None
        except InvalidToken:
            logger.warning(f"Cannot decrypt stored credential {key}; treating it as absent")
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Cannot read stored credential {key}: {type(e).__name__}: {e}")
            return None

    def _write(self, key: str, value: str) -> None:
        path = self._path_for(key)
        encrypted = self._cipher.encrypt(value.encode("utf-8"))
        tmp_path = path.with_suffix(".tmp")
        try:
            with _file_lock(path, exclusive=True):
                tmp_path.write_bytes(encrypted)
                try:
                    tmp_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
                except OSError as e:
                    logger.warning(f"Could not set file permissions: {e}")
                os.replace(tmp_path, path)
        except OSError as e:
            raise CredentialStoreError(f"Failed to write credential {key}: {e}") from e

    def _remove(self, key: str) -> bool:
        path = self._path_for(key)
        try:
            with _file_lock(path, exclusive=True):
                path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CredentialStoreError(f"Failed to delete credential {key}: {e}") from e

    # CredentialStore interface

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write, key, value)
        self._signatures[key] = self._signature(key)
        self._listeners.notify(key)

    async def delete(self, key: str) -> None:
        removed = await asyncio.to_thread(self._remove, key)
        self._signatures[key] = None
        if removed:
            self._listeners.notify(key)

    def on_change(self, key: str, listener: ChangeListener) -> Subscription:
        """Watch ``key``. Must be called from a running event loop."""
        if key not in self._signatures:
            self._signatures[key] = self._signature(key)
        subscription = self._listeners.add(key, listener)
        self._ensure_polling()
        return subscription

    def _ensure_polling(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            self.check_for_changes()

    def check_for_changes(self) -> list[str]:
        """Compare watched files against their last signatures and notify on change.

        Returns:
            Keys whose files changed since the previous scan
        """
        changed = []
        for key in self._listeners.keys():
            signature = self._signature(key)
            if self._signatures.get(key) != signature:
                self._signatures[key] = signature
                changed.append(key)
                logger.debug(f"Detected external change to {key}")
                self._listeners.notify(key)
        return changed

    async def close(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
