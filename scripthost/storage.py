import json
import logging
import mimetypes
import os
import tempfile
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional
from urllib.parse import quote

from .errors import (
    AuthFailure,
    BadRequest,
    DuplicateUsername,
    NotFound,
    PayloadTooLarge,
    StoreError,
    UnsupportedFileType,
    ValidationError,
)
from .security import sanitize_log_value, sanitize_path_segment, verify_password

BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("SCRIPTHOST_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("SCRIPTHOST_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("SCRIPTHOST_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("SCRIPTHOST_LOGS_DIR", STORAGE_ROOT / "logs")
USERS_PATH = DATA_DIR / "users.json"

CHUNK_SIZE_BYTES = 64 * 1024
MAX_UPLOAD_BYTES = 5 * 1024 * 1024  # 5 MiB, inclusive
ALLOWED_EXTENSIONS = frozenset({".lua", ".txt"})
MAX_STORED_NAME_TAIL = 200
TEMP_SUFFIX = ".part"
TEMP_FILE_MAX_AGE_SECONDS = 3600
SPOOL_MEMORY_BYTES = 512 * 1024

RAW_CONTENT_TYPES = {
    ".lua": "text/x-lua",
    ".txt": "text/plain",
}

logger = logging.getLogger("scripthost.storage")


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def validate_username(username: str) -> str:
    """Reject usernames that would change when used as a directory name."""

    if sanitize_path_segment(username) != username:
        raise ValidationError("Invalid username")
    return username


def user_upload_dir(username: str, create: bool = False) -> Path:
    safe_name = sanitize_path_segment(username)
    if not safe_name:
        raise ValidationError("Invalid username")
    directory = UPLOADS_DIR / safe_name
    if create:
        directory.mkdir(parents=True, exist_ok=True)
    return directory


class UserStore:
    """Flat JSON snapshot of registered accounts.

    The snapshot looks like ``{"users": [{"id", "username", "passwordHash"}],
    "nextId": N}``. Every read-modify-write cycle holds ``self._lock`` so two
    registrations in the same process cannot overwrite each other.
    """

    def __init__(self, path: Path, uploads_dir: Path) -> None:
        self.path = path
        self.uploads_dir = uploads_dir
        self._lock = threading.RLock()

    @staticmethod
    def _empty_snapshot() -> Dict[str, object]:
        return {"users": [], "nextId": 1}

    def _read(self) -> Dict[str, object]:
        if not self.path.exists():
            return self._empty_snapshot()
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, json.JSONDecodeError) as error:
            logger.error("user_store_read_failed path=%s error=%s", self.path, error)
            raise StoreError("User store is unreadable") from error

        if not isinstance(raw, dict) or not isinstance(raw.get("users"), list):
            logger.error("user_store_malformed path=%s", self.path)
            raise StoreError("User store is malformed")

        users = [entry for entry in raw["users"] if isinstance(entry, dict)]
        highest = max((int(entry.get("id", 0)) for entry in users), default=0)
        try:
            next_id = int(raw.get("nextId", 1))
        except (TypeError, ValueError):
            next_id = 1
        return {"users": users, "nextId": max(next_id, highest + 1)}

    def _write(self, snapshot: Dict[str, object]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                json.dump(snapshot, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            temp_path.replace(self.path)
        except OSError as error:
            temp_path.unlink(missing_ok=True)
            logger.error("user_store_write_failed path=%s error=%s", self.path, error)
            raise StoreError("Could not persist user store") from error

    def initialize(self) -> None:
        with self._lock:
            if not self.path.exists():
                self._write(self._empty_snapshot())

    def find_by_username(self, username: str) -> Optional[Dict[str, object]]:
        with self._lock:
            snapshot = self._read()
        for user in snapshot["users"]:
            if user.get("username") == username:
                return user
        return None

    def count(self) -> int:
        with self._lock:
            return len(self._read()["users"])

    def create(self, username: str, password_hash: str) -> Dict[str, object]:
        validate_username(username)
        with self._lock:
            snapshot = self._read()
            if any(user.get("username") == username for user in snapshot["users"]):
                raise DuplicateUsername()
            user = {
                "id": snapshot["nextId"],
                "username": username,
                "passwordHash": password_hash,
            }
            try:
                (self.uploads_dir / sanitize_path_segment(username)).mkdir(
                    parents=True, exist_ok=True
                )
            except OSError as error:
                logger.error(
                    "user_directory_failed username=%s error=%s",
                    username,
                    sanitize_log_value(str(error)),
                )
                raise StoreError("Could not create upload directory") from error
            snapshot["users"].append(user)
            snapshot["nextId"] = user["id"] + 1
            self._write(snapshot)

        logger.info("user_created id=%s username=%s", user["id"], username)
        return user

    def verify_credentials(self, username: str, password: str) -> Dict[str, object]:
        user = self.find_by_username(username)
        if user is None:
            verify_password(None, password)
            raise AuthFailure()
        if not verify_password(str(user.get("passwordHash", "")), password):
            raise AuthFailure()
        return user


def allowed_extension(original_name: Optional[str]) -> str:
    extension = os.path.splitext(original_name or "")[1].lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise UnsupportedFileType()
    return extension


class UploadSpool(tempfile.SpooledTemporaryFile):
    """Buffer for one multipart file part that refuses to grow past the cap."""

    def __init__(self, limit: int = MAX_UPLOAD_BYTES) -> None:
        super().__init__(max_size=SPOOL_MEMORY_BYTES, mode="w+b")
        self.limit = limit
        self.received = 0

    def write(self, data):
        self.received += len(data)
        if self.received > self.limit:
            raise PayloadTooLarge()
        return super().write(data)


def open_upload_spool(filename: Optional[str]) -> UploadSpool:
    """Return a spool for an incoming upload part once its name is acceptable.

    Parts without a filename are let through so the route can report that no
    file was chosen.
    """

    if filename:
        allowed_extension(filename)
    return UploadSpool()


def generate_stored_name(original_name: str, extension: str) -> str:
    """Build ``<epoch-millis>-<8 hex>-<sanitized name>`` for a new upload."""

    name = sanitize_path_segment(original_name)
    if not name.lower().endswith(extension):
        name = f"file{extension}"
    if len(name) > MAX_STORED_NAME_TAIL:
        # The prefix takes 23 characters and most filesystems stop at 255.
        stem = name[: MAX_STORED_NAME_TAIL - len(extension)].rstrip("._") or "file"
        name = f"{stem}{name[-len(extension):]}"
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{name}"


def original_name_from_stored(stored_name: str) -> str:
    parts = stored_name.split("-", 2)
    if len(parts) == 3 and parts[0].isdigit() and len(parts[1]) == 8:
        return parts[2]
    return stored_name


def describe_stored_file(path: Path) -> Dict[str, object]:
    stat = path.stat()
    return {
        "name": path.name,
        "originalName": original_name_from_stored(path.name),
        "size": stat.st_size,
        "modifiedTime": isoformat_utc(stat.st_mtime),
        "extension": path.suffix.lower(),
    }


def build_raw_url(base_url: str, username: str, stored_name: str) -> str:
    return (
        f"{base_url.rstrip('/')}/raw/{quote(username, safe='')}/{quote(stored_name, safe='')}"
    )


def save_upload(
    username: str,
    original_name: Optional[str],
    stream: BinaryIO,
    declared_size: Optional[int] = None,
) -> Dict[str, object]:
    """Write one uploaded file into the user's directory.

    The extension is checked before the size, and both before anything
    touches the disk. The bytes go to a ``.part`` file which is linked into
    place only once complete, so a failed upload leaves nothing behind.
    """

    extension = allowed_extension(original_name)
    if declared_size is not None and declared_size > MAX_UPLOAD_BYTES:
        raise PayloadTooLarge()

    directory = user_upload_dir(username, create=True)
    stored_name = generate_stored_name(original_name or "", extension)
    target = directory / stored_name
    temp_path = directory / f"{stored_name}{TEMP_SUFFIX}"

    written = 0
    created = False
    try:
        with temp_path.open("xb") as destination:
            created = True
            while True:
                chunk = stream.read(CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                written += len(chunk)
                if written > MAX_UPLOAD_BYTES:
                    raise PayloadTooLarge()
                destination.write(chunk)
            destination.flush()
            os.fsync(destination.fileno())
        # link() refuses to replace an existing file
        os.link(temp_path, target)
    except FileExistsError as error:
        logger.error(
            "upload_name_collision username=%s stored_name=%s",
            username,
            sanitize_log_value(stored_name),
        )
        raise StoreError("Stored name collision") from error
    except OSError as error:
        logger.exception(
            "upload_write_failed username=%s stored_name=%s",
            username,
            sanitize_log_value(stored_name),
        )
        raise StoreError("Could not store upload") from error
    finally:
        if created:
            temp_path.unlink(missing_ok=True)

    logger.info(
        "upload_stored username=%s stored_name=%s size=%d",
        username,
        sanitize_log_value(stored_name),
        written,
    )
    return describe_stored_file(target)


def list_user_files(username: str, base_url: str) -> List[Dict[str, object]]:
    """Return descriptors for every stored file of *username*, oldest first."""

    safe_name = sanitize_path_segment(username)
    if not safe_name:
        return []
    directory = UPLOADS_DIR / safe_name
    if not directory.is_dir():
        return []

    files: List[Dict[str, object]] = []
    for entry in sorted(directory.iterdir(), key=lambda path: path.name):
        if entry.name.endswith(TEMP_SUFFIX) or not entry.is_file():
            continue
        try:
            descriptor = describe_stored_file(entry)
        except FileNotFoundError:
            continue
        descriptor["rawUrl"] = build_raw_url(base_url, username, entry.name)
        files.append(descriptor)
    return files


def resolve_raw_path(username: str, filename: str) -> Path:
    """Map a public ``(username, filename)`` pair to a file inside that user's directory.

    The containment check runs on fully resolved paths, so ``..`` segments,
    decoded separators and symlinks pointing elsewhere are all refused.
    """

    safe_name = sanitize_path_segment(username)
    if not safe_name or safe_name != username or not filename:
        raise BadRequest()

    base = (UPLOADS_DIR / safe_name).resolve()
    try:
        target = (base / filename).resolve()
    except (OSError, RuntimeError, ValueError) as error:
        raise BadRequest() from error

    if base not in target.parents:
        raise BadRequest()
    if target.name.endswith(TEMP_SUFFIX) or not target.is_file():
        raise NotFound()
    return target


def raw_content_type(path: Path) -> str:
    extension = path.suffix.lower()
    if extension in RAW_CONTENT_TYPES:
        return RAW_CONTENT_TYPES[extension]
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def cleanup_temp_files(max_age_seconds: int = TEMP_FILE_MAX_AGE_SECONDS) -> int:
    """Remove ``.part`` files abandoned by interrupted uploads."""

    ensure_directories()
    removed = 0
    cutoff = time.time() - max_age_seconds

    for user_dir in UPLOADS_DIR.iterdir():
        if not user_dir.is_dir():
            continue

        for temp_file in user_dir.glob(f"*{TEMP_SUFFIX}"):
            try:
                if temp_file.stat().st_mtime < cutoff:
                    temp_file.unlink()
                    removed += 1
                    logger.info("temp_file_removed path=%s", temp_file)
            except OSError as error:
                logger.warning(
                    "temp_cleanup_failed path=%s error=%s",
                    temp_file,
                    error,
                )

    return removed


ensure_directories()
user_store = UserStore(USERS_PATH, UPLOADS_DIR)
user_store.initialize()
