import atexit
import logging
import os
import secrets
import shutil
import time
import uuid
from contextlib import contextmanager
from datetime import timedelta
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from flask import (
    Flask,
    Request,
    Response,
    g,
    has_request_context,
    jsonify,
    redirect,
    request,
    send_file,
    session,
    url_for,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage

from .errors import (
    BadRequest,
    HostingError,
    NotFound,
    PayloadTooLarge,
    Unauthorized,
    ValidationError,
)
from .security import hash_password, sanitize_log_value
from .sessions import Identity, SessionRegistry
from .storage import (
    DATA_DIR,
    LOGS_DIR,
    MAX_UPLOAD_BYTES,
    UPLOADS_DIR,
    cleanup_temp_files,
    ensure_directories,
    list_user_files,
    open_upload_spool,
    raw_content_type,
    resolve_raw_path,
    save_upload,
    user_store,
)

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3
BYTES_PER_MB = 1024 * 1024

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("scripthost.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


SESSION_LIFETIME_HOURS = _safe_int_env("SCRIPTHOST_SESSION_LIFETIME_HOURS", 24)
AUTH_RATE_LIMIT_PER_MINUTE = _safe_int_env("SCRIPTHOST_RATE_LIMIT_AUTH_PER_MINUTE", 10)
UPLOAD_RATE_LIMIT_PER_HOUR = _safe_int_env("SCRIPTHOST_RATE_LIMIT_UPLOADS_PER_HOUR", 100)
DOWNLOAD_RATE_LIMIT_PER_MINUTE = _safe_int_env("SCRIPTHOST_RATE_LIMIT_DOWNLOADS_PER_MINUTE", 120)
CLEANUP_INTERVAL_MINUTES = _safe_int_env("SCRIPTHOST_CLEANUP_INTERVAL_MINUTES", 15)
# Hard ceiling on any request body. Upload parts are capped separately while they stream.
MAX_REQUEST_SIZE_MB = _safe_int_env("SCRIPTHOST_MAX_REQUEST_SIZE_MB", 64)


def _load_secret_key() -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    config_logger = logging.getLogger("scripthost.config")
    secret_path = DATA_DIR / ".secret_key"
    try:
        ensure_directories()
        try:
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            config_logger.warning("Secret key file exists but is empty, regenerating")
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)

        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(generated)
            handle.flush()
            os.fsync(handle.fileno())
        config_logger.warning("Generated new secret key - stored in %s", secret_path)
        return generated
    except OSError as error:
        config_logger.critical(
            "SECURITY WARNING: Using in-memory secret key. Sessions will not persist across restarts. "
            "Set SECRET_KEY environment variable for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in list(root_logger.handlers):
        if not isinstance(handler, RotatingFileHandler):
            continue
        if getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path
        if getattr(handler, "_scripthost_handler", False):
            # A previous import pointed at another logs directory.
            root_logger.removeHandler(handler)
            handler.close()

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler._scripthost_handler = True  # type: ignore[attr-defined]
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()


class ScriptHostRequest(Request):
    """Request that vets upload parts as the multipart body is parsed.

    The filename of a part is known before any of its bytes, so the extension
    is rejected first and the size cap applies while the part streams in.
    """

    def _get_file_stream(
        self,
        total_content_length: Optional[int],
        content_type: Optional[str],
        filename: Optional[str] = None,
        content_length: Optional[int] = None,
    ):
        if self.endpoint == "upload":
            return open_upload_spool(filename)
        return super()._get_file_stream(
            total_content_length, content_type, filename, content_length
        )


app = Flask(__name__)
app.request_class = ScriptHostRequest
app.config["SECRET_KEY"] = _load_secret_key()
app.config["MAX_CONTENT_LENGTH"] = max(MAX_REQUEST_SIZE_MB * BYTES_PER_MB, MAX_UPLOAD_BYTES + BYTES_PER_MB)
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=SESSION_LIFETIME_HOURS)
app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
app.config["SESSION_COOKIE_SECURE"] = bool(_get_optional_bool_env("SESSION_COOKIE_SECURE"))
app.config["RATELIMIT_ENABLED"] = _get_optional_bool_env("SCRIPTHOST_RATE_LIMIT_ENABLED") is not False
app.logger.setLevel(numeric_level)

if not app.config["SESSION_COOKIE_SECURE"]:
    logging.getLogger("scripthost.security").warning(
        "SESSION_COOKIE_SECURE is disabled. Session cookies will also be sent over plain HTTP. "
        "Set SESSION_COOKIE_SECURE=true when serving behind HTTPS."
    )

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.environ.get("SCRIPTHOST_RATE_LIMIT_STORAGE", "memory://"),
)

session_registry = SessionRegistry(
    app.config["SECRET_KEY"], SESSION_LIFETIME_HOURS * 3600
)

lifecycle_logger = RequestAwareLogger(logging.getLogger("scripthost.lifecycle"))
security_logger = RequestAwareLogger(logging.getLogger("scripthost.security"))


def auth_rate_limit_string() -> str:
    return f"{AUTH_RATE_LIMIT_PER_MINUTE} per minute"


def upload_rate_limit_string() -> str:
    return f"{UPLOAD_RATE_LIMIT_PER_HOUR} per hour"


def download_rate_limit_string() -> str:
    return f"{DOWNLOAD_RATE_LIMIT_PER_MINUTE} per minute"


def current_identity() -> Optional[Identity]:
    return getattr(g, "identity", None)


def require_login(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if current_identity() is None:
            raise Unauthorized()
        return view(*args, **kwargs)

    return wrapped


def _start_session(user: Dict[str, Any]) -> None:
    session.clear()
    session.permanent = True
    session["token"] = session_registry.issue(int(user["id"]), str(user["username"]))


def _credentials_from_request() -> Tuple[str, str]:
    payload = request.get_json(silent=True) if request.is_json else request.form
    if not payload or not hasattr(payload, "get"):
        payload = {}
    username = payload.get("username")
    password = payload.get("password")
    if not isinstance(username, str) or not isinstance(password, str) or not username or not password:
        raise ValidationError("username and password are required")
    return username, password


def get_base_url() -> str:
    """Return ``scheme://host`` as seen by the client, honouring proxies."""

    forwarded = request.headers.get("X-Forwarded-Proto", "")
    scheme = forwarded.split(",")[0].strip() or request.scheme
    return f"{scheme}://{request.host}"


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={sanitize_log_value(file_storage.filename or 'unknown')}",
        )


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.before_request
def load_identity() -> None:
    token = session.get("token")
    g.identity = session_registry.resolve(token)
    if token and g.identity is None:
        session.pop("token", None)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(HostingError)
def handle_hosting_error(error: HostingError):
    if error.status_code >= 500:
        lifecycle_logger.error(
            "request_failed path=%s error=%s",
            sanitize_log_value(request.path),
            error,
            exc_info=error,
        )
    return jsonify(error.to_payload()), error.status_code


@app.errorhandler(413)
def handle_file_too_large(error):
    too_large = PayloadTooLarge()
    lifecycle_logger.warning(
        "upload_rejected reason=too_large content_length=%s", request.content_length
    )
    return jsonify(too_large.to_payload()), too_large.status_code


@app.errorhandler(429)
def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@app.route("/")
def index():
    return app.send_static_file("index.html")


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        checks["users"] = user_store.count()
        checks["user_store"] = "ok"
    except HostingError as error:
        checks["user_store"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        ensure_directories()
        probe_file = UPLOADS_DIR / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
        usage = shutil.disk_usage(UPLOADS_DIR)
        checks["disk_space_gb"] = round(usage.free / (1024 ** 3), 2)
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    checks["active_sessions"] = len(session_registry)
    checks["scheduler_running"] = bool(scheduler is not None and scheduler.running)

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }
    ), (200 if healthy else 503)


@app.route("/api/register", methods=["POST"])
@limiter.limit(lambda: auth_rate_limit_string())
def register():
    username, password = _credentials_from_request()
    try:
        user = user_store.create(username, hash_password(password))
    except ValidationError as error:
        security_logger.warning(
            "register_rejected username=%s reason=%s",
            sanitize_log_value(username),
            error,
        )
        raise
    _start_session(user)
    lifecycle_logger.info("user_registered username=%s", user["username"])
    return jsonify({"ok": True, "username": user["username"]})


@app.route("/api/login", methods=["POST"])
@limiter.limit(lambda: auth_rate_limit_string())
def login():
    username, password = _credentials_from_request()
    try:
        user = user_store.verify_credentials(username, password)
    except HostingError as error:
        if error.status_code < 500:
            security_logger.warning(
                "login_failed username=%s ip=%s",
                sanitize_log_value(username),
                request.remote_addr or "unknown",
            )
        raise
    _start_session(user)
    lifecycle_logger.info("user_logged_in username=%s", user["username"])
    return jsonify({"ok": True, "username": user["username"]})


@app.route("/api/logout", methods=["POST"])
def logout():
    token = session.pop("token", None)
    session_registry.revoke(token)
    session.clear()
    identity = current_identity()
    if identity is not None:
        lifecycle_logger.info("user_logged_out username=%s", identity.username)
    return jsonify({"ok": True})


@app.route("/api/me")
def me():
    identity = current_identity()
    if identity is None:
        return jsonify({"logged": False})
    return jsonify({"logged": True, "username": identity.username})


@app.route("/upload", methods=["POST"])
@require_login
@limiter.limit(lambda: upload_rate_limit_string())
def upload():
    identity = current_identity()
    try:
        upload_storage = request.files.get("file")
    except ValidationError as error:
        lifecycle_logger.warning(
            "upload_rejected username=%s reason=%s", identity.username, error
        )
        raise
    if not isinstance(upload_storage, FileStorage) or not upload_storage.filename:
        lifecycle_logger.warning("upload_failed reason=no_file username=%s", identity.username)
        raise ValidationError("No file uploaded")

    with upload_stream_handler(upload_storage) as file_storage:
        try:
            stored = save_upload(
                identity.username,
                file_storage.filename,
                file_storage.stream,
                declared_size=file_storage.content_length or None,
            )
        except ValidationError as error:
            lifecycle_logger.warning(
                "upload_rejected username=%s filename=%s reason=%s",
                identity.username,
                sanitize_log_value(file_storage.filename),
                error,
            )
            raise

    lifecycle_logger.info(
        "file_uploaded username=%s stored_name=%s size=%d",
        identity.username,
        stored["name"],
        stored["size"],
    )
    return redirect(url_for("index"))


@app.route("/files")
@require_login
def files():
    identity = current_identity()
    return jsonify(list_user_files(identity.username, get_base_url()))


@app.route("/raw/<username>/<path:filename>")
@limiter.limit(lambda: download_rate_limit_string())
def raw_file(username: str, filename: str):
    try:
        file_path = resolve_raw_path(username, filename)
    except BadRequest:
        security_logger.warning(
            "path_traversal_attempt username=%s filename=%s ip=%s",
            sanitize_log_value(username),
            sanitize_log_value(filename),
            request.remote_addr or "unknown",
        )
        raise
    except NotFound:
        lifecycle_logger.warning(
            "file_raw_missing username=%s filename=%s",
            sanitize_log_value(username),
            sanitize_log_value(filename),
        )
        raise

    lifecycle_logger.info(
        "file_raw_served username=%s filename=%s",
        sanitize_log_value(username),
        sanitize_log_value(file_path.name),
    )
    try:
        return send_file(
            file_path,
            mimetype=raw_content_type(file_path),
            as_attachment=False,
            download_name=file_path.name,
        )
    except FileNotFoundError as error:
        raise NotFound() from error


scheduler: Optional[BackgroundScheduler] = None
if _get_optional_bool_env("SCRIPTHOST_CLEANUP_ENABLED") is not False:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=session_registry.purge_expired,
        trigger="interval",
        minutes=CLEANUP_INTERVAL_MINUTES,
        id="purge_expired_sessions",
        name="Purge expired sessions",
        replace_existing=True,
    )
    scheduler.add_job(
        func=cleanup_temp_files,
        trigger="interval",
        minutes=CLEANUP_INTERVAL_MINUTES,
        id="cleanup_temp_files",
        name="Clean up temporary upload files",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "3000")), debug=False)
