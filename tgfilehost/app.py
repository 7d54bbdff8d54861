import logging
import os
import re
import secrets
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any, Iterator, Optional

from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    g,
    has_request_context,
    jsonify,
    request,
    send_from_directory,
)
from itsdangerous import BadSignature, URLSafeSerializer
from werkzeug.datastructures import FileStorage, Headers
from werkzeug.exceptions import HTTPException
from werkzeug.security import safe_join

from .auth import require_basic_auth
from .config import BYTES_PER_MB, Settings
from .storage import (
    FILE_KEY_PREFIX,
    FileRecord,
    KeyExistsError,
    KeyValueStore,
    StorageError,
    delete_record,
    get_record,
    save_record,
)
from .telegram import TelegramClient, UpstreamError

CHUNK_SIZE_BYTES = 64 * 1024
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 3
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

UPLOAD_FIELDS = ("file", "image", "photo")
NO_FILE_MESSAGE = "no file found in form field 'file'/'image'/'photo'"
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200
ID_LENGTH = 16
MAX_ID_ATTEMPTS = 5
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# Dropped when relaying upstream responses. requests decodes the body, so the
# original encoding no longer applies either.
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-encoding",
}

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")
_REQUEST_ID_PATTERN = re.compile(r"[A-Za-z0-9._\-]{1,64}")
_NON_ALNUM_PATTERN = re.compile(r"[^A-Za-z0-9]")
_UNSAFE_FILENAME_PATTERN = re.compile(r"[^A-Za-z0-9_.\-]")


class ClientInputError(Exception):
    """Malformed upload or listing request."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def sanitize_log_value(value: Any) -> Any:
    """Escape control characters so client data cannot forge log lines."""

    if not isinstance(value, str):
        return value
    return _CONTROL_CHAR_PATTERN.sub(_escape_control_char, value)


def _escape_control_char(match: "re.Match[str]") -> str:
    char = match.group()
    return {"\n": "\\n", "\r": "\\r"}.get(char, f"\\x{ord(char):02x}")


class RequestAwareLogger(logging.LoggerAdapter):
    """Prefixes messages logged inside a request with its ``request_id``."""

    def __init__(self, logger: logging.Logger) -> None:
        super().__init__(logger, {})

    def process(self, msg, kwargs):
        request_id = getattr(g, "request_id", None) if has_request_context() else None
        if request_id:
            msg = f"request_id={request_id} {msg}"
        return msg, kwargs


lifecycle_logger = RequestAwareLogger(logging.getLogger("tgfilehost.lifecycle"))


def configure_logging(settings: Settings) -> None:
    """Set the root level and attach a rotating file handler when a log dir is set."""

    numeric_level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logging.getLogger("tgfilehost").setLevel(numeric_level)
    if settings.logs_dir is None:
        return

    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = settings.logs_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)


@dataclass
class Services:
    settings: Settings
    store: KeyValueStore
    hosting: TelegramClient
    cursors: URLSafeSerializer


def _services() -> Services:
    return current_app.extensions["tgfilehost"]


def now_ms() -> int:
    return int(time.time() * 1000)


def short_id(length: int = ID_LENGTH) -> str:
    """Random alphanumeric identifier for a stored file."""

    token = ""
    while len(token) < length:
        token += _NON_ALNUM_PATTERN.sub("", secrets.token_urlsafe(length))
    return token[:length]


def safe_download_name(filename: str, file_id: str) -> str:
    if not filename:
        return f"{file_id}.bin"
    return _UNSAFE_FILENAME_PATTERN.sub("_", filename)


def public_base_url(settings: Settings) -> str:
    if settings.public_base_url:
        return settings.public_base_url
    return request.host_url.rstrip("/")


def file_url(settings: Settings, file_id: str) -> str:
    return f"{public_base_url(settings)}/file/{file_id}"


def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    candidates = [
        request.headers.get("CF-Connecting-IP", ""),
        forwarded.split(",")[0].strip(),
        request.headers.get("X-Real-IP", ""),
        request.remote_addr or "",
    ]
    return next((candidate for candidate in candidates if candidate), "")


def measure_upload(upload: FileStorage) -> int:
    """Byte count of the spooled upload stream; the stream is rewound afterwards."""

    stream = upload.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def _reject_too_large(settings: Settings, size: int) -> None:
    lifecycle_logger.warning(
        "upload_rejected reason=too_large size=%d limit=%d",
        size,
        settings.max_upload_bytes,
    )
    raise ClientInputError(f"file too large (>{settings.max_upload_mb}MB)", 413)


@contextmanager
def spooled_part(part: FileStorage) -> Iterator[FileStorage]:
    """Yield *part* and close its spooled stream once the upload is handled."""

    try:
        yield part
    finally:
        stream = getattr(part, "stream", None)
        if stream is not None:
            try:
                stream.close()
            except OSError as error:
                lifecycle_logger.warning(
                    "upload_stream_close_failed filename=%s error=%s",
                    sanitize_log_value(part.filename or "image"),
                    sanitize_log_value(str(error)),
                )



def _extract_upload() -> FileStorage:
    content_type = request.headers.get("Content-Type", "")
    if "multipart/form-data" not in content_type:
        raise ClientInputError("expect multipart/form-data")

    for field_name in UPLOAD_FIELDS:
        upload = request.files.get(field_name)
        if upload is not None:
            return upload
        if request.form.get(field_name):
            # A plain text field carries no file content.
            raise ClientInputError(NO_FILE_MESSAGE)
    raise ClientInputError(NO_FILE_MESSAGE)


def _persist_record(services: Services, document_ref: str, document_path: str, upload: FileStorage, size: int) -> FileRecord:
    for attempt in range(1, MAX_ID_ATTEMPTS + 1):
        record = FileRecord(
            id=short_id(),
            external_file_ref=document_ref,
            external_file_path=document_path,
            filename=upload.filename or "image",
            mime=upload.content_type or "",
            size=size or 0,
            created_at=now_ms(),
            source_ip=client_ip(),
            user_agent=request.headers.get("User-Agent", ""),
        )
        try:
            save_record(services.store, record)
            return record
        except KeyExistsError:
            lifecycle_logger.warning(
                "upload_id_collision file_id=%s attempt=%d", record.id, attempt
            )
    raise StorageError("Could not allocate a unique file id")


def handle_upload() -> Response:
    services = _services()
    settings = services.settings
    upload = _extract_upload()

    with spooled_part(upload) as part:
        # The part header is client supplied; it may only shortcut a rejection.
        declared = part.content_length or 0
        if declared > settings.max_upload_bytes:
            _reject_too_large(settings, declared)
        size = measure_upload(part)
        if size > settings.max_upload_bytes:
            _reject_too_large(settings, size)

        document = services.hosting.send_document(
            part.stream, part.filename or "image", part.mimetype or None
        )
        try:
            record = _persist_record(services, document.file_id, document.file_path, part, size)
        except StorageError:
            # The bot already holds the document; keep its id for manual reconciliation.
            lifecycle_logger.error(
                "upload_metadata_failed tg_file_id=%s tg_file_path=%s",
                document.file_id,
                document.file_path,
            )
            raise

    lifecycle_logger.info(
        "file_uploaded file_id=%s filename=%s size=%d",
        record.id,
        sanitize_log_value(record.filename),
        record.size,
    )
    return jsonify({"id": record.id, "src": file_url(settings, record.id)})


def _relay_headers(upstream_headers: Any) -> Headers:
    headers = Headers()
    for name, value in upstream_headers.items():
        if name.lower() in HOP_BY_HOP_HEADERS:
            continue
        headers.add(name, value)
    if "Content-Encoding" in upstream_headers:
        headers.remove("Content-Length")
    return headers


def proxy_file(file_id: str) -> Response:
    services = _services()
    record = get_record(services.store, file_id)
    if record is None or not record.external_file_path:
        lifecycle_logger.warning("file_proxy_missing file_id=%s", sanitize_log_value(file_id))
        return Response("Not Found", status=404, mimetype="text/plain")

    try:
        upstream = services.hosting.open_file(record.external_file_path)
    except UpstreamError as error:
        lifecycle_logger.error(
            "file_proxy_upstream_failed file_id=%s status=%s error=%s",
            file_id,
            error.status_code,
            sanitize_log_value(str(error)),
        )
        return Response("Upstream Error", status=502, mimetype="text/plain")

    headers = _relay_headers(upstream.headers)
    headers["Cache-Control"] = IMMUTABLE_CACHE_CONTROL
    if "Content-Disposition" not in headers:
        safe_name = safe_download_name(record.filename, record.id)
        headers["Content-Disposition"] = f'inline; filename="{safe_name}"'
    if record.mime and "Content-Type" not in headers:
        headers["Content-Type"] = record.mime

    def generate() -> Iterator[bytes]:
        try:
            for chunk in upstream.iter_content(chunk_size=CHUNK_SIZE_BYTES):
                if chunk:
                    yield chunk
        finally:
            upstream.close()

    response = Response(generate(), status=200, headers=headers, direct_passthrough=True)
    response.call_on_close(upstream.close)
    lifecycle_logger.info("file_proxied file_id=%s", file_id)
    return response


def _parse_limit(raw: Optional[str]) -> int:
    try:
        value = int(raw) if raw else DEFAULT_LIST_LIMIT
    except ValueError:
        value = DEFAULT_LIST_LIMIT
    if value <= 0:
        value = DEFAULT_LIST_LIMIT
    return min(value, MAX_LIST_LIMIT)


def _decode_cursor(services: Services, raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    try:
        start_key = services.cursors.loads(raw)
    except BadSignature as error:
        raise ClientInputError("invalid cursor") from error
    if not isinstance(start_key, str) or not start_key.startswith(FILE_KEY_PREFIX):
        raise ClientInputError("invalid cursor")
    return start_key


def _send_static(asset: str) -> Response:
    """Serve *asset* from the static directory, Pages style."""

    if request.method not in ("GET", "HEAD"):
        return Response("Method Not Allowed", status=405, mimetype="text/plain")

    static_dir = str(_services().settings.static_dir)
    base = asset.strip("/")
    if base:
        candidates = [base, f"{base}.html", f"{base}/index.html"]
    else:
        candidates = ["index.html"]
    for candidate in candidates:
        full_path = safe_join(static_dir, candidate)
        if full_path is not None and os.path.isfile(full_path):
            return send_from_directory(static_dir, candidate)
    return Response("Not Found", status=404, mimetype="text/plain")


bp = Blueprint("tgfilehost", __name__)


@bp.before_app_request
def add_request_id() -> None:
    supplied = request.headers.get("X-Request-ID", "")
    g.request_id = supplied if _REQUEST_ID_PATTERN.fullmatch(supplied) else uuid.uuid4().hex


@bp.after_app_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@bp.after_app_request
def add_security_headers(response: Response):
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@bp.app_errorhandler(ClientInputError)
def handle_client_input_error(error: ClientInputError):
    lifecycle_logger.warning(
        "client_input_rejected path=%s status=%d error=%s",
        sanitize_log_value(request.path),
        error.status_code,
        sanitize_log_value(error.message),
    )
    return jsonify({"error": error.message}), error.status_code


@bp.app_errorhandler(413)
def handle_file_too_large(error):
    limit_mb = _services().settings.max_upload_mb
    return jsonify({"error": f"file too large (>{limit_mb}MB)"}), 413


@bp.app_errorhandler(StorageError)
def handle_storage_error(error: StorageError):
    lifecycle_logger.error("storage_failed error=%s", sanitize_log_value(str(error)))
    return jsonify({"error": str(error)}), 500


@bp.route("/admin", methods=ALL_METHODS)
@bp.route("/admin/", methods=ALL_METHODS)
@bp.route("/admin/<path:asset>", methods=ALL_METHODS)
@require_basic_auth
def admin_page(asset: str = ""):
    return _send_static(f"admin/{asset}" if asset else "admin")


@bp.route("/upload", methods=["POST"])
@bp.route("/api/upload", methods=["POST"])
def upload():
    try:
        return handle_upload()
    except (ClientInputError, HTTPException):
        raise
    except Exception as error:
        lifecycle_logger.exception("upload_failed error=%s", sanitize_log_value(str(error)))
        return jsonify({"error": str(error)}), 500


@bp.route("/file/", methods=["GET"])
@bp.route("/file/<path:file_path>", methods=["GET"])
def serve_file(file_path: str = ""):
    file_id = file_path.split("/")[-1]
    if not file_id:
        raise ClientInputError("missing id")
    return proxy_file(file_id)


@bp.route("/api/admin/list", methods=["GET"])
@require_basic_auth
def admin_list():
    services = _services()
    limit = _parse_limit(request.args.get("limit"))
    start_key = _decode_cursor(services, request.args.get("cursor"))

    listing = services.store.list(prefix=FILE_KEY_PREFIX, limit=limit, cursor=start_key)
    items = []
    for key in listing.keys:
        try:
            raw = services.store.get(key)
            record = FileRecord.from_json(raw) if raw is not None else None
        except (StorageError, ValueError) as error:
            lifecycle_logger.warning(
                "admin_list_record_skipped key=%s error=%s",
                sanitize_log_value(key),
                sanitize_log_value(str(error)),
            )
            continue
        if record is None:
            continue
        items.append(record.summary(file_url(services.settings, record.id)))

    next_cursor = services.cursors.dumps(listing.cursor) if listing.cursor else None
    return jsonify({"items": items, "cursor": next_cursor, "list_complete": listing.list_complete})


@bp.route("/api/admin/delete/", methods=["DELETE"])
@bp.route("/api/admin/delete/<path:file_path>", methods=["DELETE"])
@require_basic_auth
def admin_delete(file_path: str = ""):
    file_id = file_path.split("/")[-1]
    delete_record(_services().store, file_id)
    lifecycle_logger.info("file_deleted file_id=%s", sanitize_log_value(file_id))
    return jsonify({"ok": True})


@bp.route("/api/ping", methods=["GET"])
def ping():
    settings = _services().settings
    return jsonify({"ok": True, "ts": now_ms(), "telemetry_disabled": settings.disable_telemetry})


@bp.route("/", methods=ALL_METHODS)
@bp.route("/<path:asset>", methods=ALL_METHODS)
def static_passthrough(asset: str = ""):
    return _send_static(asset)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[KeyValueStore] = None,
    hosting: Optional[TelegramClient] = None,
) -> Flask:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    app = Flask(__name__, static_folder=None)
    app.config["TGFILEHOST_SETTINGS"] = settings
    # Leave room for multipart framing so oversize files still reach the size check.
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_bytes + BYTES_PER_MB
    app.extensions["tgfilehost"] = Services(
        settings=settings,
        store=store or KeyValueStore(settings.db_path),
        hosting=hosting or TelegramClient(settings),
        cursors=URLSafeSerializer(
            settings.secret_key or secrets.token_hex(32), salt="tgfilehost.admin-list-cursor"
        ),
    )
    app.register_blueprint(bp)

    if settings.auth_enabled:
        lifecycle_logger.info("admin_auth enabled=true")
    else:
        logging.getLogger("tgfilehost.security").warning(
            "Admin endpoints are not protected. Set BASIC_USER and BASIC_PASS to enable Basic Auth."
        )
    if not settings.hosting_configured:
        logging.getLogger("tgfilehost.config").warning(
            "TG_BOT_TOKEN / TG_CHAT_ID are not set; uploads will fail."
        )
    return app
