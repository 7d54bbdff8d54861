"""Client for the Telegram Bot API endpoints used as file storage."""

import logging
from dataclasses import dataclass
from typing import IO, Any, Dict, Optional

import requests

from .config import Settings

logger = logging.getLogger("tgfilehost.telegram")


class UpstreamError(RuntimeError):
    """Raised when the Bot API fails or answers with an unexpected shape."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class HostingNotConfiguredError(UpstreamError):
    """Raised when the bot token or target chat is missing."""


@dataclass(frozen=True)
class StoredDocument:
    file_id: str
    file_path: str


def _json_or_empty(response: requests.Response) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


class TelegramClient:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _redact(self, error: Exception) -> str:
        text = str(error)
        if self.settings.bot_token:
            text = text.replace(self.settings.bot_token, "***")
        return text

    def _method_url(self, method: str) -> str:
        return f"{self.settings.api_base}/bot{self.settings.bot_token}/{method}"

    def file_url(self, file_path: str) -> str:
        return f"{self.settings.api_base}/file/bot{self.settings.bot_token}/{file_path}"

    def send_document(self, stream: IO[bytes], filename: str, mimetype: Optional[str] = None) -> StoredDocument:
        """Upload *stream* with ``sendDocument`` and resolve its download path."""

        if not self.settings.hosting_configured:
            raise HostingNotConfiguredError("Server not configured: TG_BOT_TOKEN / TG_CHAT_ID")

        files = {"document": (filename or "image", stream, mimetype or "application/octet-stream")}
        try:
            response = requests.post(
                self._method_url("sendDocument"),
                data={"chat_id": str(self.settings.chat_id)},
                files=files,
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as error:
            logger.error("send_document_failed error=%s", self._redact(error))
            raise UpstreamError(f"Telegram sendDocument failed: {self._redact(error)}") from error

        data = _json_or_empty(response)
        if not response.ok or not data.get("ok"):
            raise UpstreamError(
                data.get("description") or f"Telegram sendDocument failed: {response.status_code}",
                response.status_code,
            )

        document = (data.get("result") or {}).get("document") or {}
        file_id = document.get("file_id") or document.get("file_unique_id")
        if not file_id:
            raise UpstreamError("No file_id from Telegram")

        file_path = self.get_file_path(file_id)
        logger.info("document_stored file_id=%s file_path=%s", file_id, file_path)
        return StoredDocument(file_id=file_id, file_path=file_path)

    def get_file_path(self, file_id: str) -> str:
        try:
            response = requests.get(
                self._method_url("getFile"),
                params={"file_id": file_id},
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as error:
            logger.error("get_file_failed file_id=%s error=%s", file_id, self._redact(error))
            raise UpstreamError(f"Telegram getFile failed: {self._redact(error)}") from error

        data = _json_or_empty(response)
        if not response.ok or not data.get("ok"):
            raise UpstreamError(
                data.get("description") or f"Telegram getFile failed: {response.status_code}",
                response.status_code,
            )
        file_path = (data.get("result") or {}).get("file_path")
        if not file_path:
            raise UpstreamError("No file_path from Telegram")
        return file_path

    def open_file(self, file_path: str) -> requests.Response:
        """Start a streamed download; the caller must close the response."""

        try:
            response = requests.get(
                self.file_url(file_path),
                stream=True,
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as error:
            raise UpstreamError(f"Telegram file download failed: {self._redact(error)}") from error

        if not response.ok:
            response.close()
            raise UpstreamError(
                f"Telegram file download failed: {response.status_code}", response.status_code
            )
        return response
