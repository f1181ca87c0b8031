"""Text extraction for evidence files.

- image / pdf: OCR through a Read-API compatible service (submit, then poll
  the operation until it reaches a terminal state)
- text: decoded directly
- docx: python-docx, paragraphs then table rows
- audio: speech-to-text when a speech service is configured, otherwise
  stored without a transcript
- video and anything else: no extraction
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Optional

import httpx
from docx import Document as DocxDocument

from .config import Settings
from .errors import ExtractionTimeoutError, UpstreamServiceError

log = logging.getLogger(__name__)

_EXTENSIONS = {
    "pdf": {"pdf"},
    "image": {"png", "jpg", "jpeg", "bmp", "tif", "tiff", "gif", "webp"},
    "audio": {"wav", "mp3", "m4a", "aac", "ogg", "flac"},
    "video": {"mp4", "mov", "avi", "mkv", "webm"},
    "text": {"txt", "log", "csv", "json", "xml"},
    "docx": {"docx"},
    "office": {"pptx", "xlsx"},
}

OCR_TYPES = {"image", "pdf"}
EXTRACTABLE_TYPES = OCR_TYPES | {"text", "docx", "audio"}


def classify_file_type(file_name: str) -> str:
    ext = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    for file_type, extensions in _EXTENSIONS.items():
        if ext in extensions:
            return file_type
    return "file"


def needs_extraction(file_type: str) -> bool:
    return file_type in EXTRACTABLE_TYPES


@dataclass(frozen=True)
class ExtractionResult:
    text: str
    lines: int
    language: Optional[str] = None


def decode_text(content: bytes) -> str:
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def extract_docx(content: bytes) -> str:
    doc = DocxDocument(BytesIO(content))
    parts: list[str] = []

    for p in doc.paragraphs:
        t = (p.text or "").strip()
        if t:
            parts.append(t)

    for table in doc.tables:
        for row in table.rows:
            cells = [(c.text or "").strip() for c in row.cells]
            line = "\t".join(c for c in cells if c)
            if line.strip():
                parts.append(line)

    return "\n".join(parts)


def _upstream_from_response(
    resp: httpx.Response, what: str, service: str = "ocr"
) -> UpstreamServiceError:
    code = None
    try:
        body = resp.json()
        code = (body.get("error") or {}).get("code")
    except ValueError:
        body = resp.text
    return UpstreamServiceError(
        f"{what} failed: {resp.status_code} {body}",
        service=service,
        status_code=resp.status_code,
        error_code=code,
    )


class ReadApiClient:
    """Minimal client for the asynchronous Read (OCR) operation."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        endpoint: str,
        key: str,
        *,
        max_attempts: int = 20,
        poll_interval: float = 0.75,
    ):
        self.http = http
        self.endpoint = endpoint.rstrip("/")
        self.key = key
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval

    @property
    def analyze_url(self) -> str:
        return f"{self.endpoint}/vision/v3.2/read/analyze"

    async def submit(self, content: bytes) -> str:
        resp = await self.http.post(
            self.analyze_url,
            content=content,
            headers={
                "Ocp-Apim-Subscription-Key": self.key,
                "Content-Type": "application/octet-stream",
            },
        )
        if resp.status_code >= 400:
            raise _upstream_from_response(resp, "OCR analyze")
        operation = resp.headers.get("operation-location")
        if not operation:
            raise UpstreamServiceError("OCR service returned no Operation-Location header", service="ocr")
        return operation

    async def poll(self, operation_url: str) -> ExtractionResult:
        for _ in range(self.max_attempts):
            await asyncio.sleep(self.poll_interval)
            resp = await self.http.get(operation_url, headers={"Ocp-Apim-Subscription-Key": self.key})
            if resp.status_code >= 400:
                raise _upstream_from_response(resp, "OCR analyzeResults")
            body = resp.json()
            status = body.get("status")

            if status == "succeeded":
                pages = (body.get("analyzeResult") or {}).get("readResults") or []
                lines = [ln.get("text", "") for p in pages for ln in (p.get("lines") or [])]
                language = pages[0].get("language") if pages else None
                return ExtractionResult(text="\n".join(lines), lines=len(lines), language=language)
            if status == "failed":
                error = body.get("error") or {}
                raise UpstreamServiceError(
                    f"OCR operation failed: {body}",
                    service="ocr",
                    error_code=error.get("code"),
                )

        raise ExtractionTimeoutError(
            f"OCR did not finish after {self.max_attempts} polls",
            service="ocr",
        )

    async def read(self, content: bytes) -> ExtractionResult:
        operation = await self.submit(content)
        return await self.poll(operation)


class SpeechClient:
    """Speech-to-text through the fast transcription REST operation.

    One multipart POST carries the audio and a JSON definition; the service
    answers with the recognised phrases once the whole file is transcribed.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        endpoint: str,
        key: str,
        *,
        language: str = "en-US",
        api_version: str = "2024-11-15",
    ):
        self.http = http
        self.endpoint = endpoint.rstrip("/")
        self.key = key
        self.language = language
        self.api_version = api_version

    @property
    def transcribe_url(self) -> str:
        return f"{self.endpoint}/speechtotext/transcriptions:transcribe"

    async def transcribe(self, content: bytes) -> ExtractionResult:
        resp = await self.http.post(
            self.transcribe_url,
            params={"api-version": self.api_version},
            headers={"Ocp-Apim-Subscription-Key": self.key},
            files={"audio": ("audio", content, "application/octet-stream")},
            data={"definition": json.dumps({"locales": [self.language]})},
        )
        if resp.status_code >= 400:
            raise _upstream_from_response(resp, "speech transcribe", service="speech")

        body = resp.json()
        segments = [
            p.get("text", "").strip()
            for p in body.get("phrases") or []
            if (p.get("text") or "").strip()
        ]
        language = next(
            (p.get("locale") for p in body.get("phrases") or [] if p.get("locale")),
            self.language,
        )
        return ExtractionResult(text=" ".join(segments), lines=len(segments), language=language)


class TextExtractor:
    def __init__(self, ocr: Optional[ReadApiClient] = None, speech: Optional[SpeechClient] = None):
        self.ocr = ocr
        self.speech = speech

    @classmethod
    def from_settings(cls, settings: Settings, http: httpx.AsyncClient) -> "TextExtractor":
        ocr = None
        if settings.read_api_endpoint:
            ocr = ReadApiClient(
                http,
                settings.read_api_endpoint,
                settings.read_api_key,
                max_attempts=settings.read_api_max_attempts,
                poll_interval=settings.read_api_poll_interval,
            )
        speech = None
        speech_endpoint = settings.speech_endpoint or (
            f"https://{settings.speech_region}.api.cognitive.microsoft.com" if settings.speech_region else ""
        )
        if settings.speech_key and speech_endpoint:
            speech = SpeechClient(http, speech_endpoint, settings.speech_key, language=settings.speech_language)
        return cls(ocr, speech)

    async def extract(self, content: bytes, file_type: str) -> Optional[ExtractionResult]:
        if file_type in OCR_TYPES:
            if self.ocr is None:
                raise UpstreamServiceError("OCR service is not configured", service="ocr")
            return await self.ocr.read(content)

        if file_type == "audio":
            if self.speech is None:
                # still completes; the upload must not stay stuck in PROCESSING
                log.warning("speech service not configured; audio stored without transcript")
                return None
            return await self.speech.transcribe(content)

        if file_type == "text":
            text = decode_text(content)
            return ExtractionResult(text=text, lines=len(text.splitlines()))

        if file_type == "docx":
            text = await asyncio.to_thread(extract_docx, content)
            return ExtractionResult(text=text, lines=len(text.splitlines()))

        log.debug("no extraction path for file_type=%s", file_type)
        return None
