"""
Text Extraction
═══════════════

Turns a document into markdown/plain text for its digest.

Method selection (by source_type, then declared file_type):
    source_type = url              → web_scrape    (httpx + BeautifulSoup)
    source_type = text             → raw_text      (documents.raw_content)
    file_type contains "pdf"       → pdf_extract   (pypdf)
    file_type word / officedocument→ docx_extract  (python-docx)
    file_type image/*              → ocr           (OpenAI vision model)
    anything else / unknown        → text_extract  (UTF-8, latin-1 fallback)

Parsers are synchronous and CPU-bound, so they run in the default executor
to keep the event loop free. Every failure surfaces as ExtractionError with
a message suitable for digest.extraction_error.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
from dataclasses import dataclass, field
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from app.core.config import settings
from app.core.exceptions import ExtractionError
from app.schemas.documents import ExtractionMethod, SourceType
from app.storage.s3 import S3StorageService

logger = logging.getLogger(__name__)

_USER_AGENT = "Mozilla/5.0 (compatible; DocumentIndexer/1.0)"
_SCRAPE_DROP_TAGS = ("script", "style", "noscript", "nav", "footer", "header", "aside", "form")
_OCR_PROMPT = (
    "Extract all text from this image. Preserve the structure using markdown "
    "headings, lists and tables where appropriate. Return only the extracted text."
)


@dataclass
class ExtractionResult:
    text:     str
    method:   ExtractionMethod
    metadata: dict = field(default_factory=dict)

    @property
    def word_count(self) -> int:
        stripped = self.text.strip()
        return len(stripped.split()) if stripped else 0


def select_method(source_type: str | None, file_type: str | None) -> ExtractionMethod:
    if source_type == SourceType.URL.value:
        return ExtractionMethod.WEB_SCRAPE
    if source_type == SourceType.TEXT.value:
        return ExtractionMethod.RAW_TEXT
    if not file_type:
        return ExtractionMethod.TEXT_EXTRACT
    if "pdf" in file_type:
        return ExtractionMethod.PDF_EXTRACT
    if "word" in file_type or "officedocument" in file_type:
        return ExtractionMethod.DOCX_EXTRACT
    if file_type.startswith("image/"):
        return ExtractionMethod.OCR
    return ExtractionMethod.TEXT_EXTRACT


class TextExtractor:
    """
    One instance per processing run, bound to the scope's storage.

    Usage:
        result = await TextExtractor(storage).extract(document)
        digest.content_md = result.text
    """

    def __init__(
        self,
        storage: S3StorageService,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._storage = storage
        self._http_transport = http_transport

    async def extract(self, document) -> ExtractionResult:
        method = select_method(document.source_type, document.file_type)

        if method is ExtractionMethod.WEB_SCRAPE:
            if not document.original_url:
                raise ExtractionError("No original_url found for URL-type document")
            text, metadata = await self._scrape(document.original_url)
            return ExtractionResult(text=text, method=method, metadata=metadata)

        if method is ExtractionMethod.RAW_TEXT:
            return ExtractionResult(text=document.raw_content or "", method=method)

        if not document.storage_path:
            raise ExtractionError("No storage_path found for this document")

        try:
            data = await self._storage.get_object(document.storage_path)
        except FileNotFoundError as exc:
            raise ExtractionError(f"Failed to download file: {exc}") from exc

        loop = asyncio.get_running_loop()
        try:
            if method is ExtractionMethod.PDF_EXTRACT:
                text = await loop.run_in_executor(None, _extract_pdf, data)
            elif method is ExtractionMethod.DOCX_EXTRACT:
                text = await loop.run_in_executor(None, _extract_docx, data)
            elif method is ExtractionMethod.OCR:
                text = await self._ocr(data, document.file_type or "image/png")
            else:
                text = _decode_text(data)
        except ExtractionError:
            raise
        except Exception as exc:
            logger.warning("Text extraction failed | method=%s error=%s", method.value, exc)
            raise ExtractionError(f"{method.value} failed: {exc}") from exc

        return ExtractionResult(text=text, method=method)

    # ------------------------------------------------------------------
    # URL documents
    # ------------------------------------------------------------------

    async def _scrape(self, url: str) -> tuple[str, dict]:
        async with httpx.AsyncClient(
            timeout=settings.url_fetch_timeout_seconds,
            follow_redirects=True,
            transport=self._http_transport,
        ) as client:
            try:
                resp = await client.get(
                    url,
                    headers={
                        "User-Agent": _USER_AGENT,
                        "Accept": "text/html,application/xhtml+xml",
                    },
                )
            except httpx.HTTPError as exc:
                raise ExtractionError(f"Failed to fetch URL: {url} ({exc})") from exc

        if resp.status_code >= 400:
            raise ExtractionError(f"Failed to fetch URL ({resp.status_code}): {url}")

        return html_to_markdown(resp.text, url)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def _ocr(self, data: bytes, mime_type: str) -> str:
        from openai import AsyncOpenAI

        if not settings.openai_api_key:
            raise ExtractionError("OPENAI_API_KEY is not configured — required for image OCR")

        client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.ocr_timeout_seconds,
        )
        data_url = f"data:{mime_type};base64,{base64.b64encode(data).decode()}"
        response = await client.chat.completions.create(
            model=settings.ocr_model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": _OCR_PROMPT},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                }
            ],
            max_tokens=4096,
        )
        return response.choices[0].message.content or ""


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def html_to_markdown(html: str, url: str) -> tuple[str, dict]:
    """Readable-content pass: headings, paragraphs and list items as markdown."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_SCRAPE_DROP_TAGS):
        tag.decompose()

    title = soup.title.get_text(strip=True) if soup.title else None
    description_tag = soup.find("meta", attrs={"name": "description"})
    description = description_tag.get("content") if description_tag else None

    root = soup.find("main") or soup.find("article") or soup.body or soup
    lines: list[str] = []
    for node in root.find_all(["h1", "h2", "h3", "h4", "h5", "h6", "p", "li", "pre"]):
        text = node.get_text(" ", strip=True)
        if not text:
            continue
        if node.name.startswith("h"):
            lines.append(f"{'#' * int(node.name[1])} {text}")
        elif node.name == "li":
            lines.append(f"- {text}")
        else:
            lines.append(text)

    metadata = {
        "source_title":       title or None,
        "source_description": description or None,
        "source_domain":      urlparse(url).netloc or None,
    }
    return "\n\n".join(lines), {k: v for k, v in metadata.items() if v}


def _extract_pdf(data: bytes) -> str:
    """Extract text from PDF bytes using pypdf."""
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n\n".join(pages)


def _extract_docx(data: bytes) -> str:
    """Extract text from DOCX bytes using python-docx."""
    import docx

    doc = docx.Document(io.BytesIO(data))
    return "\n".join(para.text for para in doc.paragraphs if para.text.strip())


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")
