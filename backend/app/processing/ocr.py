"""
OCR Provider — AWS Textract
═══════════════════════════

Design: Strategy
────────────────
Stages depend on the OCRProvider interface only. The production backend
is Textract AnalyzeDocument (TABLES + FORMS); tests inject a fake that
returns a canned block graph.

Pre-flight checks (before any API call):
  - empty payload                → EmptyFileError
  - larger than the sync ceiling → FileTooLargeError
  - not PDF / PNG / JPEG / TIFF  → UnsupportedFormatError

Provider failures:
  - throttling, 5xx, connection and read timeouts, and our own
    asyncio timeout are raised as TransientProviderError so the stage
    wrapper retries them with backoff
  - every other ClientError propagates unchanged
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Sequence

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from app.core.config import settings
from app.core.exceptions import (
    EmptyFileError,
    FileTooLargeError,
    TransientProviderError,
    UnsupportedFormatError,
)
from app.processing.textract_blocks import BlockGraphResult, parse_block_graph

logger = logging.getLogger(__name__)

DEFAULT_FEATURES: tuple[str, ...] = ("TABLES", "FORMS")

# Magic bytes → format name
_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"%PDF", "pdf"),
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpeg"),
    (b"II*\x00", "tiff"),
    (b"MM\x00*", "tiff"),
)

_TRANSIENT_CODES = frozenset({
    "ThrottlingException",
    "ProvisionedThroughputExceededException",
    "LimitExceededException",
    "InternalServerError",
    "ServiceUnavailableException",
    "RequestTimeout",
})


def detect_format(data: bytes) -> str | None:
    """Return pdf | png | jpeg | tiff, or None when the bytes match none of them."""
    for magic, name in _SIGNATURES:
        if data.startswith(magic):
            return name
    return None


def validate_for_ocr(data: bytes, max_bytes: int | None = None) -> str:
    """Run the provider's pre-flight checks; returns the detected format."""
    limit = max_bytes or settings.ocr_max_sync_bytes
    if not data:
        raise EmptyFileError()
    if len(data) > limit:
        raise FileTooLargeError(len(data), limit)
    fmt = detect_format(data)
    if fmt is None:
        raise UnsupportedFormatError(data[:8].hex() or "unknown")
    return fmt


class OCRProvider(ABC):
    """Document analysis backend returning a parsed block graph."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def analyze(
        self,
        data: bytes,
        features: Sequence[str] = DEFAULT_FEATURES,
        inline_tables: bool = False,
    ) -> BlockGraphResult: ...


class TextractProvider(OCRProvider):
    """
    Textract AnalyzeDocument (synchronous API).

    boto3 is blocking, so the call runs in the default executor and is
    bounded by settings.ocr_timeout_seconds.

    IAM permissions required on the worker role:
      textract:AnalyzeDocument
    """

    def __init__(self, region: str | None = None, timeout_seconds: int | None = None) -> None:
        self._region = region or settings.ocr_region
        self._timeout = timeout_seconds or settings.ocr_timeout_seconds

    @property
    def name(self) -> str:
        return "textract"

    async def analyze(
        self,
        data: bytes,
        features: Sequence[str] = DEFAULT_FEATURES,
        inline_tables: bool = False,
    ) -> BlockGraphResult:
        fmt = validate_for_ocr(data)
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()

        try:
            blocks = await asyncio.wait_for(
                loop.run_in_executor(None, self._analyze_sync, data, list(features)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Textract timed out | after=%ds", self._timeout)
            raise TransientProviderError(self.name, f"timed out after {self._timeout}s") from exc
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as exc:
            raise TransientProviderError(self.name, str(exc)) from exc
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _TRANSIENT_CODES:
                logger.warning("Textract transient error | code=%s", code)
                raise TransientProviderError(self.name, code) from exc
            raise

        result = parse_block_graph(blocks, inline_tables=inline_tables)
        logger.info(
            "Textract | format=%s blocks=%d pages=%d lines=%d tables=%d forms=%d elapsed_ms=%.0f",
            fmt, len(blocks), len(result.pages), result.line_count,
            len(result.tables), len(result.forms), (time.monotonic() - t0) * 1000,
        )
        return result

    def _analyze_sync(self, data: bytes, features: list[str]) -> list[dict]:
        import boto3

        client = boto3.client("textract", region_name=self._region)
        response = client.analyze_document(
            Document={"Bytes": data},
            FeatureTypes=features,
        )
        return response.get("Blocks", [])
