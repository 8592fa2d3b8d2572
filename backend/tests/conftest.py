"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : db_engine, session_factory, db_session, session_scope,
                    blob_store, search_index, failing_search_index,
                    ocr_provider, metadata_store,
                    stage_deps, make_file, make_receipt, make_document

Environment strategy:
  - Persistence runs against a throwaway SQLite file per test through the
    async engine (aiosqlite), so soft/hard delete filters run as real SQL.
  - Blob storage, search index and OCR provider are in-memory fakes.
  - Job metadata uses the in-memory backend; Celery is never contacted.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # stage-to-stage pipeline tests
"""

from __future__ import annotations

import os
import tempfile
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncGenerator

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("OPENAI_API_KEY",        "")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("JOB_METADATA_BACKEND",  "memory")
os.environ.setdefault("WORKING_DIR",           tempfile.mkdtemp(prefix="docpulse-test-"))
os.environ.setdefault("CHAIN_START_DELAY_SECONDS", "0")

from app.entities.registry import type_tag_for  # noqa: E402
from app.models.entities import Document, LineItem, Receipt  # noqa: E402
from app.models.files import Base, ExtractionLink, File, FileStatus  # noqa: E402
from app.processing.extractor import HeuristicFieldExtractor  # noqa: E402
from app.processing.ocr import OCRProvider  # noqa: E402
from app.processing.textract_blocks import BlockGraphResult, FormField  # noqa: E402
from app.search.index import SearchIndex  # noqa: E402
from app.services.jobs import InMemoryMetadataBackend, JobHistoryRecorder, JobMetadataStore  # noqa: E402
from app.storage.s3 import build_path  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    # pysqlite/aiosqlite defer BEGIN; emit it ourselves so SAVEPOINT works
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(
        bind=db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False,
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def session_scope(session_factory):
    """Same contract as app.db.session.get_admin_db, bound to the test database."""

    @asynccontextmanager
    async def _scope():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return _scope


# ─────────────────────────────────────────────────────────────────────────────
# Collaborator fakes
# ─────────────────────────────────────────────────────────────────────────────

class FakeBlobStore:
    """Dict-backed BlobStore with the same method signatures."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_store = False

    async def store(self, data, user_id, guid, kind, variant, ext) -> str:
        if self.fail_store:
            raise ConnectionError("blob store unavailable")
        key = build_path(kind, user_id, guid, variant, ext)
        self.objects[key] = data
        return key

    async def read(self, path: str) -> bytes:
        if path not in self.objects:
            raise FileNotFoundError(path)
        return self.objects[path]

    async def exists(self, path: str) -> bool:
        return path in self.objects

    async def delete(self, path: str) -> bool:
        return self.objects.pop(path, None) is not None

    async def move(self, source: str, destination: str) -> str:
        self.objects[destination] = self.objects.pop(source)
        return destination


class FakeSearchIndex(SearchIndex):
    def __init__(self, fail: bool = False) -> None:
        self.indexed: set[tuple[str, int]] = set()
        self.unindexed: list[tuple[str, int]] = []
        self.fail = fail

    async def index(self, entity) -> None:
        if self.fail:
            raise ConnectionError("search backend down")
        self.indexed.add((type_tag_for(entity), entity.id))

    async def unindex(self, entity) -> None:
        if self.fail:
            raise ConnectionError("search backend down")
        ref = (type_tag_for(entity), entity.id)
        self.indexed.discard(ref)
        self.unindexed.append(ref)


class FakeOCRProvider(OCRProvider):
    def __init__(self, result: BlockGraphResult | None = None) -> None:
        self.result = result or BlockGraphResult()
        self.calls: list[dict] = []
        self.error: Exception | None = None

    @property
    def name(self) -> str:
        return "fake"

    async def analyze(self, data, features=("TABLES", "FORMS"), inline_tables=False) -> BlockGraphResult:
        self.calls.append({"size": len(data), "inline_tables": inline_tables})
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def search_index() -> FakeSearchIndex:
    return FakeSearchIndex()


@pytest.fixture
def failing_search_index() -> FakeSearchIndex:
    return FakeSearchIndex(fail=True)


@pytest.fixture
def receipt_ocr_result() -> BlockGraphResult:
    return BlockGraphResult(
        text="REMA 1000\nMelk 1L 21,90\nBrød 34,50\nTotal 56,40",
        confidence=0.97,
        pages=[1],
        forms=[
            FormField(key="Total", value="56,40", confidence=0.95),
            FormField(key="Date", value="2024-03-14", confidence=0.93),
        ],
        line_count=4,
    )


@pytest.fixture
def ocr_provider(receipt_ocr_result) -> FakeOCRProvider:
    return FakeOCRProvider(receipt_ocr_result)


@pytest.fixture
def metadata_store() -> JobMetadataStore:
    return JobMetadataStore(InMemoryMetadataBackend(), ttl_seconds=3600)


@pytest.fixture
def stage_deps(metadata_store, blob_store, ocr_provider, search_index, session_scope):
    from app.workers.stages import StageDependencies

    return StageDependencies(
        store=metadata_store,
        blob_store=blob_store,
        ocr=ocr_provider,
        extractor=HeuristicFieldExtractor(),
        search=search_index,
        history=JobHistoryRecorder(),
        session_scope=session_scope,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Owners and sample bytes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.UUID("11111111-1111-4111-8111-111111111111")


@pytest.fixture
def other_user_id() -> uuid.UUID:
    return uuid.UUID("22222222-2222-4222-8222-222222222222")


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal PDF — passes the magic-byte check, has no text layer."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        b"2 0 obj\n<< /Type /Pages /Kids [3 0 R] /Count 1 >>\nendobj\n"
        b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>\nendobj\n"
        b"xref\n0 4\n"
        b"0000000000 65535 f \n"
        b"0000000009 00000 n \n"
        b"0000000058 00000 n \n"
        b"0000000115 00000 n \n"
        b"trailer\n<< /Size 4 /Root 1 0 R >>\n"
        b"startxref\n195\n%%EOF"
    )


@pytest.fixture
def sample_png_bytes() -> bytes:
    return b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture
def sample_txt_bytes() -> bytes:
    return b"Lease agreement\nBetween Alice and Bob\nStarting 1 May 2024.\n"


# ─────────────────────────────────────────────────────────────────────────────
# Seed factories
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_file(session_scope, blob_store, user_id):
    """Factory: persist a File (committed) and optionally its original blob."""

    async def _build(
        status: str = FileStatus.COMPLETED,
        file_type: str = "receipt",
        content: bytes = b"\x89PNG\r\n\x1a\nreceipt",
        ext: str = "png",
        owner: uuid.UUID | None = None,
        store_original: bool = True,
        file_hash: str | None = None,
    ) -> File:
        import hashlib

        owner = owner or user_id
        guid = uuid.uuid4()
        path = build_path(file_type, owner, guid, "original", ext)
        if store_original:
            blob_store.objects[path] = content
        async with session_scope() as session:
            record = File(
                guid=guid,
                user_id=owner,
                file_type=file_type,
                status=status,
                original_filename=f"upload.{ext}",
                extension=ext,
                size_bytes=len(content),
                file_hash=file_hash or hashlib.sha256(content).hexdigest(),
                s3_original_path=path,
                file_metadata={},
            )
            session.add(record)
            await session.flush()
        return record

    return _build


@pytest.fixture
def make_receipt(session_scope):
    """Factory: a live Receipt with line items and its primary extraction link."""

    async def _build(file: File, items: int = 2, merchant_name: str = "REMA 1000") -> Receipt:
        async with session_scope() as session:
            receipt = Receipt(
                file_id=file.id,
                user_id=file.user_id,
                merchant_name=merchant_name,
                total_amount=Decimal("56.40"),
                currency="NOK",
            )
            session.add(receipt)
            await session.flush()
            session.add_all(
                LineItem(receipt_id=receipt.id, description=f"item {n}", total_price=Decimal("10.00"))
                for n in range(items)
            )
            session.add(
                ExtractionLink(file_id=file.id, entity_type="receipt", entity_id=receipt.id, is_primary=True)
            )
        return receipt

    return _build


@pytest.fixture
def make_document(session_scope):
    async def _build(file: File, title: str = "Lease agreement") -> Document:
        async with session_scope() as session:
            document = Document(
                file_id=file.id, user_id=file.user_id, document_title=title, content="Lease agreement",
            )
            session.add(document)
            await session.flush()
            session.add(
                ExtractionLink(file_id=file.id, entity_type="document", entity_id=document.id, is_primary=True)
            )
        return document

    return _build
