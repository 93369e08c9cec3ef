"""
Checkpoint stores for change stream resume tokens.

Every store exposes ``async get()`` / ``async set(token)``; failures surface
as ``CheckpointError``.
"""

import asyncio
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

from bson import json_util
from prometheus_client import Counter
from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, JSON, String, UniqueConstraint, create_engine, text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import CheckpointError

logger = logging.getLogger(__name__)

Base = declarative_base()

checkpoint_saves_total = Counter(
    'outbox_checkpoint_saves_total',
    'Total checkpoint saves',
    ['status']
)

checkpoint_loads_total = Counter(
    'outbox_checkpoint_loads_total',
    'Total checkpoint loads',
    ['status']
)


def _validate_resume_token(token: Any) -> bool:
    """MongoDB resume tokens are non-empty documents (``{"_data": ...}``)."""
    return isinstance(token, dict) and len(token) > 0


class MemoryCheckpointStore:
    """In-process store. Loses its value on restart; for tests and dry runs."""

    def __init__(self, token: Any = None):
        self.token = token

    async def get(self) -> Optional[Any]:
        return self.token

    async def set(self, token: Any) -> None:
        self.token = token


class FileCheckpointStore:
    """
    Keeps the token as one Extended JSON document on disk.

    Writes go to a temp file in the same directory and are renamed over the
    target, so a crash never leaves a half-written checkpoint.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _read(self) -> Optional[Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CheckpointError(f"Cannot read checkpoint file {self.path}: {e}") from e
        if not raw.strip():
            return None
        try:
            return json_util.loads(raw)
        except ValueError as e:
            raise CheckpointError(f"Corrupted checkpoint file {self.path}: {e}") from e

    def _write(self, token: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(json_util.dumps(token))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except (OSError, TypeError) as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise CheckpointError(f"Cannot write checkpoint file {self.path}: {e}") from e

    async def get(self) -> Optional[Any]:
        return await asyncio.to_thread(self._read)

    async def set(self, token: Any) -> None:
        await asyncio.to_thread(self._write, token)


class OutboxCheckpoint(Base):
    """
    Outbox checkpoint model.

    Stores:
    - job_id: Relay instance identifier
    - collection: Watched namespace
    - resume_token: Change stream resume token (JSON)
    - records_processed: Checkpoints written so far
    - created_at: First checkpoint time
    - updated_at: Last update time
    """
    __tablename__ = "outbox_checkpoints"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    job_id = Column(String(255), nullable=False, index=True)
    collection = Column(String(255), nullable=False, index=True)
    resume_token = Column(JSON, nullable=False)
    records_processed = Column(BigInteger, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('job_id', 'collection', name='uq_outbox_checkpoints_job_collection'),
        Index('idx_outbox_checkpoints_updated_at', 'updated_at'),
    )


class SqlCheckpointStore:
    """
    SQL-backed checkpoint store, one row per (job_id, collection).

    Features:
    - Transactional upsert with row-level locking
    - Automatic retry on transient failures
    - Connection pooling

    Thread Safety: YES (session per call). ``get``/``set`` run the blocking
    calls in a worker thread.

    Example:
        >>> store = SqlCheckpointStore(database_url, job_id="relay-1", collection="outbox")
        >>> await store.set({"_data": "8263..."})
        >>> token = await store.get()
    """

    def __init__(self, database_url: str, job_id: str, collection: str = "*"):
        """
        Initialize checkpoint store.

        Args:
            database_url: SQLAlchemy connection URL
            job_id: Relay instance identifier
            collection: Watched namespace the token belongs to

        Raises:
            CheckpointError: If database connection fails
        """
        self.job_id = job_id
        self.collection = collection
        self.records_processed = 0

        if database_url.startswith("sqlite"):
            engine_options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        else:
            engine_options = {
                "pool_size": 5,
                "max_overflow": 10,
                "pool_recycle": 3600,
            }

        try:
            self.engine = create_engine(database_url, pool_pre_ping=True, echo=False, **engine_options)
            self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False)

            Base.metadata.create_all(self.engine)

            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            logger.info("SqlCheckpointStore initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize SqlCheckpointStore: {e}")
            raise CheckpointError(f"Database connection failed: {e}") from e

    async def get(self) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.load_checkpoint)

    async def set(self, token: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.save_checkpoint, token)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    def _upsert(self, resume_token: Dict[str, Any]) -> None:
        session: Session = self.SessionLocal()
        try:
            with session.begin():
                checkpoint = session.query(OutboxCheckpoint).filter_by(
                    job_id=self.job_id,
                    collection=self.collection
                ).with_for_update().first()

                if checkpoint:
                    checkpoint.resume_token = resume_token
                    checkpoint.records_processed = (checkpoint.records_processed or 0) + 1
                    checkpoint.updated_at = datetime.utcnow()
                    self.records_processed = checkpoint.records_processed
                else:
                    session.add(OutboxCheckpoint(
                        job_id=self.job_id,
                        collection=self.collection,
                        resume_token=resume_token,
                        records_processed=1
                    ))
                    self.records_processed = 1
        finally:
            session.close()

    def save_checkpoint(self, resume_token: Dict[str, Any]) -> None:
        """
        Save checkpoint (upsert).

        Args:
            resume_token: Change stream resume token

        Raises:
            CheckpointError: If save fails after retries
        """
        if not _validate_resume_token(resume_token):
            checkpoint_saves_total.labels(status='invalid').inc()
            raise CheckpointError("Invalid resume token structure")

        try:
            self._upsert(resume_token)
        except IntegrityError as e:
            logger.error(
                f"Integrity error saving checkpoint: {e}",
                extra={"job_id": self.job_id, "collection": self.collection}
            )
            checkpoint_saves_total.labels(status='error').inc()
            raise CheckpointError(f"Integrity error: {e}") from e
        except SQLAlchemyError as e:
            logger.error(
                f"Database error saving checkpoint: {e}",
                extra={"job_id": self.job_id, "collection": self.collection}
            )
            checkpoint_saves_total.labels(status='error').inc()
            raise CheckpointError(f"Database error: {e}") from e

        checkpoint_saves_total.labels(status='success').inc()
        logger.debug(
            f"Saved checkpoint for job {self.job_id}, collection {self.collection}",
            extra={
                "job_id": self.job_id,
                "collection": self.collection,
                "records_processed": self.records_processed
            }
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    def _select(self) -> Optional[OutboxCheckpoint]:
        session: Session = self.SessionLocal()
        try:
            checkpoint = session.query(OutboxCheckpoint).filter_by(
                job_id=self.job_id,
                collection=self.collection
            ).first()
            if checkpoint is not None:
                session.expunge(checkpoint)
            return checkpoint
        finally:
            session.close()

    def load_checkpoint(self) -> Optional[Dict[str, Any]]:
        """
        Load checkpoint for this job and collection.

        Returns:
            Resume token dict if exists, None otherwise

        Raises:
            CheckpointError: If load fails after retries
        """
        try:
            checkpoint = self._select()
        except SQLAlchemyError as e:
            logger.error(
                f"Database error loading checkpoint: {e}",
                extra={"job_id": self.job_id, "collection": self.collection}
            )
            checkpoint_loads_total.labels(status='error').inc()
            raise CheckpointError(f"Database error: {e}") from e

        if not checkpoint:
            checkpoint_loads_total.labels(status='not_found').inc()
            logger.debug(
                f"No checkpoint found for job {self.job_id}, collection {self.collection}",
                extra={"job_id": self.job_id, "collection": self.collection}
            )
            return None

        resume_token = checkpoint.resume_token
        if not _validate_resume_token(resume_token):
            logger.warning(
                "Invalid resume token structure in checkpoint",
                extra={"job_id": self.job_id, "collection": self.collection}
            )
            checkpoint_loads_total.labels(status='invalid').inc()
            return None

        self.records_processed = checkpoint.records_processed or 0
        checkpoint_loads_total.labels(status='success').inc()
        return resume_token

    def delete_checkpoint(self) -> bool:
        """
        Delete checkpoint, so the next start reads from the beginning.

        Returns:
            True if a checkpoint was deleted
        """
        session: Session = self.SessionLocal()
        try:
            with session.begin():
                checkpoint = session.query(OutboxCheckpoint).filter_by(
                    job_id=self.job_id,
                    collection=self.collection
                ).first()
                if not checkpoint:
                    return False
                session.delete(checkpoint)
        except SQLAlchemyError as e:
            logger.error(
                f"Database error deleting checkpoint: {e}",
                extra={"job_id": self.job_id, "collection": self.collection}
            )
            raise CheckpointError(f"Database error: {e}") from e
        finally:
            session.close()

        logger.info(
            f"Deleted checkpoint for job {self.job_id}, collection {self.collection}",
            extra={"job_id": self.job_id, "collection": self.collection}
        )
        return True

    def close(self) -> None:
        """Close database connections."""
        self.engine.dispose()
        logger.info("SqlCheckpointStore connections closed")
