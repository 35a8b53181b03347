"""Local artifact store for transformed output files."""

from __future__ import annotations

import asyncio
import errno
import json
import logging
import os
import shutil
import time
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple, Union

import aiofiles

from .errors import InternalError, NotFound
from .storage import CHUNK_SIZE, StorageConfig, remove_quietly, validate_identifier

logger = logging.getLogger(__name__)

META_SUFFIX = ".json"


@dataclass(frozen=True)
class Artifact:
    identifier: str
    file_name: str
    content_type: str
    size: int
    created_at: float

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Artifact":
        return cls(
            identifier=str(data["identifier"]),
            file_name=str(data["file_name"]),
            content_type=str(data["content_type"]),
            size=int(data["size"]),
            created_at=float(data["created_at"]),
        )


class ArtifactReader:
    """Open artifact handle that streams in chunks and must be closed by the caller."""

    def __init__(self, artifact: Artifact, handle):  # noqa: ANN001
        self.artifact = artifact
        self._handle = handle
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await self._handle.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._handle.close()


class ArtifactStore:
    """
    Directory-backed store addressed by opaque identifiers.

    Each artifact is a data file plus a ``<id>.json`` metadata record. The
    metadata record is the registration point: it is created last on ``put``
    and removed first on ``delete``, so readers either see a complete artifact
    or ``NotFound``.
    """

    def __init__(self, storage: StorageConfig):
        self.storage = storage
        self.root = storage.artifacts_dir

    def _meta_path(self, identifier: str) -> Path:
        return self.root / f"{identifier}{META_SUFFIX}"

    def _data_path(self, artifact: Artifact) -> Path:
        return self.root / artifact.file_name

    def _load_meta(self, identifier: str) -> Artifact:
        validate_identifier(identifier)
        try:
            with self._meta_path(identifier).open("r", encoding="utf-8") as f:
                return Artifact.from_dict(json.load(f))
        except FileNotFoundError:
            raise NotFound() from None
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Unreadable metadata for artifact {identifier}: {e}")
            raise InternalError() from e

    async def put(
        self,
        identifier: str,
        source: Union[bytes, Path],
        content_type: str,
        file_name: Optional[str] = None,
    ) -> Artifact:
        """
        Register an artifact under ``identifier``.

        Args:
            identifier: Fresh identifier issued by the upload handler
            source: Output bytes, or a path that is moved into the store
            content_type: Media type served on download
            file_name: Stored file name (defaults to the identifier)

        Returns:
            The registered Artifact

        Raises:
            InternalError: Identifier already registered or storage fault
        """
        validate_identifier(identifier)
        meta_path = self._meta_path(identifier)
        name = file_name or identifier
        data_path = self.root / name
        # data stays under a private name until the metadata record is ours
        staged = self.root / f".{name}.{uuid.uuid4().hex}.tmp"
        try:
            if isinstance(source, (bytes, bytearray)):
                await self._write_file(staged, bytes(source))
            else:
                await asyncio.to_thread(self._move_into_store, Path(source), staged)
            size = staged.stat().st_size
        except OSError as e:
            remove_quietly(staged)
            logger.error(f"Failed to store artifact {identifier}: {e}")
            raise InternalError() from e

        artifact = Artifact(
            identifier=identifier,
            file_name=name,
            content_type=content_type,
            size=size,
            created_at=time.time(),
        )
        try:
            self._register(meta_path, artifact)
        except FileExistsError:
            remove_quietly(staged)
            logger.error(f"Refusing to overwrite existing artifact {identifier}")
            raise InternalError() from None
        except OSError as e:
            remove_quietly(staged)
            logger.error(f"Failed to register artifact {identifier}: {e}")
            raise InternalError() from e

        try:
            os.replace(staged, data_path)
        except OSError as e:
            remove_quietly(meta_path)
            remove_quietly(staged)
            logger.error(f"Failed to publish artifact {identifier}: {e}")
            raise InternalError() from e

        logger.info(f"Stored artifact {identifier} ({size} bytes, {content_type})")
        return artifact

    async def _write_file(self, dest: Path, data: bytes) -> None:
        try:
            async with aiofiles.open(dest, "wb") as out:
                await out.write(data)
        except BaseException:
            remove_quietly(dest)
            raise

    def _move_into_store(self, source: Path, dest: Path) -> None:
        try:
            os.replace(source, dest)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.tmp")
            try:
                shutil.copyfile(source, tmp)
                os.replace(tmp, dest)
            except BaseException:
                remove_quietly(tmp)
                raise
            remove_quietly(source)

    def _register(self, meta_path: Path, artifact: Artifact) -> None:
        tmp = meta_path.with_name(f".{meta_path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(artifact.to_dict(), f)
            # link() fails if the record exists, so registration happens once
            os.link(tmp, meta_path)
        finally:
            remove_quietly(tmp)

    def stat(self, identifier: str) -> Artifact:
        return self._load_meta(identifier)

    def exists(self, identifier: str) -> bool:
        try:
            self._load_meta(identifier)
        except NotFound:
            return False
        return True

    async def get(self, identifier: str) -> Tuple[bytes, str]:
        reader = await self.open(identifier)
        chunks = [chunk async for chunk in reader]
        return b"".join(chunks), reader.artifact.content_type

    async def open(self, identifier: str) -> ArtifactReader:
        """Open an artifact for streaming; the handle survives a concurrent delete."""
        artifact = self._load_meta(identifier)
        try:
            handle = await aiofiles.open(self._data_path(artifact), "rb")
        except FileNotFoundError:
            raise NotFound() from None
        except OSError as e:
            logger.error(f"Failed to open artifact {identifier}: {e}")
            raise InternalError() from e
        return ArtifactReader(artifact, handle)

    async def delete(self, identifier: str) -> Artifact:
        artifact = self._load_meta(identifier)
        try:
            os.unlink(self._meta_path(identifier))
        except FileNotFoundError:
            raise NotFound() from None
        except OSError as e:
            logger.error(f"Failed to unregister artifact {identifier}: {e}")
            raise InternalError() from e
        remove_quietly(self._data_path(artifact))
        logger.info(f"Deleted artifact {identifier}")
        return artifact

    def identifiers(self) -> List[str]:
        return sorted(p.name[: -len(META_SUFFIX)] for p in self.root.glob(f"*{META_SUFFIX}"))

    def count(self) -> int:
        return len(self.identifiers())

    def list_expired(self, max_age: float, now: Optional[float] = None) -> List[str]:
        cutoff = (now if now is not None else time.time()) - max_age
        expired: List[str] = []
        for identifier in self.identifiers():
            try:
                artifact = self._load_meta(identifier)
            except (NotFound, InternalError):
                continue
            if artifact.created_at < cutoff:
                expired.append(identifier)
        return expired
