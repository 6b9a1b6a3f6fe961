"""
Media intake

Accepts a single uploaded file for one channel (images or videos), checks the
declared content type, mints a storage key and streams the bytes to disk while
enforcing the channel's size ceiling. Either a complete file exists under its
storage key when `UploadGate.handle` returns, or nothing from the attempt is
left on disk.
"""

import asyncio
import logging
import os
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
MAX_KEY_ATTEMPTS = 5
MAX_EXTENSION_LENGTH = 16

IMAGE_MAX_BYTES = 5 * 1024 * 1024
VIDEO_MAX_BYTES = 100 * 1024 * 1024


class Channel(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


REJECTION_MESSAGES = {
    Channel.IMAGE: "Only images are allowed.",
    Channel.VIDEO: "Only videos are allowed.",
}

CHANNEL_DIRECTORIES = {
    Channel.IMAGE: "images",
    Channel.VIDEO: "videos",
}


class UploadError(Exception):
    """Base class for rejected uploads; carries the HTTP status to answer with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnsupportedMediaType(UploadError):
    status_code = 400


class PayloadTooLarge(UploadError):
    status_code = 413


class StorageFailure(UploadError):
    status_code = 500


class StorageExhausted(UploadError):
    status_code = 500


class StorageKeyCollision(Exception):
    """The target path already exists; the caller should pick another key."""

    def __init__(self, storage_key: str):
        super().__init__(storage_key)
        self.storage_key = storage_key


@dataclass(frozen=True)
class ChannelPolicy:
    channel: Channel
    directory: str
    max_bytes: int

    def __post_init__(self):
        if self.max_bytes <= 0:
            raise ValueError(f"{self.channel.value} ceiling must be a positive byte count")


def _read_ceiling(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer byte count, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be a positive byte count, got {value}")
    return value


def load_policies(upload_root: str) -> Dict[Channel, ChannelPolicy]:
    """Build the image and video policies, reading ceilings from the environment."""
    return {
        Channel.IMAGE: ChannelPolicy(
            channel=Channel.IMAGE,
            directory=os.path.join(upload_root, CHANNEL_DIRECTORIES[Channel.IMAGE]),
            max_bytes=_read_ceiling("IMAGE_MAX_BYTES", IMAGE_MAX_BYTES),
        ),
        Channel.VIDEO: ChannelPolicy(
            channel=Channel.VIDEO,
            directory=os.path.join(upload_root, CHANNEL_DIRECTORIES[Channel.VIDEO]),
            max_bytes=_read_ceiling("VIDEO_MAX_BYTES", VIDEO_MAX_BYTES),
        ),
    }


def classify(declared_mime_type: Optional[str], channel: Channel) -> None:
    """Raise UnsupportedMediaType unless the declared major type matches the channel.

    Only the part before the first "/" is looked at, and it must equal the
    channel name exactly ("image" or "video"). Missing or malformed values are
    rejected the same way as a mismatch.
    """
    major, sep, _ = (declared_mime_type or "").partition("/")
    if not sep or major != channel.value:
        raise UnsupportedMediaType(REJECTION_MESSAGES[channel])


def is_admissible(declared_mime_type: Optional[str], channel: Channel) -> bool:
    try:
        classify(declared_mime_type, channel)
    except UnsupportedMediaType:
        return False
    return True


_local = threading.local()


def _thread_rng() -> random.Random:
    # One generator per worker thread, so concurrent uploads never share state.
    rng = getattr(_local, "rng", None)
    if rng is None:
        rng = _local.rng = random.Random()
    return rng


def extension_of(original_name: Optional[str]) -> str:
    """Everything from the last "." of the file name.

    Returns "" when there is no ".", or when that suffix is longer than
    MAX_EXTENSION_LENGTH characters (dot included).
    """
    # Browsers on Windows may send the full client path.
    name = (original_name or "").replace("\\", "/").rsplit("/", 1)[-1]
    dot = name.rfind(".")
    if dot < 0 or "\x00" in name:
        return ""
    extension = name[dot:]
    # Keeps keys well under NAME_MAX whatever the client sends.
    if len(extension) > MAX_EXTENSION_LENGTH:
        return ""
    return extension


def generate_storage_key(
    original_name: Optional[str],
    attempt: int = 0,
    rng: Optional[random.Random] = None,
    clock: Optional[Callable[[], float]] = None,
) -> str:
    """Return `<unix millis>-<random int below 1e9><extension>`.

    Each call draws a fresh suffix, so a retry after a collision (attempt > 0)
    gets a new name without the attempt number leaking into it.
    """
    if rng is None:
        rng = _thread_rng()
    millis = int((clock or time.time)() * 1000)
    if attempt:
        logger.debug("Re-rolling storage key for %r (attempt %d)", original_name, attempt)
    return f"{millis}-{rng.randrange(1_000_000_000)}{extension_of(original_name)}"


@dataclass(frozen=True)
class StoredFile:
    absolute_path: str
    size: int


class StorageWriter(ABC):
    """Destination for accepted uploads."""

    @abstractmethod
    async def write(self, stream, storage_key: str, ceiling_bytes: int) -> StoredFile:
        """Persist `stream` under `storage_key`.

        Raises StorageKeyCollision before reading anything if the key is taken,
        PayloadTooLarge once more than `ceiling_bytes` have been read, and
        StorageFailure on I/O errors. Nothing is left behind on any failure.
        """

    @abstractmethod
    async def delete(self, storage_key: str) -> bool:
        """Remove a stored file, returning False if it was not there."""


class LocalStorageWriter(StorageWriter):
    """Writes uploads into one flat directory on the local filesystem."""

    def __init__(self, destination_dir: str, chunk_size: int = CHUNK_SIZE):
        self.destination_dir = os.path.abspath(destination_dir)
        self.chunk_size = chunk_size
        os.makedirs(self.destination_dir, exist_ok=True)

    def path_for(self, storage_key: str) -> str:
        return os.path.join(self.destination_dir, storage_key)

    async def write(self, stream, storage_key: str, ceiling_bytes: int) -> StoredFile:
        path = self.path_for(storage_key)
        try:
            # "x" reserves the name atomically; a concurrent upload holding the
            # same key makes this fail instead of overwriting.
            handle = await aiofiles.open(path, "xb")
        except FileExistsError:
            raise StorageKeyCollision(storage_key) from None
        except OSError as exc:
            logger.exception("Could not create %s", path)
            raise StorageFailure("Could not store the uploaded file.") from exc

        size = 0
        try:
            while True:
                chunk = await stream.read(self.chunk_size)
                if not chunk:
                    break
                size += len(chunk)
                if size > ceiling_bytes:
                    raise PayloadTooLarge(
                        f"File is larger than the maximum size of {ceiling_bytes} bytes."
                    )
                await handle.write(chunk)
            await handle.close()
        except OSError as exc:
            logger.exception("Writing %s failed after %d bytes", path, size)
            await asyncio.shield(_abandon(handle, path))
            raise StorageFailure("Could not store the uploaded file.") from exc
        except BaseException:
            # Size aborts and cancellation; shielded so a disconnect cannot
            # interrupt the cleanup itself.
            await asyncio.shield(_abandon(handle, path))
            raise

        return StoredFile(absolute_path=path, size=size)

    async def delete(self, storage_key: str) -> bool:
        path = self.path_for(storage_key)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return False
        return True


async def _abandon(handle, path: str) -> None:
    try:
        await handle.close()
    except OSError:
        logger.exception("Could not close partial upload %s", path)
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.exception("Could not remove partial upload %s", path)


@dataclass(frozen=True)
class UploadResult:
    channel: Channel
    storage_key: str
    absolute_path: str
    original_name: str
    mime_type: str
    size: int


class UploadGate:
    """Runs classify -> name -> write for one uploaded field per call.

    `field` is anything with `filename`, `content_type` and an async
    `read(size)`, such as FastAPI's `UploadFile`.
    """

    def __init__(
        self,
        policies: Dict[Channel, ChannelPolicy],
        writers: Optional[Dict[Channel, StorageWriter]] = None,
        key_generator: Callable[[str, int], str] = generate_storage_key,
        max_attempts: int = MAX_KEY_ATTEMPTS,
    ):
        self.policies = policies
        if writers is None:
            writers = {
                channel: LocalStorageWriter(policy.directory)
                for channel, policy in policies.items()
            }
        self.writers = writers
        self.key_generator = key_generator
        self.max_attempts = max_attempts

    async def handle(self, channel: Channel, field) -> UploadResult:
        policy = self.policies[channel]
        original_name = field.filename or ""
        mime_type = field.content_type or ""

        try:
            classify(mime_type, channel)
        except UnsupportedMediaType:
            logger.warning(
                "Rejected %s upload %r declared as %r", channel.value, original_name, mime_type
            )
            raise

        writer = self.writers[channel]
        for attempt in range(self.max_attempts):
            storage_key = self.key_generator(original_name, attempt)
            try:
                stored = await writer.write(field, storage_key, policy.max_bytes)
            except StorageKeyCollision:
                logger.warning("Storage key %s already taken, generating another", storage_key)
                continue
            except PayloadTooLarge:
                logger.warning(
                    "Rejected %s upload %r: over %d bytes",
                    channel.value,
                    original_name,
                    policy.max_bytes,
                )
                raise

            logger.info(
                "Stored %s upload %r as %s (%d bytes)",
                channel.value,
                original_name,
                storage_key,
                stored.size,
            )
            return UploadResult(
                channel=channel,
                storage_key=storage_key,
                absolute_path=stored.absolute_path,
                original_name=original_name,
                mime_type=mime_type,
                size=stored.size,
            )

        logger.error(
            "Gave up on %s upload %r after %d storage key collisions",
            channel.value,
            original_name,
            self.max_attempts,
        )
        raise StorageExhausted("Could not allocate a storage name for the upload.")

    async def discard(self, channel: Channel, storage_key: str) -> bool:
        """Remove a file this gate stored earlier."""


@dataclass(frozen=True)
class UploadResult:
    channel: Channel
    storage_key: str
    absolute_path: str
    original_name: str
    mime_type: str
    size: int


class UploadGate:
    """Runs classify -> name -> write for one uploaded field per call.

    `field` is anything with `filename`, `content_type` and an async
    `read(size)`, such as FastAPI's `UploadFile`.
    """

    def __init__(
        self,
        policies: Dict[Channel, ChannelPolicy],
        writers: Optional[Dict[Channel, StorageWriter]] = None,
        key_generator: Callable[[str, int], str] = generate_storage_key,
        max_attempts: int = MAX_KEY_ATTEMPTS,
    ):
        self.policies = policies
        if writers is None:
            writers = {
                channel: LocalStorageWriter(policy.directory)
                for channel, policy in policies.items()
            }
        self.writers = writers
        self.key_generator = key_generator
        self.max_attempts = max_attempts

    async def handle(self, channel: Channel, field) -> UploadResult:
        policy = self.policies[channel]
        original_name = field.filename or ""
        mime_type = field.content_type or ""

        try:
            classify(mime_type, channel)
        except UnsupportedMediaType:
            logger.warning(
                "Rejected %s upload %r declared as %r", channel.value, original_name, mime_type
            )
            raise

        writer = self.writers[channel]
        for attempt in range(self.max_attempts):
            storage_key = self.key_generator(original_name, attempt)
            try:
                stored = await writer.write(field, storage_key, policy.max_bytes)
            except StorageKeyCollision:
                logger.warning("Storage key %s already taken, generating another", storage_key)
                continue
            except PayloadTooLarge:
                logger.warning(
                    "Rejected %s upload %r: over %d bytes",
                    channel.value,
                    original_name,
                    policy.max_bytes,
                )
                raise

            logger.info(
                "Stored %s upload %r as %s (%d bytes)",
                channel.value,
                original_name,
                storage_key,
                stored.size,
            )
            return UploadResult(
                channel=channel,
                storage_key=storage_key,
                absolute_path=stored.absolute_path,
                original_name=original_name,
                mime_type=mime_type,
                size=stored.size,
            )

        logger.error(
            "Gave up on %s upload %r after %d storage key collisions",
            channel.value,
            original_name,
            self.max_attempts,
        )
        raise StorageExhausted("Could not allocate a storage name for the upload.")

    async def discard(self, channel: Channel, storage_key: str) -> bool:
        """Remove a file this gate stored earlier."""
        return await self.writers[channel].delete(storage_key)
