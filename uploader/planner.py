import math
from dataclasses import dataclass

MAX_PARTS = 10_000
MIN_PART_SIZE = 5 * 1024 * 1024


@dataclass(frozen=True)
class TransferConfig:
    multipart_threshold_bytes: int = 8 * 1024 * 1024
    target_part_size_bytes: int = 8 * 1024 * 1024
    max_concurrent_parts: int = 4
    min_part_size_bytes: int = MIN_PART_SIZE
    max_parts: int = MAX_PARTS
    part_retry_attempts: int = 3
    retry_backoff_seconds: float = 0.2

    def __post_init__(self) -> None:
        if self.multipart_threshold_bytes <= 0:
            raise ValueError("multipart_threshold_bytes must be positive")
        if self.target_part_size_bytes < self.min_part_size_bytes:
            raise ValueError("target_part_size_bytes must be at least min_part_size_bytes")
        if self.max_concurrent_parts < 1:
            raise ValueError("max_concurrent_parts must be at least 1")
        if self.part_retry_attempts < 1:
            raise ValueError("part_retry_attempts must be at least 1")
        if self.max_parts < 1:
            raise ValueError("max_parts must be at least 1")

    @classmethod
    def from_settings(cls, settings) -> "TransferConfig":
        return cls(
            multipart_threshold_bytes=settings.multipart_threshold_bytes,
            target_part_size_bytes=settings.target_part_size_bytes,
            max_concurrent_parts=settings.max_concurrent_parts,
            min_part_size_bytes=settings.min_part_size_bytes,
            part_retry_attempts=settings.part_retry_attempts,
            retry_backoff_seconds=settings.retry_backoff_seconds,
        )


@dataclass(frozen=True)
class PartDescriptor:
    part_number: int
    byte_offset: int
    byte_length: int


@dataclass(frozen=True)
class SingleShot:
    pass


@dataclass(frozen=True)
class Multipart:
    """Multipart strategy. `parts` is None when the total size is unknown and
    the source is read until exhaustion in `part_size` pieces."""

    part_size: int
    parts: tuple[PartDescriptor, ...] | None = None


def part_size_for(total_size: int, config: TransferConfig) -> int:
    # Grow the part size until the part count fits under the ceiling.
    return max(config.target_part_size_bytes, config.min_part_size_bytes, math.ceil(total_size / config.max_parts))


def iter_parts(total_size: int, part_size: int):
    offset = 0
    part_number = 1
    while offset < total_size:
        length = min(part_size, total_size - offset)
        yield PartDescriptor(part_number=part_number, byte_offset=offset, byte_length=length)
        offset += length
        part_number += 1


def plan(total_size: int | None, config: TransferConfig) -> SingleShot | Multipart:
    if total_size is None:
        return Multipart(part_size=max(config.target_part_size_bytes, config.min_part_size_bytes))
    if total_size <= 0:
        raise ValueError("total_size must be positive")
    if total_size <= config.multipart_threshold_bytes:
        return SingleShot()

    part_size = part_size_for(total_size, config)
    return Multipart(part_size=part_size, parts=tuple(iter_parts(total_size, part_size)))
