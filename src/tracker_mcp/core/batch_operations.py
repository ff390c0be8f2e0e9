"""
Batch orchestration for bulk create, update and delete.

A batch applies one single-item operation to an ordered list of inputs.
Inputs are split into consecutive chunks of ``batch_size``; items inside a
chunk are applied one at a time. Chunking bounds the load placed on the
store per round of work; it does not introduce parallelism.

Each item produces exactly one :class:`ItemResult`. The aggregate numbers
on :class:`BatchReport` are computed from that list on every access and are
never tracked separately.

Item failures are recorded, not raised. Only caller-level preconditions
(empty input, bad batch size) raise, plus the opt-in ``raise_on_stop``
mode which re-raises the first failure after ``continue_on_error=False``
halted the batch.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    Hashable,
    List,
    Optional,
    Sequence,
    TypeVar,
)

from tracker_mcp.core.errors import BatchAbortedError, TrackerError, ValidationError
from tracker_mcp.core.responses import ErrorCode, sanitize_error_message

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 10
"""Default number of items per chunk."""

MAX_BATCH_SIZE = 50
"""Largest chunk a caller may request."""


@dataclass(frozen=True)
class ItemContext:
    """Per-item information handed to the ``apply`` callable.

    Attributes:
        index: Position of the item in the full input list
        chunk_index: Zero-based chunk number
        dry_run: Validate and compute the would-be result without writing
        reserved: Value produced for this item by ``prepare_chunk``
    """

    index: int
    chunk_index: int
    dry_run: bool = False
    reserved: Any = None


@dataclass
class ItemResult:
    """Outcome of one item: either ``output`` or ``error`` is set."""

    index: int
    input: Any
    success: bool
    output: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    exception: Optional[BaseException] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "index": self.index,
            "input": self.input,
            "success": self.success,
        }
        if self.success:
            result["output"] = self.output
        else:
            result["error"] = self.error
            result["error_code"] = self.error_code
        return result


@dataclass
class BatchProgress:
    """Snapshot passed to ``on_progress`` after each chunk."""

    chunk_index: int
    total_chunks: int
    processed: int
    total: int
    failed: int


@dataclass
class BatchReport:
    """Structured result of a batch run."""

    total_requested: int
    batch_size: int
    continue_on_error: bool
    dry_run: bool = False
    results: List[ItemResult] = field(default_factory=list)
    stopped_early: bool = False
    cancelled: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def skipped(self) -> int:
        return self.total_requested - len(self.results)

    @property
    def batches(self) -> int:
        return math.ceil(self.total_requested / self.batch_size)

    @property
    def success(self) -> bool:
        completed = self.skipped == 0
        return self.failed == 0 or (self.continue_on_error and completed)

    @property
    def failures(self) -> List[ItemResult]:
        return [r for r in self.results if not r.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "total_requested": self.total_requested,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "batches": self.batches,
            "batch_size": self.batch_size,
            "continue_on_error": self.continue_on_error,
            "dry_run": self.dry_run,
            "stopped_early": self.stopped_early,
            "cancelled": self.cancelled,
            "warnings": list(self.warnings),
            "results": [r.to_dict() for r in self.results],
        }


def validate_batch_items(
    items: Sequence[Any],
    *,
    key: Optional[Callable[[Any], Hashable]] = None,
    max_items: Optional[int] = None,
) -> List[str]:
    """Check a batch input list before running it.

    Raises:
        ValidationError: the list is empty or longer than ``max_items``

    Returns:
        Warnings, e.g. duplicate keys (duplicates are still processed)
    """
    if not items:
        raise ValidationError("Batch requires at least one item", field="items")
    if max_items is not None and len(items) > max_items:
        raise ValidationError(
            f"Batch has {len(items)} items; maximum is {max_items}",
            field="items",
            details={"count": len(items), "max_items": max_items},
        )

    warnings: List[str] = []
    if key is not None:
        seen: Dict[Hashable, int] = {}
        for index, item in enumerate(items):
            try:
                item_key = key(item)
            except (KeyError, TypeError, AttributeError):
                continue
            if item_key in seen:
                warnings.append(
                    f"Duplicate item {item_key!r} at positions {seen[item_key]} and {index}"
                )
            else:
                seen[item_key] = index
    return warnings


class BatchOrchestrator:
    """Drives a single-item operation over a list of inputs.

    Args:
        default_batch_size: Chunk size used when the caller gives none
        max_batch_size: Upper bound on caller-provided chunk sizes
        chunk_delay: Seconds to pause between chunks
    """

    def __init__(
        self,
        *,
        default_batch_size: int = DEFAULT_BATCH_SIZE,
        max_batch_size: int = MAX_BATCH_SIZE,
        chunk_delay: float = 0.0,
    ):
        self.default_batch_size = default_batch_size
        self.max_batch_size = max_batch_size
        self.chunk_delay = chunk_delay

    def resolve_batch_size(self, batch_size: Optional[int]) -> int:
        if batch_size is None:
            return self.default_batch_size
        if (
            not isinstance(batch_size, int)
            or isinstance(batch_size, bool)
            or not 1 <= batch_size <= self.max_batch_size
        ):
            raise ValidationError(
                f"batch_size must be an integer between 1 and {self.max_batch_size}",
                field="batch_size",
                details={"value": batch_size},
            )
        return batch_size

    def run(
        self,
        items: Sequence[T],
        apply: Callable[[T, ItemContext], Any],
        *,
        batch_size: Optional[int] = None,
        continue_on_error: bool = True,
        dry_run: bool = False,
        prepare_chunk: Optional[Callable[[Sequence[T]], Sequence[Any]]] = None,
        raise_on_stop: bool = False,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[Callable[[BatchProgress], None]] = None,
    ) -> BatchReport:
        """Apply ``apply`` to every item and return the report.

        Args:
            items: Ordered inputs
            apply: Single-item operation, called as ``apply(item, context)``
            batch_size: Items per chunk
            continue_on_error: Keep going after a failed item
            dry_run: Passed through to ``apply`` via the context
            prepare_chunk: Called once per chunk (not on dry runs); returns
                one value per item, exposed as ``context.reserved``. An
                exception instance in that list fails only its item.
            raise_on_stop: After a halt caused by ``continue_on_error=False``,
                raise :class:`BatchAbortedError` carrying the partial report
            cancel_event: Checked before each chunk; when set, stop
            on_progress: Called after each chunk

        Raises:
            ValidationError: empty input or invalid batch size
            BatchAbortedError: only with ``raise_on_stop``
        """
        if not items:
            raise ValidationError("Batch requires at least one item", field="items")
        size = self.resolve_batch_size(batch_size)

        report = BatchReport(
            total_requested=len(items),
            batch_size=size,
            continue_on_error=continue_on_error,
            dry_run=dry_run,
        )
        chunks = [items[i : i + size] for i in range(0, len(items), size)]
        logger.info(
            f"Starting batch of {len(items)} item(s) in {len(chunks)} chunk(s)"
            f"{' (dry run)' if dry_run else ''}"
        )

        first_failure: Optional[ItemResult] = None
        for chunk_index, chunk in enumerate(chunks):
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.info(f"Batch cancelled before chunk {chunk_index + 1}")
                break
            if chunk_index and self.chunk_delay > 0:
                time.sleep(self.chunk_delay)

            base = chunk_index * size
            reserved = self._prepare(chunk, prepare_chunk, dry_run)

            for offset, item in enumerate(chunk):
                context = ItemContext(
                    index=base + offset,
                    chunk_index=chunk_index,
                    dry_run=dry_run,
                    reserved=reserved[offset],
                )
                result = self._apply_one(item, apply, context)
                report.results.append(result)
                if not result.success and not continue_on_error:
                    first_failure = result
                    break

            if on_progress is not None:
                on_progress(
                    BatchProgress(
                        chunk_index=chunk_index,
                        total_chunks=len(chunks),
                        processed=len(report.results),
                        total=len(items),
                        failed=report.failed,
                    )
                )

            if first_failure is not None:
                report.stopped_early = True
                logger.warning(
                    f"Batch stopped at item {first_failure.index}: {first_failure.error}"
                )
                break

        logger.info(
            f"Batch finished: {report.succeeded} succeeded, {report.failed} failed, "
            f"{report.skipped} skipped"
        )

        if raise_on_stop and first_failure is not None:
            raise BatchAbortedError(
                first_failure.error or "Batch stopped on first failure",
                report=report,
            ) from first_failure.exception
        return report

    @staticmethod
    def _prepare(
        chunk: Sequence[T],
        prepare_chunk: Optional[Callable[[Sequence[T]], Sequence[Any]]],
        dry_run: bool,
    ) -> List[Any]:
        if prepare_chunk is None or dry_run:
            return [None] * len(chunk)
        try:
            reserved = list(prepare_chunk(chunk))
        except TrackerError as exc:
            return [exc] * len(chunk)
        except Exception as exc:
            logger.exception("Unexpected error preparing batch chunk")
            return [exc] * len(chunk)
        if len(reserved) != len(chunk):
            raise ValueError(
                f"prepare_chunk returned {len(reserved)} values for {len(chunk)} items"
            )
        return reserved

    @staticmethod
    def _apply_one(
        item: T, apply: Callable[[T, ItemContext], Any], context: ItemContext
    ) -> ItemResult:
        if isinstance(context.reserved, BaseException):
            return _failure(context.index, item, context.reserved)
        try:
            output = apply(item, context)
        except TrackerError as exc:
            return _failure(context.index, item, exc)
        except Exception as exc:
            logger.exception(f"Unexpected error on batch item {context.index}")
            return _failure(context.index, item, exc)
        return ItemResult(index=context.index, input=item, success=True, output=output)


def _failure(index: int, item: Any, exc: BaseException) -> ItemResult:
    if isinstance(exc, TrackerError):
        code, message = exc.code.value, exc.message
    else:
        code = ErrorCode.INTERNAL_ERROR.value
        message = sanitize_error_message(exc, context=f"batch item {index}")
    return ItemResult(
        index=index,
        input=item,
        success=False,
        error=message,
        error_code=code,
        exception=exc,
    )
