"""
Streaming delimited parser for large inputs.

Rows are processed in chunks of ``config.chunk_size`` bytes. At every chunk
boundary the engine honours pause/cancel requests from its CancellationToken and
emits a progress event, throttled to one every 100ms.
"""

import logging
import time
from typing import Iterator, List, Optional

from financial_parser.cancellation import CancellationToken, ParseCancelledError, ProgressCallback
from financial_parser.config_models import ParserConfig
from financial_parser.models import ParsedDataSet, ParseProgress, ParserEngine, ProgressPhase
from financial_parser.parsers.base_parser import DatasetBuilder, byte_size, error_dataset
from financial_parser.parsers.delimited_parser import (
    RawRow,
    header_names,
    iter_rows,
    row_errors,
    row_fields,
)

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 0.1  # seconds


def stream_row_chunks(text: str, config: ParserConfig) -> Iterator[List[RawRow]]:
    """Yield rows grouped into chunks of roughly ``config.chunk_size`` bytes.

    A chunk ends with the first row whose end offset crosses the next chunk
    boundary, so rows are never split.
    """
    chunk_size = config.chunk_size
    boundary = chunk_size
    chunk: List[RawRow] = []
    for row in iter_rows(text, config):
        chunk.append(row)
        if row.consumed >= boundary:
            yield chunk
            chunk = []
            boundary = (row.consumed // chunk_size + 1) * chunk_size
    if chunk:
        yield chunk


def estimate_eta(bytes_processed: int, total_bytes: int, elapsed: float) -> Optional[float]:
    """Remaining seconds at the observed throughput, or None before any throughput is known."""
    if bytes_processed <= 0 or elapsed <= 0:
        return None
    rate = bytes_processed / elapsed
    return round((total_bytes - bytes_processed) / rate, 1)


def parse_delimited_streaming(text: str, config: ParserConfig,
                              on_progress: Optional[ProgressCallback] = None,
                              token: Optional[CancellationToken] = None,
                              total_bytes: Optional[int] = None) -> ParsedDataSet:
    """Parse delimited text chunk by chunk with throttled progress.

    Args:
        text: Decoded input text
        config: Parser configuration (``chunk_size`` sets the chunk length)
        on_progress: Called with ``parsing`` events and one final 100% event
        token: Cancellation token checked at every chunk boundary
        total_bytes: Size of the original input in bytes. Progress is counted in
            bytes of ``config.encoding`` and never exceeds this total; the size of
            ``text`` in that encoding is used when None

    Returns:
        ParsedDataSet with the same records the plain delimited engine produces

    Raises:
        ParseCancelledError: If the token is cancelled; no dataset is produced
    """
    token = token or CancellationToken()
    builder = DatasetBuilder(config)
    if total_bytes is None:
        total_bytes = byte_size(text, config.encoding)
    started = time.monotonic()
    last_emit: Optional[float] = None
    headers: Optional[List[str]] = None
    chunks = 0

    try:
        token.checkpoint()
        for chunk in stream_row_chunks(text, config):
            for row in chunk:
                if headers is None:
                    headers = header_names(row.cells or [], config)
                    builder.add_headers(headers)
                    if config.has_header:
                        continue
                builder.add_record(row_fields(row.cells, headers), raw=row.raw,
                                   errors=row_errors(row, headers))

            chunks += 1
            bytes_processed = min(chunk[-1].consumed, total_bytes)
            token.checkpoint()

            now = time.monotonic()
            if on_progress is not None and (last_emit is None or now - last_emit >= PROGRESS_INTERVAL):
                last_emit = now
                records = len(builder.records)
                on_progress(ParseProgress.create(
                    ProgressPhase.PARSING,
                    bytes_processed,
                    total_bytes,
                    records_processed=records,
                    eta_seconds=estimate_eta(bytes_processed, total_bytes, now - started),
                    message=f"Parsed {records:,} records...",
                ))
    except ParseCancelledError:
        logger.info(f"Streaming parse cancelled after {chunks} chunks")
        raise
    except Exception as e:
        return error_dataset(config, f"CSV Parse Error: {e}", source=text,
                             engine=ParserEngine.STREAMING, parse_time=builder.elapsed_ms())

    if on_progress is not None:
        on_progress(ParseProgress.create(
            ProgressPhase.FINALIZING,
            total_bytes,
            total_bytes,
            records_processed=len(builder.records),
            message="Parsing complete",
            percentage=100,
        ))

    logger.debug(f"Streamed {len(builder.records)} records in {chunks} chunks")
    return builder.build(source=text, engine=ParserEngine.STREAMING)
