"""
Synchronous parsing entry point.

``parse_input`` is the single-call path used directly by library users, by the
offload worker and by the service's synchronous fallback: decode bytes, detect
the format when it is not configured, then run the matching engine.
"""

import logging
import time
from pathlib import Path
from typing import Optional, Union

from financial_parser.cancellation import CancellationToken, ProgressCallback
from financial_parser.config_models import DetectionThresholds, FormatType, ParserConfig
from financial_parser.detection import detect_format, suggest_delimiter
from financial_parser.encoding import decode, detect_encoding
from financial_parser.models import EncodingType, ParsedDataSet, ParserEngine
from financial_parser.parsers import parse
from financial_parser.routines import RoutineRegistry
from financial_parser.streaming import parse_delimited_streaming

logger = logging.getLogger(__name__)


def decode_input(data: Union[str, bytes], config: ParserConfig):
    """Decode bytes using the config's encoding hint, else the detected encoding.

    Returns:
        Tuple of (text, encoding name or None for text input)
    """
    if isinstance(data, str):
        return data, config.encoding

    if config.encoding:
        try:
            encoding = EncodingType(config.encoding.lower())
        except ValueError:
            logger.warning(f"Unsupported encoding hint '{config.encoding}', detecting instead")
        else:
            return decode(data, encoding), encoding.value

    info = detect_encoding(data)
    logger.debug(f"Detected encoding {info.encoding.value} (confidence {info.confidence})")
    return decode(data, info.encoding), info.encoding.value


def resolve_config(text: str, config: ParserConfig,
                   thresholds: Optional[DetectionThresholds] = None) -> ParserConfig:
    """Fill in the format (and delimiter for auto-detected delimited input)."""
    if config.format_type is not None:
        return config

    format_type = detect_format(text, thresholds)
    changes = {"format_type": format_type}
    if format_type is FormatType.DELIMITED and "delimiter" not in config.model_fields_set:
        changes["delimiter"] = suggest_delimiter(text)
    logger.info(f"Auto-detected format: {format_type.value}")
    return config.with_updates(**changes)


def parse_input(
    data: Union[str, bytes],
    config: Optional[ParserConfig] = None,
    thresholds: Optional[DetectionThresholds] = None,
    token: Optional[CancellationToken] = None,
    accelerated: bool = False,
    streaming: bool = False,
    on_progress: Optional[ProgressCallback] = None,
    routines: Optional[RoutineRegistry] = None,
    file_name: Optional[str] = None,
    engine: ParserEngine = ParserEngine.SYNC,
    total_bytes: Optional[int] = None,
) -> ParsedDataSet:
    """Parse text or bytes into a ParsedDataSet.

    Args:
        data: Input text, or raw bytes to be encoding-detected and decoded
        config: Parser configuration (format auto-detected when None or unset)
        thresholds: Fixed-column detection constants
        token: Cancellation token
        accelerated: Prefer accelerated engines
        streaming: Use the streaming engine for delimited input
        on_progress: Progress callback for the streaming engine
        routines: Routine registry for the custom engine
        file_name: Source file name recorded in the metadata
        engine: Engine label recorded when the engine does not set its own
        total_bytes: Original input size for streaming progress (the byte length
            of ``data`` when None and ``data`` is bytes)

    Returns:
        ParsedDataSet. Engine-fatal failures are returned as the single-record
        error dataset; only ParseCancelledError is raised.
    """
    started = time.perf_counter()
    config = config or ParserConfig()
    text, encoding = decode_input(data, config)
    if encoding != config.encoding:
        config = config.with_updates(encoding=encoding)
    config = resolve_config(text, config, thresholds)

    if streaming and config.format_type is FormatType.DELIMITED:
        if total_bytes is None and isinstance(data, bytes):
            total_bytes = len(data)
        dataset = parse_delimited_streaming(text, config, on_progress=on_progress, token=token,
                                            total_bytes=total_bytes)
    else:
        dataset = parse(text, config, token=token, accelerated=accelerated, routines=routines)

    metadata = dataset.metadata.model_copy(update={
        "file_size": len(data) if isinstance(data, bytes) else dataset.metadata.file_size,
        "file_name": file_name,
        "encoding": encoding,
        "parser_engine": dataset.metadata.parser_engine or engine,
        "parse_time": (time.perf_counter() - started) * 1000,
    })
    dataset = dataset.model_copy(update={"metadata": metadata})

    logger.info(
        f"Parsed {metadata.total_records} records ({metadata.valid_records} valid, "
        f"{metadata.invalid_records} invalid) in {metadata.parse_time:.1f}ms "
        f"[{config.format_type.value}, {metadata.parser_engine.value}]"
    )
    return dataset


def parse_path(path: Union[str, Path], config: Optional[ParserConfig] = None, **kwargs) -> ParsedDataSet:
    """Read a file as bytes and parse it with ``parse_input``."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    return parse_input(path.read_bytes(), config, file_name=path.name, **kwargs)
