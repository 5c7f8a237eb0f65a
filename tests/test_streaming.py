"""Tests for the streaming delimited parser."""

import threading
import time

import pytest

from financial_parser.cancellation import CancellationToken, ParseCancelledError
from financial_parser.config_models import ParserConfig
from financial_parser.models import ParserEngine, ProgressPhase
from financial_parser.parsers.delimited_parser import parse_delimited
from financial_parser.streaming import estimate_eta, parse_delimited_streaming, stream_row_chunks


@pytest.fixture
def chunked_config():
    return ParserConfig(format_type="delimited", chunk_size=1024)


def test_streaming_matches_plain_engine(large_csv, chunked_config):
    streamed = parse_delimited_streaming(large_csv, chunked_config)
    plain = parse_delimited(large_csv, chunked_config)

    assert streamed.headers == plain.headers
    assert [r.model_dump() for r in streamed.records] == [r.model_dump() for r in plain.records]
    assert streamed.metadata.total_records == 3000
    assert streamed.metadata.parser_engine is ParserEngine.STREAMING


def test_progress_bytes_non_decreasing(large_csv, chunked_config):
    events = []
    parse_delimited_streaming(large_csv, chunked_config, on_progress=events.append)

    assert events
    processed = [e.bytes_processed for e in events]
    assert processed == sorted(processed)
    last = events[-1]
    assert last.bytes_processed == last.total_bytes == len(large_csv.encode("utf-8"))
    assert last.percentage == 100
    assert last.phase is ProgressPhase.FINALIZING
    assert last.records_processed == 3000
    assert all(e.phase is ProgressPhase.PARSING for e in events[:-1])



def test_progress_counts_bytes_in_source_encoding():
    text = "id;name\n" + "".join(f"{i};Café\n" for i in range(2000))
    config = ParserConfig(format_type="delimited", encoding="iso-8859-1", chunk_size=1024)
    events = []
    parse_delimited_streaming(text, config, on_progress=events.append)

    size = len(text.encode("latin-1"))
    assert {e.total_bytes for e in events} == {size}
    assert all(e.bytes_processed <= size for e in events)
    assert events[-1].bytes_processed == size


def test_progress_is_throttled(large_csv, chunked_config):
    events = []
    parse_delimited_streaming(large_csv, chunked_config, on_progress=events.append)
    chunks = sum(1 for _ in stream_row_chunks(large_csv, chunked_config))
    # One event per chunk at most; a fast parse emits far fewer
    assert len(events) <= chunks + 1


def test_chunks_respect_chunk_size(large_csv, chunked_config):
    chunks = list(stream_row_chunks(large_csv, chunked_config))
    assert len(chunks) > 10
    ends = [chunk[-1].consumed for chunk in chunks]
    assert ends == sorted(ends)
    # Each chunk ends on the first row crossing a chunk boundary
    for previous, current in zip(ends, ends[1:]):
        assert current - previous < 2 * chunked_config.chunk_size


def test_cancel_before_start(large_csv, chunked_config):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(ParseCancelledError):
        parse_delimited_streaming(large_csv, chunked_config, token=token)


def test_cancel_mid_flight(large_csv, chunked_config):
    token = CancellationToken()
    events = []

    def on_progress(progress):
        events.append(progress)
        token.cancel()

    with pytest.raises(ParseCancelledError):
        parse_delimited_streaming(large_csv, chunked_config, on_progress=on_progress, token=token)

    assert len(events) == 1
    assert events[0].phase is ProgressPhase.PARSING


def test_pause_and_resume(large_csv, chunked_config):
    token = CancellationToken()
    token.pause()
    result = {}

    def run():
        result["dataset"] = parse_delimited_streaming(large_csv, chunked_config, token=token)

    thread = threading.Thread(target=run)
    thread.start()
    time.sleep(0.2)
    assert "dataset" not in result
    assert thread.is_alive()

    token.resume()
    thread.join(timeout=10)
    assert result["dataset"].metadata.total_records == 3000


def test_cancel_while_paused(large_csv, chunked_config):
    token = CancellationToken()
    token.pause()
    errors = []

    def run():
        try:
            parse_delimited_streaming(large_csv, chunked_config, token=token)
        except ParseCancelledError as e:
            errors.append(e)

    thread = threading.Thread(target=run)
    thread.start()
    time.sleep(0.1)
    token.cancel()
    thread.join(timeout=10)
    assert len(errors) == 1


def test_empty_input_reports_completion(chunked_config):
    events = []
    dataset = parse_delimited_streaming("", chunked_config, on_progress=events.append)
    assert dataset.records == []
    assert events[-1].percentage == 100
    assert events[-1].bytes_processed == events[-1].total_bytes == 0


def test_estimate_eta():
    assert estimate_eta(0, 100, 1.0) is None
    assert estimate_eta(50, 100, 0.0) is None
    assert estimate_eta(50, 100, 1.0) == 1.0
