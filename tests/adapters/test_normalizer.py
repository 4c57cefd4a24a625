"""Unit tests for the Tolerant CSV Normalizer and the COPY text stream.

Tests cover:
- Header normalization (case, whitespace, byte-order mark)
- Canonical projection (padding, dropped columns)
- Malformed rows (extra fields, tokenizer errors) recorded without stopping the file
- Repair rules applied before tokenizing
- Chunk boundaries inside lines and multi-byte characters
- COPY text format and incremental reads
- Bounded memory over a large synthetic stream

Memory Impact:
    - The streaming test pushes tens of megabytes through the chain and asserts
      the traced peak stays a small fraction of that
"""

import csv
import io
import tracemalloc

import pytest

from moneymatched.adapters.normalizer import (
    CopyStream,
    TolerantCSVNormalizer,
    format_copy_row,
    quote_value,
)
from moneymatched.domain.failures import FailureRecorder
from moneymatched.domain.ports import SourceUnavailableError
from moneymatched.domain.schema import CANONICAL_COLUMNS


def chunked(data: bytes, size: int):
    return (data[i:i + size] for i in range(0, len(data), size))


def normalize(data: bytes, chunk_size: int = 5, **kwargs):
    normalizer = TolerantCSVNormalizer(**kwargs)
    return list(normalizer.normalize("test.csv", chunked(data, chunk_size)))


class TestHeaderHandling:
    """Test header normalization and canonical projection."""

    def test_header_is_trimmed_and_upper_cased(self):
        results = normalize(b" property_id , Owner_Name \n101,Alice\n")

        assert len(results) == 1
        record = results[0].value
        assert record["PROPERTY_ID"] == "101"
        assert record["OWNER_NAME"] == "Alice"

    def test_leading_byte_order_mark_is_ignored(self):
        results = normalize(b"\xef\xbb\xbfPROPERTY_ID,OWNER_NAME\n7,Zed\n", chunk_size=1)
        assert results[0].value["PROPERTY_ID"] == "7"

    def test_every_canonical_column_present_in_order(self):
        results = normalize(b"OWNER_NAME\nAlice\n")
        record = results[0].value

        assert tuple(record) == CANONICAL_COLUMNS
        assert record["OWNER_NAME"] == "Alice"
        assert record["CURRENT_CASH_BALANCE"] == ""

    def test_unknown_columns_are_dropped(self):
        results = normalize(b"PROPERTY_ID,SURPRISE,OWNER_NAME\n1,boo,Alice\n")
        record = results[0].value

        assert "SURPRISE" not in record
        assert record["OWNER_NAME"] == "Alice"

    def test_duplicate_header_uses_first_position(self):
        results = normalize(b"OWNER_NAME,OWNER_NAME\nFirst,Second\n")
        assert results[0].value["OWNER_NAME"] == "First"

    def test_empty_input_yields_nothing(self):
        assert normalize(b"") == []

    def test_values_are_trimmed(self):
        results = normalize(b"PROPERTY_ID,OWNER_NAME\n  5  ,  Bob  \n")
        assert results[0].value["PROPERTY_ID"] == "5"
        assert results[0].value["OWNER_NAME"] == "Bob"


class TestMalformedRows:
    """Test tolerance of malformed input."""

    def test_short_row_is_padded(self):
        results = normalize(b"PROPERTY_ID,OWNER_NAME,CURRENT_CASH_BALANCE\n101,Alice\n")

        assert results[0].is_success()
        assert results[0].value["CURRENT_CASH_BALANCE"] == ""

    def test_row_with_extra_field_is_one_failure(self):
        data = (
            b"PROPERTY_ID,OWNER_NAME,CURRENT_CASH_BALANCE\n"
            b"1,Alice,1.00\n"
            b"2,Bob,2.00,EXTRA\n"
            b"3,Carol,3.00\n"
        )
        results = normalize(data)

        assert [r.is_success() for r in results] == [True, False, True]
        failure = results[1]
        assert failure.error_type == "RecordParseError"
        assert failure.error_details["file"] == "test.csv"
        assert failure.error_details["line"] == 2
        assert failure.error_details["data"]["OWNER_NAME"] == "Bob"
        assert failure.error_details["data"]["_extra_fields"] == ["EXTRA"]
        assert results[2].value["OWNER_NAME"] == "Carol"

    def test_blank_lines_are_skipped_and_not_counted(self):
        data = b"PROPERTY_ID,OWNER_NAME\n\n1,A\n\n  \n2,B,X\n"
        results = normalize(data)

        assert len(results) == 2
        assert results[1].error_details["line"] == 2

    def test_tokenizer_error_does_not_stop_the_file(self):
        data = b"PROPERTY_ID,OWNER_NAME\n1,A\n2," + b"X" * 50 + b"\n3,C\n"
        results = normalize(data, max_field_size=20)

        assert [r.is_success() for r in results] == [True, False, True]
        assert results[1].error_details["line"] == 2
        assert "CSV parse error" in results[1].error
        assert results[2].value["OWNER_NAME"] == "C"

    def test_parse_error_before_header_does_not_shift_line_numbers(self):
        data = b"X" * 50 + b"\nPROPERTY_ID,OWNER_NAME\n1,A\n2,B,EXTRA\n"
        results = normalize(data, max_field_size=20)

        assert [r.is_success() for r in results] == [False, True, False]
        assert results[0].error_details["line"] is None
        assert results[2].error_details["line"] == 2

    def test_field_size_limit_is_restored_after_each_row(self):
        before = csv.field_size_limit()
        results = TolerantCSVNormalizer(max_field_size=20).normalize("t.csv", [b"OWNER_NAME\nA\nB\n"])

        next(results)
        assert csv.field_size_limit() == before
        list(results)
        assert csv.field_size_limit() == before

    def test_relaxed_quotes_are_tolerated(self):
        results = normalize(b'PROPERTY_ID,OWNER_NAME\n1,AL "BIG" SMITH\n')
        assert results[0].value["OWNER_NAME"] == 'AL "BIG" SMITH'

    def test_invalid_utf8_is_replaced_not_raised(self):
        results = normalize(b"PROPERTY_ID,OWNER_NAME\n1,Jos\xff\n")
        assert results[0].value["OWNER_NAME"] == "Jos\ufffd"


class TestStreamingDecode:
    """Test line assembly across chunk boundaries."""

    def test_multibyte_character_split_across_chunks(self):
        data = "PROPERTY_ID,OWNER_NAME\n1,José Núñez\n".encode("utf-8")
        results = normalize(data, chunk_size=1)
        assert results[0].value["OWNER_NAME"] == "José Núñez"

    def test_quoted_newline_spans_lines(self):
        results = normalize(b'PROPERTY_ID,OWNER_NAME\n1,"ALICE\nSMITH"\n2,BOB\n', chunk_size=3)

        assert len(results) == 2
        assert results[0].value["OWNER_NAME"] == "ALICE\nSMITH"
        assert results[1].value["PROPERTY_ID"] == "2"

    def test_crlf_line_endings(self):
        results = normalize(b"PROPERTY_ID,OWNER_NAME\r\n1,A\r\n2,B\r\n")
        assert [r.value["OWNER_NAME"] for r in results] == ["A", "B"]

    def test_last_line_without_newline(self):
        results = normalize(b"PROPERTY_ID,OWNER_NAME\n1,A")
        assert results[0].value["OWNER_NAME"] == "A"

    def test_repairs_apply_before_tokenizing(self):
        data = b'PROPERTY_ID,OWNER_ZIP,OWNER_NAME\n1,""95014",ALICE\n2,"00"95",BOB\n'
        results = normalize(data)

        assert [r.is_success() for r in results] == [True, True]
        assert results[0].value["OWNER_ZIP"] == "95014"
        assert results[1].value["OWNER_ZIP"] == "0095"
        assert results[1].value["OWNER_NAME"] == "BOB"

    def test_normalize_is_lazy(self):
        pulled = []

        def chunks():
            for chunk in [b"PROPERTY_ID,OWNER_NAME\n", b"1,A\n", b"2,B\n"]:
                pulled.append(chunk)
                yield chunk

        results = TolerantCSVNormalizer().normalize("lazy.csv", chunks())
        assert pulled == []
        next(results)
        assert len(pulled) == 2


class TestCopyFormat:
    """Test the COPY text serialization."""

    def test_quote_value(self):
        assert quote_value("") == ""
        assert quote_value("abc") == '"abc"'
        assert quote_value('say "hi"') == '"say ""hi"""'
        assert quote_value("a,b") == '"a,b"'

    def test_format_copy_row(self):
        assert format_copy_row(["1", "", "x"]) == '"1",,"x"\n'

    def test_stream_emits_header_then_rows(self):
        normalizer = TolerantCSVNormalizer()
        recorder = FailureRecorder()
        stream = CopyStream(
            normalizer.normalize("t.csv", [b"PROPERTY_ID,OWNER_NAME\n101,Alice\n"]),
            recorder,
        )
        lines = stream.read().split("\n")

        assert lines[0] == ",".join(CANONICAL_COLUMNS)
        values = next(csv.reader([lines[1]]))
        assert len(values) == len(CANONICAL_COLUMNS)
        assert values[0] == "101"
        assert values[CANONICAL_COLUMNS.index("OWNER_NAME")] == "Alice"
        assert lines[1].startswith('"101",,,')

    def test_failures_are_diverted_to_recorder(self):
        normalizer = TolerantCSVNormalizer()
        recorder = FailureRecorder()
        data = b"PROPERTY_ID,OWNER_NAME\n1,A\n2,B,EXTRA\n3,C\n"
        stream = CopyStream(normalizer.normalize("bad.csv", [data]), recorder)

        text = stream.read()

        assert text.count("\n") == 3
        assert stream.records_written == 2
        assert stream.records_failed == 1
        assert recorder.entries[0].file == "bad.csv"
        assert recorder.entries[0].line == 2

    def test_source_error_is_kept_for_the_caller(self):
        error = SourceUnavailableError("Download of https://example.test/a.zip was interrupted: reset")

        def chunks():
            yield b"PROPERTY_ID,OWNER_NAME\n1,A\n"
            raise error

        stream = CopyStream(TolerantCSVNormalizer().normalize("a.csv", chunks()), FailureRecorder())

        with pytest.raises(SourceUnavailableError):
            stream.read()
        assert stream.source_error is error
        assert stream.read() == ""

    def test_sized_reads_reassemble_the_full_text(self):
        data = b"PROPERTY_ID,OWNER_NAME\n" + b"".join(b"%d,Owner %d\n" % (i, i) for i in range(200))
        whole = CopyStream(TolerantCSVNormalizer().normalize("a.csv", [data]), FailureRecorder()).read()

        stream = CopyStream(TolerantCSVNormalizer().normalize("a.csv", [data]), FailureRecorder())
        pieces = []
        while True:
            piece = stream.read(97)
            if not piece:
                break
            assert len(piece) <= 97
            pieces.append(piece)

        assert "".join(pieces) == whole

    def test_readline(self):
        stream = CopyStream(
            TolerantCSVNormalizer().normalize("a.csv", [b"OWNER_NAME\nA\nB\n"]),
            FailureRecorder(),
            columns=("OWNER_NAME",),
        )
        assert stream.readline() == "OWNER_NAME\n"
        assert stream.readline() == '"A"\n'
        assert stream.readline() == '"B"\n'
        assert stream.readline() == ""

    def test_copy_text_round_trips_through_csv_reader(self):
        data = b'PROPERTY_ID,OWNER_NAME\n1,"SMITH, ""J"""\n'
        text = CopyStream(TolerantCSVNormalizer().normalize("q.csv", [data]), FailureRecorder()).read()

        rows = list(csv.DictReader(io.StringIO(text)))
        assert rows[0]["OWNER_NAME"] == 'SMITH, "J"'


class TestStreamingBound:
    """Memory stays bounded regardless of input size."""

    def test_peak_memory_is_bounded(self):
        row_count = 100_000
        header = (",".join(CANONICAL_COLUMNS) + "\n").encode()
        row = (
            '{i},CASH,"1,234.56",0,,1,"OWNER NUMBER {i}","123 MAIN ST",,,SACRAMENTO,CA,'
            '""95814",US,1234.56,0,0,"HOLDER CORP","1 CORPORATE WAY",,,LOS ANGELES,CA,90001,\n'
        )

        def chunks():
            yield header
            batch = []
            for i in range(row_count):
                batch.append(row.format(i=i))
                if len(batch) == 500:
                    yield "".join(batch).encode()
                    batch = []
            if batch:
                yield "".join(batch).encode()

        recorder = FailureRecorder()
        stream = CopyStream(TolerantCSVNormalizer().normalize("big.csv", chunks()), recorder)

        tracemalloc.start()
        try:
            total = 0
            while True:
                piece = stream.read(8192)
                if not piece:
                    break
                total += len(piece)
            _, peak = tracemalloc.get_traced_memory()
        finally:
            tracemalloc.stop()

        assert len(recorder) == 0
        assert stream.records_written == row_count
        assert total > 15 * 1024 * 1024
        assert peak < 4 * 1024 * 1024


@pytest.mark.parametrize("encoding", ["utf-8", "UTF8", "utf_8"])
def test_utf8_aliases_strip_bom(encoding):
    normalizer = TolerantCSVNormalizer(encoding=encoding)
    assert normalizer.encoding == "utf-8-sig"


def test_latin1_source_encoding():
    normalizer = TolerantCSVNormalizer(encoding="latin-1")
    results = list(normalizer.normalize("l.csv", ["OWNER_NAME\nJosé\n".encode("latin-1")]))
    assert results[0].value["OWNER_NAME"] == "José"
