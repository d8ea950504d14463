from pathlib import Path

import pytest

from sessionmeter import decoder as decoder_module
from sessionmeter.decoder import (
    JsonDecoder,
    OrjsonDecoder,
    get_decoder,
    stream_records,
)


class TestGetDecoder:
    def test_default_is_orjson(self) -> "None":
        assert isinstance(get_decoder(), OrjsonDecoder)
        assert get_decoder().name == "orjson"

    def test_json_decoder(self) -> "None":
        assert isinstance(get_decoder("json"), JsonDecoder)

    def test_unknown_decoder_raises(self) -> "None":
        with pytest.raises(ValueError, match="unknown decoder"):
            get_decoder("simdjson")


@pytest.mark.parametrize("name", ["orjson", "json"])
class TestStreamRecords:
    def test_yields_one_value_per_line(self, tmp_path: "Path", name: "str") -> "None":
        path = tmp_path / "a.jsonl"
        path.write_text('{"a": 1}\n{"a": 2}\n[3]\n', encoding="utf-8")

        records = list(stream_records(path, get_decoder(name)))

        assert records == [{"a": 1}, {"a": 2}, [3]]

    def test_skips_malformed_lines(self, tmp_path: "Path", name: "str") -> "None":
        path = tmp_path / "a.jsonl"
        good = ['{"n": %d}' % i for i in range(6)]
        bad = ["{not json", '{"unterminated": ', "nul", "}{", "{'single': 1}"]
        lines = []
        for i, line in enumerate(good):
            lines.append(line)
            if i < len(bad):
                lines.append(bad[i])
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        records = list(stream_records(path, get_decoder(name)))

        # N lines with K malformed ones yield N - K records
        assert len(records) == len(good)
        assert [r["n"] for r in records] == list(range(6))

    def test_skips_blank_and_comment_lines(self, tmp_path: "Path", name: "str") -> "None":
        path = tmp_path / "a.jsonl"
        path.write_text('\n   \n# header\n{"a": 1}\n\n', encoding="utf-8")

        assert list(stream_records(path, get_decoder(name))) == [{"a": 1}]

    def test_empty_file(self, tmp_path: "Path", name: "str") -> "None":
        path = tmp_path / "a.jsonl"
        path.write_text("", encoding="utf-8")

        assert list(stream_records(path, get_decoder(name))) == []

    def test_last_line_without_newline(self, tmp_path: "Path", name: "str") -> "None":
        path = tmp_path / "a.jsonl"
        path.write_text('{"a": 1}\n{"a": 2}', encoding="utf-8")

        assert len(list(stream_records(path, get_decoder(name)))) == 2

    def test_missing_file_yields_nothing(self, tmp_path: "Path", name: "str") -> "None":
        assert list(stream_records(tmp_path / "missing.jsonl", get_decoder(name))) == []

    def test_oversized_line_is_skipped(
        self,
        tmp_path: "Path",
        name: "str",
        monkeypatch: "pytest.MonkeyPatch",
    ) -> "None":
        monkeypatch.setattr(decoder_module, "MAX_LINE_SIZE", 20)
        path = tmp_path / "a.jsonl"
        path.write_text(
            '{"a": 1}\n{"padding": "' + "x" * 50 + '"}\n{"a": 2}\n', encoding="utf-8"
        )

        records = list(stream_records(path, get_decoder(name)))

        assert records == [{"a": 1}, {"a": 2}]

    def test_invalid_utf8_does_not_abort(self, tmp_path: "Path", name: "str") -> "None":
        path = tmp_path / "a.jsonl"
        path.write_bytes(b'{"a": 1}\n\xff\xfe\n{"a": 2}\n')

        records = list(stream_records(path, get_decoder(name)))

        assert records == [{"a": 1}, {"a": 2}]
