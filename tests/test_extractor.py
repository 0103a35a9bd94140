import logging

from gevent import monkey

import SourceRecover
from SourceRecover import ExtractorConfig, MapFailure, SourceMapExtractor, WriteOutcome

real_sleep = monkey.get_original("time", "sleep")


def files_under(root):
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


def run(map_path, output, **config):
    return SourceMapExtractor(str(map_path), str(output), ExtractorConfig(**config)).run()


def test_extracts_content_and_skips_null(tmp_path, write_map):
    map_path = write_map("app.js.map", ["a.js", "b.js"], ["console.log(1)", None])
    out = tmp_path / "src-recovered"

    result = run(map_path, out)

    assert (result.processed, result.written, result.skipped) == (2, 1, 0)
    assert result.error is None
    assert files_under(out / "app") == ["a.js"]
    assert (out / "app" / "a.js").read_text(encoding="utf-8") == "console.log(1)"


def test_webpack_paths_are_mirrored(tmp_path, write_map):
    map_path = write_map("main.3f2a.js.map",
                         ["webpack:///./src/components/Header.jsx?1234", "webpack:///./node_modules/react/"],
                         ["export default 1", "module.exports = {}"])
    out = tmp_path / "out"

    result = run(map_path, out)

    assert result.written == 2
    assert files_under(out / "main.3f2a") == ["node_modules/react/index.js", "src/components/Header.jsx"]


def test_second_run_does_not_clobber(tmp_path, write_map):
    map_path = write_map("app.js.map", ["a.js", "lib/b.js"], ["one", "two"])
    out = tmp_path / "out"
    assert run(map_path, out).written == 2

    (out / "app" / "a.js").write_text("edited", encoding="utf-8")
    result = run(map_path, out)

    assert (result.processed, result.written, result.skipped) == (2, 0, 2)
    assert result.outcomes == {WriteOutcome.SKIPPED_EXISTS: 2}
    assert (out / "app" / "a.js").read_text(encoding="utf-8") == "edited"


def test_duplicate_paths_in_one_map_write_once(tmp_path, write_map):
    map_path = write_map("app.js.map", ["a.js?1", "a.js?2"], ["first", "second"])
    result = run(map_path, tmp_path / "out")
    assert (result.written, result.skipped) == (1, 1)
    assert result.outcomes[WriteOutcome.SKIPPED_EXISTS] == 1


def test_oversized_source_is_never_written(tmp_path, write_map, caplog):
    map_path = write_map("app.js.map", ["small.js", "big.js"], ["tiny", "x" * 64])
    out = tmp_path / "out"

    with caplog.at_level(logging.WARNING):
        result = run(map_path, out, max_source_size=10, max_concurrent_writes=1)

    assert (result.processed, result.written, result.skipped) == (2, 1, 1)
    assert result.outcomes[WriteOutcome.SKIPPED_TOO_LARGE] == 1
    assert not (out / "app" / "big.js").exists()
    assert "big.js" in caplog.text


def test_malformed_json_is_a_parse_error(tmp_path, caplog):
    map_path = tmp_path / "broken.js.map"
    map_path.write_text('{"sources": ["a.js"', encoding="utf-8")

    with caplog.at_level(logging.ERROR):
        result = run(map_path, tmp_path / "out")

    assert result.error == MapFailure.PARSE_ERROR
    assert (result.processed, result.written, result.skipped) == (0, 0, 0)
    assert "invalid JSON" in caplog.text
    assert not (tmp_path / "out").exists()


def test_non_object_json_is_a_parse_error(tmp_path):
    map_path = tmp_path / "list.js.map"
    map_path.write_text("[1, 2, 3]", encoding="utf-8")
    assert run(map_path, tmp_path / "out").error == MapFailure.PARSE_ERROR


def test_map_without_sources(tmp_path, write_map):
    map_path = write_map("empty.js.map", [], [])
    result = run(map_path, tmp_path / "out")
    assert result.error == MapFailure.NO_SOURCES
    assert not (tmp_path / "out").exists()


def test_missing_sources_content_extracts_nothing(tmp_path, write_map):
    map_path = write_map("app.js.map", ["a.js", "b.js"])
    result = run(map_path, tmp_path / "out")
    assert result.error is None
    assert (result.processed, result.written, result.skipped) == (0, 0, 0)


def test_only_aligned_pairs_are_processed(tmp_path, write_map):
    map_path = write_map("app.js.map", ["a.js", "b.js", "c.js"], ["a"])
    result = run(map_path, tmp_path / "out")
    assert (result.processed, result.written) == (1, 1)


def test_unreadable_map_is_a_read_error(tmp_path):
    result = run(tmp_path / "missing.js.map", tmp_path / "out")
    assert result.error == MapFailure.READ_ERROR


def test_oversized_map_is_not_parsed(tmp_path, write_map):
    map_path = write_map("huge.js.map", ["a.js"], ["a"])
    result = run(map_path, tmp_path / "out", max_map_size=10)
    assert result.error == MapFailure.OVERSIZED
    assert result.processed == 0


def test_slow_read_times_out(tmp_path, write_map, monkeypatch):
    map_path = write_map("slow.js.map", ["a.js"], ["a"])
    original = SourceRecover._read_text

    def slow_read(path, encoding):
        real_sleep(0.3)
        return original(path, encoding)

    monkeypatch.setattr(SourceRecover, "_read_text", slow_read)
    result = run(map_path, tmp_path / "out", read_timeout=0.05)
    assert result.error == MapFailure.READ_TIMEOUT
    assert result.written == 0


def test_paths_outside_the_output_are_refused(tmp_path, write_map):
    map_path = write_map("app.js.map", ["webpack:///../../evil.js", "ok.js"], ["bad", "good"])
    out = tmp_path / "out"

    result = run(map_path, out)

    assert (result.written, result.skipped) == (1, 1)
    assert result.outcomes[WriteOutcome.SKIPPED_ERROR] == 1
    assert not (tmp_path / "evil.js").exists()
    assert files_under(out / "app") == ["ok.js"]


def test_counts_add_up_for_mixed_content(tmp_path, write_map):
    sources = ["a.js", "b.js", None, "d.js", "e.js", "f.js", "g.js"]
    contents = ["a", None, "c", "", 42, "x" * 50, "g"]
    map_path = write_map("mixed.js.map", sources, contents)

    result = run(map_path, tmp_path / "out", max_source_size=20)

    absent = 3  # b.js, d.js, e.js
    assert result.processed == len(sources)
    assert result.processed == result.written + result.skipped + absent
    assert result.written == 2
    assert result.outcomes == {
        WriteOutcome.WRITTEN: 2,
        WriteOutcome.SKIPPED_ERROR: 1,
        WriteOutcome.SKIPPED_TOO_LARGE: 1,
    }


def test_many_sources_with_small_pool(tmp_path, write_map, capsys):
    sources = ["src/mod%02d.js" % i for i in range(25)]
    contents = ["export const n = %d" % i for i in range(25)]
    map_path = write_map("bundle.js.map", sources, contents)
    out = tmp_path / "out"

    result = run(map_path, out, max_concurrent_writes=2, batch_size=3, progress_every=10)

    assert (result.processed, result.written, result.skipped) == (25, 25, 0)
    assert len(files_under(out / "bundle")) == 25
    assert (out / "bundle" / "src" / "mod07.js").read_text(encoding="utf-8") == "export const n = 7"
    assert "bundle.js.map: 25/25 processed, 25 written, 0 skipped" in capsys.readouterr().out


def test_output_dir_strips_map_suffix(tmp_path):
    extractor = SourceMapExtractor(str(tmp_path / "main.abc123.js.map"), str(tmp_path / "out"))
    assert extractor.output_dir() == str(tmp_path / "out" / "main.abc123")
