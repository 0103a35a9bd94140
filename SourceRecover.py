#!/usr/bin/env python3
"""
    SourceRecover.py

    Recovers the original source files embedded in JavaScript sourcemaps.
    Every `.js.map` file in the target directory is read, its `sources` /
    `sourcesContent` pairs are matched up, the webpack-style paths are
    cleaned and the content is written below src-recovered/<map name>/.

    Writes run concurrently on gevent with a fixed number of permits and a
    deadline per write. Existing files are never overwritten, so running
    the tool twice over the same maps only fills in what is missing.
"""

import argparse
import json
import logging
import os
import re
import sys

import gevent
from gevent.lock import BoundedSemaphore
from gevent.pool import Pool

logger = logging.getLogger("SourceRecover")

OUTPUT_DIRNAME = "src-recovered"
MAP_SUFFIX = ".js.map"
LIST_SUFFIX = ".txt"

_LEADING_RE = re.compile(r"^/?(\./)?")
_UNSAFE_CHARS_RE = re.compile(r'[<>:"|?*]')


class SourceMapExtractorError(Exception):
    pass


class ExtractorConfig(object):
    """Limits and timings shared by the writer and the extractors."""

    def __init__(self, max_concurrent_writes=5, batch_size=10,
                 max_source_size=1024 * 1024, max_map_size=50 * 1024 * 1024,
                 write_timeout=10.0, read_timeout=30.0, pause=0.1,
                 progress_every=10, yield_every=5, map_suffix=MAP_SUFFIX,
                 encoding="utf-8"):
        if max_concurrent_writes < 1:
            raise SourceMapExtractorError("max_concurrent_writes must be at least 1")
        if batch_size < 1:
            raise SourceMapExtractorError("batch_size must be at least 1")
        if progress_every < 1 or yield_every < 1:
            raise SourceMapExtractorError("progress_every and yield_every must be at least 1")
        if write_timeout <= 0 or read_timeout <= 0:
            raise SourceMapExtractorError("timeouts must be positive")
        if pause < 0:
            raise SourceMapExtractorError("pause cannot be negative")
        if max_source_size < 0 or max_map_size < 0:
            raise SourceMapExtractorError("size limits cannot be negative")

        self.max_concurrent_writes = max_concurrent_writes
        self.batch_size = batch_size
        self.max_source_size = max_source_size
        self.max_map_size = max_map_size
        self.write_timeout = write_timeout
        self.read_timeout = read_timeout
        self.pause = pause
        self.progress_every = progress_every
        self.yield_every = yield_every
        self.map_suffix = map_suffix
        self.encoding = encoding


class WriteOutcome(object):
    WRITTEN = "written"
    SKIPPED_EXISTS = "skipped_exists"
    SKIPPED_TOO_LARGE = "skipped_too_large"
    SKIPPED_TIMEOUT = "skipped_timeout"
    SKIPPED_ERROR = "skipped_error"


class MapFailure(object):
    """Reasons a whole map file produced nothing."""

    READ_TIMEOUT = "read_timeout"
    READ_ERROR = "read_error"
    OVERSIZED = "oversized_map_file"
    PARSE_ERROR = "parse_error"
    NO_SOURCES = "no_sources"
    OUTPUT_ERROR = "output_error"
    UNEXPECTED = "unexpected"


class ExtractionResult(object):
    """Running counts for one map file.

    `processed` counts every source/content pair looked at, `written` and
    `skipped` only the pairs that had content. `outcomes` breaks the same
    numbers down per WriteOutcome.
    """

    def __init__(self, name, total=0):
        self.name = name
        self.total = total
        self.processed = 0
        self.written = 0
        self.skipped = 0
        self.outcomes = {}
        self.error = None

    def record(self, outcome):
        self.processed += 1
        if outcome is None:
            return
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1
        if outcome == WriteOutcome.WRITTEN:
            self.written += 1
        else:
            self.skipped += 1

    def __repr__(self):
        return "<ExtractionResult %s processed=%d written=%d skipped=%d error=%s>" % (
            self.name, self.processed, self.written, self.skipped, self.error)


def clean_source_path(source_path):
    """Turn a declared source path such as `webpack:///./src/App.jsx?abc`
    into a relative file path (`src/App.jsx`)."""
    clean = source_path
    if clean.startswith("webpack://"):
        clean = clean[len("webpack://"):]
    stripped = _LEADING_RE.sub("", clean, count=1)
    if clean and not stripped:
        stripped = "index.js"
    clean = stripped
    clean = clean.split("?", 1)[0]
    clean = clean.replace("\\", "/")

    if clean.endswith("/"):
        clean += "index.js"
    if "." not in clean:
        clean += ".js"

    return _UNSAFE_CHARS_RE.sub("_", clean)


class PathSanitiser(object):
    """Places cleaned source paths below one output directory.

    clean_source_path() leaves `..` segments and doubled slashes alone, so
    every joined path is normalised and checked to still be under the root.
    """

    def __init__(self, root_path):
        self.root_path = os.path.abspath(root_path)

    def is_under_root(self, path):
        try:
            return os.path.commonpath([self.root_path, path]) == self.root_path
        except ValueError:
            return False

    def make_valid_file_path(self, source_path):
        cleaned = clean_source_path(source_path)
        complete_path = os.path.normpath(os.path.join(self.root_path, cleaned))
        if complete_path == self.root_path or not self.is_under_root(complete_path):
            return None
        return complete_path


def _makedirs(path):
    os.makedirs(path, mode=0o755, exist_ok=True)


def _read_text(path, encoding):
    with open(path, "r", encoding=encoding, errors="replace") as f:
        return f.read()


def _write_new_file(path, data):
    # 'x' fails if a sibling write created the file after our exists() check
    with open(path, "xb") as f:
        f.write(data)


def _run_blocking(func, *args):
    """Run a blocking filesystem call on the hub's thread pool."""
    return gevent.get_hub().threadpool.apply(func, args)


class BoundedWriter(object):
    """Writes new files with at most N writes in flight.

    Each write() has a deadline that starts when it is called, so waiting
    for a permit counts against it. A write that misses the deadline is
    abandoned rather than cancelled: its worker thread can still finish
    the file after SKIPPED_TIMEOUT has been reported.
    """

    def __init__(self, config=None):
        self.config = config or ExtractorConfig()
        self._permits = BoundedSemaphore(self.config.max_concurrent_writes)

    @property
    def available_permits(self):
        return self._permits.counter

    def write(self, path, content):
        try:
            data = content.encode(self.config.encoding)
        except UnicodeError as exc:
            logger.warning("Cannot encode %s: %s", path, exc)
            return WriteOutcome.SKIPPED_ERROR

        timeout = gevent.Timeout(self.config.write_timeout)
        timeout.start()
        try:
            with self._permits:
                _run_blocking(_makedirs, os.path.dirname(path))
                if _run_blocking(os.path.exists, path):
                    return WriteOutcome.SKIPPED_EXISTS
                try:
                    _run_blocking(_write_new_file, path, data)
                except FileExistsError:
                    return WriteOutcome.SKIPPED_EXISTS
            return WriteOutcome.WRITTEN
        except gevent.Timeout as exc:
            if exc is not timeout:
                raise
            logger.warning("Write timed out after %ss: %s", self.config.write_timeout, path)
            return WriteOutcome.SKIPPED_TIMEOUT
        except OSError as exc:
            logger.warning("Write failed for %s: %s", path, exc)
            return WriteOutcome.SKIPPED_ERROR
        finally:
            timeout.cancel()


class SourceMapExtractor(object):
    """Extracts the embedded sources of one map file. Feed this a path."""

    def __init__(self, target, output, config=None, writer=None):
        self._target = target
        self._output = output
        self.config = config or ExtractorConfig()
        self.writer = writer or BoundedWriter(self.config)
        self.name = os.path.basename(target)

    def run(self):
        """Process the map file. Never raises; failures end up in the result."""
        result = ExtractionResult(self.name)
        try:
            self._extract(result)
        except Exception:
            logger.exception("Error processing %s", self.name)
            result.error = MapFailure.UNEXPECTED
        return result

    def output_dir(self):
        suffix = self.config.map_suffix
        if suffix and self.name.endswith(suffix) and self.name != suffix:
            chunk_name = self.name[:-len(suffix)]
        else:
            chunk_name = os.path.splitext(self.name)[0] or self.name
        return os.path.join(self._output, chunk_name)

    def _read_map(self, result):
        cfg = self.config
        timeout = gevent.Timeout(cfg.read_timeout)
        timeout.start()
        try:
            size = _run_blocking(os.path.getsize, self._target)
            if size > cfg.max_map_size:
                logger.warning("Skipping %s - too large (%dMB)", self.name, round(size / 1024 / 1024))
                result.error = MapFailure.OVERSIZED
                return None
            map_data = _run_blocking(_read_text, self._target, cfg.encoding)
        except gevent.Timeout as exc:
            if exc is not timeout:
                raise
            logger.error("%s - read timed out after %ss", self.name, cfg.read_timeout)
            result.error = MapFailure.READ_TIMEOUT
            return None
        except OSError as exc:
            logger.error("%s - could not be read: %s", self.name, exc)
            result.error = MapFailure.READ_ERROR
            return None
        finally:
            timeout.cancel()

        if len(map_data) > cfg.max_map_size:
            logger.warning("Skipping %s - too large (%dMB)", self.name, round(len(map_data) / 1024 / 1024))
            result.error = MapFailure.OVERSIZED
            return None
        return map_data

    def _parse_map(self, map_data, result):
        try:
            map_object = json.loads(map_data)
        except json.JSONDecodeError as exc:
            logger.error("%s - invalid JSON: %s", self.name, exc)
            result.error = MapFailure.PARSE_ERROR
            return None
        if not isinstance(map_object, dict):
            logger.error("%s - invalid JSON: expected an object, got %s",
                         self.name, type(map_object).__name__)
            result.error = MapFailure.PARSE_ERROR
            return None
        return map_object

    def _extract(self, result):
        cfg = self.config
        print("Processing %s..." % self.name)

        map_data = self._read_map(result)
        if map_data is None:
            return
        map_object = self._parse_map(map_data, result)
        if map_object is None:
            return

        sources = map_object.get("sources")
        contents = map_object.get("sourcesContent")
        if not isinstance(sources, list):
            sources = []
        if not isinstance(contents, list):
            contents = []

        if not sources:
            logger.warning("%s has no sources", self.name)
            result.error = MapFailure.NO_SOURCES
            return
        if len(sources) != len(contents):
            logger.warning("%s: sources (%d) != sourcesContent (%d), extra entries are ignored",
                           self.name, len(sources), len(contents))

        chunk_dir = self.output_dir()
        try:
            _run_blocking(_makedirs, chunk_dir)
        except OSError as exc:
            logger.error("%s - cannot create %s: %s", self.name, chunk_dir, exc)
            result.error = MapFailure.OUTPUT_ERROR
            return

        result.total = min(len(sources), len(contents))
        sanitiser = PathSanitiser(chunk_dir)
        pool = Pool(cfg.batch_size)
        print("  Processing %d sources in batches of %d..." % (result.total, cfg.batch_size))

        for idx in range(result.total):
            source = sources[idx]
            content = contents[idx]

            if not content or not isinstance(content, str):
                self._record(result, None)
            elif len(content) > cfg.max_source_size:
                logger.warning("Skipping large source %s (%dKB)", source, round(len(content) / 1024))
                self._record(result, WriteOutcome.SKIPPED_TOO_LARGE)
            elif not isinstance(source, str):
                logger.warning("%s: source #%d has no usable path, skipping", self.name, idx)
                self._record(result, WriteOutcome.SKIPPED_ERROR)
            else:
                write_path = sanitiser.make_valid_file_path(source)
                if write_path is None:
                    logger.warning("Refusing to write %s outside %s", source, chunk_dir)
                    self._record(result, WriteOutcome.SKIPPED_ERROR)
                else:
                    pool.spawn(self._write_source, result, write_path, content)

            if (idx + 1) % cfg.yield_every == 0:
                gevent.sleep(0)

        pool.join()
        print("\n%s complete: %d files written, %d skipped" % (self.name, result.written, result.skipped))
        logger.debug("%s outcomes: %s", self.name, result.outcomes)

    def _write_source(self, result, write_path, content):
        try:
            outcome = self.writer.write(write_path, content)
        except Exception:
            logger.exception("Unexpected failure writing %s", write_path)
            outcome = WriteOutcome.SKIPPED_ERROR
        self._record(result, outcome)

    def _record(self, result, outcome):
        result.record(outcome)
        if result.processed % self.config.progress_every == 0 or result.processed == result.total:
            sys.stdout.write("\r  %s: %d/%d processed, %d written, %d skipped" % (
                self.name, result.processed, result.total, result.written, result.skipped))
            sys.stdout.flush()


def _read_list_file(path):
    entries = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                entries.append(line)
    return entries


def read_override_list(directory, suffix=MAP_SUFFIX):
    """Return the map files named by the first .txt file in `directory`
    that lists at least one, or None if no such file exists.

    Listed maps that are missing on disk are dropped with a warning.
    """
    for name in sorted(os.listdir(directory)):
        path = os.path.join(directory, name)
        if not name.endswith(LIST_SUFFIX) or not os.path.isfile(path):
            continue
        try:
            entries = [line for line in _read_list_file(path) if line.endswith(suffix)]
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Cannot read list file %s: %s", name, exc)
            continue
        if not entries:
            continue

        logger.info("Using map list from %s", name)
        existing = []
        for entry in entries:
            if os.path.exists(os.path.join(directory, entry)):
                existing.append(entry)
            else:
                logger.warning("%s lists %s, which does not exist - dropping it", name, entry)
        return existing
    return None


def find_map_files(directory, suffix=MAP_SUFFIX):
    return sorted(name for name in os.listdir(directory) if name.endswith(suffix))


def collect_map_files(directory, suffix=MAP_SUFFIX):
    """Candidate map files relative to `directory`: a .txt override list wins
    over the directory scan."""
    try:
        override = read_override_list(directory, suffix)
        if override is not None:
            return override
        return find_map_files(directory, suffix)
    except OSError as exc:
        raise SourceMapExtractorError("Cannot list directory '%s': %s" % (directory, exc))


def extract_all(map_files, directory, output, config=None, writer=None):
    """Run one SourceMapExtractor per map file, strictly one after another.

    All extractors share a single writer so the write ceiling holds across
    map files.
    """
    config = config or ExtractorConfig()
    writer = writer or BoundedWriter(config)
    results = []
    for i, map_file in enumerate(map_files):
        print("\n[%d/%d] Starting %s" % (i + 1, len(map_files), map_file))
        extractor = SourceMapExtractor(os.path.join(directory, map_file), output, config, writer)
        results.append(extractor.run())
        if i + 1 < len(map_files):
            gevent.sleep(config.pause)
    return results


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Recover the original sources embedded in JavaScript sourcemaps.")
    parser.add_argument("sdir", nargs="?", default=".",
        help="Directory containing the .js.map files (default: current directory).")
    parser.add_argument("-o", "--output", default=None,
        help="Output directory (default: <sdir>/%s)." % OUTPUT_DIRNAME)
    parser.add_argument("-c", "--concurrency", type=int, default=5,
        help="Maximum number of writes in flight.")
    parser.add_argument("--batch-size", type=int, default=10,
        help="Maximum number of pending writes per map file.")
    parser.add_argument("--max-source-size", type=int, default=1024 * 1024,
        help="Skip sources longer than this many characters.")
    parser.add_argument("--max-map-size", type=int, default=50 * 1024 * 1024,
        help="Skip map files larger than this many bytes.")
    parser.add_argument("--write-timeout", type=float, default=10.0,
        help="Seconds allowed per write, including the wait for a free slot.")
    parser.add_argument("--read-timeout", type=float, default=30.0,
        help="Seconds allowed to read one map file.")
    parser.add_argument("--pause", type=float, default=0.1,
        help="Seconds to wait between map files.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output.")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only show warnings and errors.")
    args = parser.parse_args(argv)

    try:
        args.config = ExtractorConfig(
            max_concurrent_writes=args.concurrency,
            batch_size=args.batch_size,
            max_source_size=args.max_source_size,
            max_map_size=args.max_map_size,
            write_timeout=args.write_timeout,
            read_timeout=args.read_timeout,
            pause=args.pause)
    except SourceMapExtractorError as exc:
        parser.error(str(exc))
    return args


def main(argv=None):
    args = parse_arguments(argv)
    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")

    try:
        map_files = collect_map_files(args.sdir, args.config.map_suffix)
    except SourceMapExtractorError as exc:
        logger.error("%s", exc)
        return 1

    if not map_files:
        print("No %s files found in directory: %s" % (args.config.map_suffix, args.sdir))
        return 0

    print("Found %d map files to process" % len(map_files))
    output = args.output or os.path.join(args.sdir, OUTPUT_DIRNAME)
    extract_all(map_files, args.sdir, output, args.config)
    print("\nAll maps processed - check %s/" % output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
