#!/usr/bin/env python3
"""
    DownloadMaps.py

    Collects the JavaScript sourcemaps used by web pages so SourceRecover.py
    can extract them. Each page is fetched, its <script> tags are followed,
    and every `sourceMappingURL` reference is downloaded (or decoded, for
    inline data: maps) into the output directory as <script>.js.map.

    Page URLs come from the command line or from urls.txt.
"""

from gevent import monkey
monkey.patch_all()
import argparse
import base64
import binascii
import json
import logging
import os
import re
import sys
from urllib.parse import unquote, urljoin, urlparse

import requests
from bs4 import BeautifulSoup, SoupStrainer
from gevent.pool import Pool

logger = logging.getLogger("DownloadMaps")

USER_AGENT = ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
              "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36")

SOURCEMAP_RE = re.compile(
    r"//[#@]\s*sourceMappingURL=(?P<url>\S+)\s*$"
    r"|/\*[#@]\s*sourceMappingURL=(?P<url2>\S+?)\s*\*/",
    re.MULTILINE)


def load_urls_from_file(filename="urls.txt"):
    urls = []
    try:
        with open(filename, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#"):
                    urls.append(line)
    except OSError as e:
        logger.error("Cannot load URLs from %s: %s", filename, e)
    return urls


def make_session():
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    return session


def extract_sourcemap_reference(js_text):
    """Return the last sourceMappingURL in `js_text`, or None."""
    reference = None
    for match in SOURCEMAP_RE.finditer(js_text):
        reference = match.group("url") or match.group("url2")
    return reference


def find_scripts(html, base_url):
    """Split the <script> tags of a page into absolute src URLs and inline bodies."""
    soup = BeautifulSoup(html, "html.parser", parse_only=SoupStrainer("script"))
    urls = []
    inline = []
    for script in soup.find_all("script"):
        src = script.get("src")
        if src:
            url = urljoin(base_url, src)
            if url not in urls:
                urls.append(url)
        elif script.string:
            inline.append(script.string)
    return urls, inline


def decode_data_uri(uri):
    """Decode an inline `data:application/json[;base64],...` sourcemap."""
    try:
        header, payload = uri.split(",", 1)
    except ValueError:
        return None
    try:
        if header.endswith(";base64"):
            text = base64.b64decode(payload).decode("utf-8")
        else:
            text = unquote(payload)
        json.loads(text)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.warning("Invalid inline sourcemap: %s", e)
        return None
    return text


def map_filename(script_url, map_url=None):
    """Pick a local `.js.map` name for the map of `script_url`."""
    if map_url:
        name = os.path.basename(urlparse(map_url).path)
        if name.endswith(".js.map"):
            return name
    name = os.path.basename(urlparse(script_url).path) or "index"
    if name.endswith(".map"):
        name = name[:-len(".map")] or "index"
    if not name.endswith(".js"):
        name += ".js"
    return name + ".map"


class MapCollector(object):
    """Downloads the sourcemaps referenced by pages, scripts or map URLs."""

    def __init__(self, output=".", session=None, concurrency=5, timeout=10, force=False):
        self.output = output
        self.session = session or make_session()
        self.concurrency = concurrency
        self.timeout = timeout
        self.force = force
        self.saved = []

    def collect(self, urls):
        os.makedirs(self.output, exist_ok=True)
        pool = Pool(self.concurrency)
        for url in urls:
            path = urlparse(url).path
            if path.endswith(".map"):
                pool.spawn(self.download_map, url, map_filename(url, url))
            elif path.endswith(".js"):
                pool.spawn(self.process_script, url)
            else:
                self.process_page(url, pool)
        pool.join()
        return self.saved

    def fetch(self, url):
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Failed to fetch %s: %s", url, e)
            return None, url
        return response.text, response.url

    def process_page(self, url, pool):
        print("\nProcessing URL: %s" % url)
        html, final_url = self.fetch(url)
        if html is None:
            return
        script_urls, inline = find_scripts(html, final_url)
        print("Found %d scripts, %d inline" % (len(script_urls), len(inline)))
        for script_url in script_urls:
            pool.spawn(self.process_script, script_url)
        host = urlparse(final_url).hostname or "page"
        for n, body in enumerate(inline):
            reference = extract_sourcemap_reference(body)
            if reference and reference.startswith("data:"):
                self.save_inline(reference, "%s-inline-%d.js.map" % (host, n))

    def process_script(self, script_url):
        js_text, final_url = self.fetch(script_url)
        if js_text is None:
            return
        reference = extract_sourcemap_reference(js_text)
        if not reference:
            print("No SourceMap found in: %s" % script_url)
            return
        if reference.startswith("data:"):
            self.save_inline(reference, map_filename(final_url))
            return
        map_url = urljoin(final_url, reference)
        self.download_map(map_url, map_filename(final_url, map_url))

    def download_map(self, map_url, filename):
        map_path = os.path.join(self.output, filename)
        if os.path.exists(map_path) and not self.force:
            logger.info("Keeping existing %s", filename)
            return
        text, _ = self.fetch(map_url)
        if text is None:
            return
        self._save(map_path, text)

    def save_inline(self, uri, filename):
        map_path = os.path.join(self.output, filename)
        if os.path.exists(map_path) and not self.force:
            logger.info("Keeping existing %s", filename)
            return
        text = decode_data_uri(uri)
        if text is not None:
            self._save(map_path, text)

    def _save(self, map_path, text):
        mode = "w" if self.force else "x"
        try:
            with open(map_path, mode, encoding="utf-8") as f:
                f.write(text)
        except FileExistsError:
            logger.info("Keeping existing %s", os.path.basename(map_path))
            return
        except OSError as e:
            logger.warning("Cannot save %s: %s", map_path, e)
            return
        print("Downloaded SourceMap: %s" % os.path.basename(map_path))
        self.saved.append(map_path)


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Download the JavaScript sourcemaps used by web pages.")
    parser.add_argument("urls", nargs="*", help="Page, script or map URLs.")
    parser.add_argument("-f", "--url-file", default="urls.txt",
        help="File with one URL per line, used when no URLs are given.")
    parser.add_argument("-o", "--output", default=".", help="Directory to save the maps in.")
    parser.add_argument("-c", "--concurrency", type=int, default=5, help="Parallel downloads.")
    parser.add_argument("-t", "--timeout", type=float, default=10, help="Seconds per request.")
    parser.add_argument("--force", action="store_true", help="Overwrite maps that already exist.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output.")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_arguments(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s: %(message)s")
    if args.concurrency < 1:
        logger.error("--concurrency must be at least 1")
        return 2

    urls = args.urls or load_urls_from_file(args.url_file)
    if not urls:
        print("No valid URLs found in %s" % args.url_file)
        return 0

    print("Output directory: %s" % os.path.abspath(args.output))
    collector = MapCollector(args.output, concurrency=args.concurrency,
                             timeout=args.timeout, force=args.force)
    saved = collector.collect(urls)
    print("\nSaved %d sourcemaps to %s" % (len(saved), args.output))
    return 0


if __name__ == "__main__":
    sys.exit(main())
