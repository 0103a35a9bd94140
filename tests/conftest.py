from gevent import monkey
monkey.patch_all()

import json

import pytest


@pytest.fixture
def write_map(tmp_path):
    def _write(name, sources, contents=None, directory=None, **extra):
        directory = directory or tmp_path
        document = {"version": 3, "sources": sources, "mappings": ""}
        if contents is not None:
            document["sourcesContent"] = contents
        document.update(extra)
        path = directory / name
        path.write_text(json.dumps(document), encoding="utf-8")
        return path
    return _write
