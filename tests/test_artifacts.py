"""Content-addressed artifact store and deterministic packing."""

from __future__ import annotations

import hashlib
import io
import os
import tarfile
from pathlib import Path

import pytest

from pipewright.artifacts import ArtifactStore, pack_path, unpack
from pipewright.errors import ArtifactNotFound


class TestArtifactStore:
    def test_put_returns_sha256_and_get_returns_bytes(self) -> None:
        store = ArtifactStore()
        digest = store.put(b"hello")
        assert digest == hashlib.sha256(b"hello").hexdigest()
        assert store.get(digest) == b"hello"
        assert store.exists(digest)

    def test_repeated_put_bumps_refcount(self) -> None:
        store = ArtifactStore()
        first = store.put(b"same", producer="run1/build")
        second = store.put(b"same", producer="run2/build")
        assert first == second
        assert store.refcount(first) == 2
        # metadata of the first put is kept
        assert store.info(first).producer == "run1/build"
        assert store.info(first).size == 4

    def test_unknown_digest(self) -> None:
        store = ArtifactStore()
        with pytest.raises(ArtifactNotFound):
            store.get("0" * 64)
        with pytest.raises(ArtifactNotFound):
            store.info("0" * 64)
        assert store.refcount("0" * 64) == 0
        assert not store.exists("0" * 64)

    def test_filesystem_layout(self, tmp_path: Path) -> None:
        store = ArtifactStore(tmp_path / "artifacts")
        digest = store.put(b"payload")
        obj = tmp_path / "artifacts" / "objects" / digest[:2] / digest
        assert obj.read_bytes() == b"payload"
        assert (tmp_path / "artifacts" / "index.json").exists()
        leftovers = [p for p in obj.parent.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_index_survives_reopen(self, tmp_path: Path) -> None:
        digest = ArtifactStore(tmp_path).put(b"payload")
        ArtifactStore(tmp_path).put(b"payload")
        reopened = ArtifactStore(tmp_path)
        assert reopened.get(digest) == b"payload"
        assert reopened.refcount(digest) == 2

    def test_repeated_put_does_not_rewrite_object(self, tmp_path: Path) -> None:
        store = ArtifactStore(tmp_path)
        digest = store.put(b"payload")
        obj = store.object_path(digest)
        os.utime(obj, (1, 1))
        store.put(b"payload")
        assert obj.stat().st_mtime == 1


class TestPacking:
    def make_tree(self, root: Path) -> Path:
        (root / "css").mkdir(parents=True)
        (root / "index.html").write_text("<h1>hi</h1>")
        (root / "css" / "site.css").write_text("body {}")
        script = root / "build.sh"
        script.write_text("#!/bin/sh\n")
        script.chmod(0o755)
        return root

    def test_identical_trees_pack_identically(self, tmp_path: Path) -> None:
        a = self.make_tree(tmp_path / "a")
        b = self.make_tree(tmp_path / "b")
        os.utime(b / "index.html", (1_000_000, 1_000_000))
        assert pack_path(a) == pack_path(b)

    def test_content_change_changes_bytes(self, tmp_path: Path) -> None:
        a = self.make_tree(tmp_path / "a")
        before = pack_path(a)
        (a / "index.html").write_text("<h1>changed</h1>")
        assert pack_path(a) != before

    def test_unpack_restores_files_and_exec_bit(self, tmp_path: Path) -> None:
        src = self.make_tree(tmp_path / "src")
        dest = tmp_path / "dest"
        unpack(pack_path(src), dest)
        assert (dest / "css" / "site.css").read_text() == "body {}"
        assert os.access(dest / "build.sh", os.X_OK)
        assert not os.access(dest / "index.html", os.X_OK)

    def test_long_names_round_trip_deterministically(self, tmp_path: Path) -> None:
        long_name = "a" * 120 + ".html"
        deep = Path(*["section-" + "d" * 60] * 4)

        def tree(root: Path) -> Path:
            (root / deep).mkdir(parents=True)
            (root / long_name).write_text("long")
            (root / deep / long_name).write_text("deep")
            return root

        a, b = tree(tmp_path / "a"), tree(tmp_path / "b")
        os.utime(b / long_name, (1_000_000, 1_000_000))
        data = pack_path(a)
        assert data == pack_path(b)

        dest = tmp_path / "dest"
        unpack(data, dest)
        assert (dest / long_name).read_text() == "long"
        assert (dest / deep / long_name).read_text() == "deep"

    def test_single_file(self, tmp_path: Path) -> None:
        f = tmp_path / "report.txt"
        f.write_text("ok")
        dest = tmp_path / "out"
        unpack(pack_path(f), dest)
        assert (dest / "report.txt").read_text() == "ok"

    def test_unpack_refuses_escaping_entries(self, tmp_path: Path) -> None:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            info = tarfile.TarInfo("../evil.txt")
            info.size = 4
            tar.addfile(info, io.BytesIO(b"evil"))
        with pytest.raises(ValueError):
            unpack(buf.getvalue(), tmp_path / "dest")
        assert not (tmp_path / "evil.txt").exists()
