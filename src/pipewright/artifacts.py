# artifacts.py
from __future__ import annotations

import gzip
import hashlib
import io
import json
import logging
import os
import tarfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional

from .errors import ArtifactNotFound
from .model import Artifact, utcnow

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Content-addressed, append-only storage:
#   digest = sha256(bytes)
#
# Layout on disk:
#   root/
#     objects/<first two hex chars>/<digest>
#     index.json        refcounts + producer + created_at per digest
#
# Objects are written to a temp file and renamed into place, so a reader
# never sees a partial object. There is no delete: retention is an outside
# policy.
# ---------------------------------------------------------------------


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False)


class ArtifactStore:
    """
    put(bytes) -> digest, get(digest) -> bytes.

    `root=None` keeps objects in memory, which is what tests and one-shot
    runs without a state directory use.
    """

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root).resolve() if root is not None else None
        self._lock = threading.Lock()
        self._memory: Dict[str, bytes] = {}
        self._index: Dict[str, dict] = {}

        if self.root is not None:
            self._objects.mkdir(parents=True, exist_ok=True)
            if self._index_path.exists():
                self._index = json.loads(self._index_path.read_text(encoding="utf-8"))

    @property
    def _objects(self) -> Path:
        assert self.root is not None
        return self.root / "objects"

    @property
    def _index_path(self) -> Path:
        assert self.root is not None
        return self.root / "index.json"

    def object_path(self, digest: str) -> Path:
        return self._objects / digest[:2] / digest

    def _save_index(self) -> None:
        tmp = self._index_path.with_suffix(".json.tmp")
        tmp.write_text(_json_dumps_stable(self._index), encoding="utf-8")
        tmp.replace(self._index_path)

    def put(self, data: bytes, *, producer: Optional[str] = None) -> str:
        digest = _sha256_bytes(data)
        with self._lock:
            entry = self._index.get(digest)
            if entry is not None:
                # already stored: identical bytes, identical object
                entry["refs"] += 1
                if self.root is not None:
                    self._save_index()
                return digest

            if self.root is None:
                self._memory[digest] = bytes(data)
            else:
                path = self.object_path(digest)
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp = path.with_name(f".{digest}.{os.getpid()}.{threading.get_ident()}.tmp")
                try:
                    tmp.write_bytes(data)
                    tmp.replace(path)
                finally:
                    if tmp.exists():
                        tmp.unlink(missing_ok=True)

            self._index[digest] = {
                "size": len(data),
                "refs": 1,
                "producer": producer,
                "created_at": utcnow().isoformat(),
            }
            if self.root is not None:
                self._save_index()

        logger.debug("stored artifact %s (%d bytes)", digest[:12], len(data))
        return digest

    def get(self, digest: str) -> bytes:
        with self._lock:
            if digest not in self._index:
                raise ArtifactNotFound(digest)
            if self.root is None:
                return self._memory[digest]
        path = self.object_path(digest)
        if not path.exists():
            raise ArtifactNotFound(digest)
        return path.read_bytes()

    def exists(self, digest: str) -> bool:
        with self._lock:
            return digest in self._index

    def refcount(self, digest: str) -> int:
        with self._lock:
            entry = self._index.get(digest)
            return entry["refs"] if entry else 0

    def info(self, digest: str) -> Artifact:
        with self._lock:
            entry = self._index.get(digest)
        if entry is None:
            raise ArtifactNotFound(digest)
        return Artifact(
            digest=digest,
            size=entry["size"],
            producer=entry.get("producer"),
            created_at=datetime.fromisoformat(entry["created_at"]),
        )


# ---------------------------------------------------------------------
# Deterministic tarballs
# ---------------------------------------------------------------------

def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _tar_add_file(tar: tarfile.TarFile, src: Path, arcname: str) -> None:
    info = tarfile.TarInfo(name=arcname)
    info.size = src.stat().st_size
    info.mode = 0o755 if os.access(src, os.X_OK) else 0o644
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    with src.open("rb") as f:
        tar.addfile(info, fileobj=f)


def pack_path(src: str | Path) -> bytes:
    """
    Pack a file or a directory into a gzipped tarball whose bytes depend only
    on file names, contents and executable bits, so identical trees yield
    identical digests.
    """
    src = Path(src)
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        if src.is_file():
            _tar_add_file(tar, src, src.name)
        else:
            for f in _iter_files_under(src):
                _tar_add_file(tar, f, f.relative_to(src).as_posix())
    return gzip.compress(buf.getvalue(), mtime=0)


def unpack(data: bytes, dest: str | Path) -> None:
    """Extract a tarball made by pack_path into dest, refusing entries that escape it."""
    dest = Path(dest).resolve()
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        members = tar.getmembers()
        for m in members:
            target = (dest / m.name).resolve()
            if target != dest and dest not in target.parents:
                raise ValueError(f"archive entry escapes destination: {m.name}")
            if not (m.isfile() or m.isdir()):
                raise ValueError(f"unsupported archive entry: {m.name}")
        for m in members:
            target = dest / m.name
            if m.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            f = tar.extractfile(m)
            assert f is not None
            with f, target.open("wb") as out:
                out.write(f.read())
            target.chmod(m.mode & 0o777)
