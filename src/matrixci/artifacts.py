# artifacts.py
from __future__ import annotations

import os
import re
import shutil
import threading
import uuid
from pathlib import Path

from .errors import ArtifactExistsError
from .model import ArtifactRef

DEFAULT_ARTIFACT_DIR = "_output"

_UNSAFE = re.compile(r"[^A-Za-z0-9._+-]")


def _safe(part: str) -> str:
    return _UNSAFE.sub("_", part) or "_"


class ArtifactStore:
    """
    Write-once file store:
      root/
        <job_id>/
          <name>
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self._lock = threading.Lock()

    def path_for(self, job_id: str, name: str) -> Path:
        return self.root / _safe(job_id) / _safe(name)

    def _claim(self, job_id: str, name: str) -> Path:
        dest = self.path_for(job_id, name)
        with self._lock:
            if dest.exists():
                raise ArtifactExistsError(
                    f"artifact {name!r} already exists", job=job_id, details={"location": str(dest)}
                )
            dest.parent.mkdir(parents=True, exist_ok=True)
        return dest

    def _finish(self, tmp: Path, dest: Path) -> None:
        # link refuses to replace an existing file, unlike rename
        try:
            os.link(tmp, dest)
        except FileExistsError as e:
            raise ArtifactExistsError(f"artifact {dest.name!r} already exists", details={"location": str(dest)}) from e
        finally:
            tmp.unlink(missing_ok=True)

    def put_bytes(self, job_id: str, name: str, data: bytes) -> ArtifactRef:
        dest = self._claim(job_id, name)
        tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_bytes(data)
        self._finish(tmp, dest)
        return ArtifactRef(job_id=job_id, name=name, location=str(dest))

    def put_text(self, job_id: str, name: str, text: str) -> ArtifactRef:
        return self.put_bytes(job_id, name, text.encode("utf-8"))

    def put_file(self, job_id: str, name: str, src: str | Path) -> ArtifactRef:
        dest = self._claim(job_id, name)
        tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.tmp")
        shutil.copyfile(src, tmp)
        self._finish(tmp, dest)
        return ArtifactRef(job_id=job_id, name=name, location=str(dest))

    def read_text(self, ref: ArtifactRef) -> str:
        return Path(ref.location).read_text(encoding="utf-8")
