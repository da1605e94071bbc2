"""
pipewright.infrastructure.archive - Tarball Packing for Artifact Transport
============================================================================

Upload steps pack a file or directory from the job workspace into a gzip
tarball; download steps and directory hosting targets unpack it again.
Archive members are stored relative to the packed path, so unpacking into
another directory reproduces the tree under that directory.
"""

from __future__ import annotations

import io
import tarfile
import time
from pathlib import Path


def pack_path(src: Path) -> bytes:
    """Pack a file or a directory tree into gzip tarball bytes.

    Raises:
        FileNotFoundError: If ``src`` does not exist.
    """
    src = Path(src)
    if not src.exists():
        raise FileNotFoundError(f"Path to pack does not exist: {src}")

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        if src.is_file():
            tar.add(str(src), arcname=src.name, recursive=False)
        else:
            for f in sorted(p for p in src.rglob("*") if p.is_file()):
                arcname = f.relative_to(src).as_posix()
                tar.add(str(f), arcname=arcname, recursive=False)
    return buffer.getvalue()


def pack_bytes(filename: str, data: bytes) -> bytes:
    """Pack a single in-memory file into gzip tarball bytes."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        info = tarfile.TarInfo(name=filename)
        info.size = len(data)
        info.mtime = int(time.time())
        tar.addfile(info, fileobj=io.BytesIO(data))
    return buffer.getvalue()


def unpack_bytes(content: bytes, dest: Path) -> list[str]:
    """Unpack gzip tarball bytes into ``dest``.

    Members that would land outside ``dest`` are rejected.

    Returns:
        The relative paths of the extracted files, sorted.

    Raises:
        tarfile.TarError: If the content is not a valid tarball.
        ValueError: If a member escapes the destination directory.
    """
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()

    with tarfile.open(fileobj=io.BytesIO(content), mode="r:gz") as tar:
        members = tar.getmembers()
        for member in members:
            target = (root / member.name).resolve()
            if target != root and root not in target.parents:
                raise ValueError(f"Archive member escapes destination: {member.name}")
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(root), filter="data")
        else:
            tar.extractall(path=str(root))

    return sorted(m.name for m in members if m.isfile())
