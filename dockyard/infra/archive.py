# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# ARCHIVE BUILDER - BUILD CONTEXT STREAMS
# -----------------------------------------------------------------------------
# Responsibility: Package a build context directory into a gzip-compressed tar
# stream for an image build request.
#
# The archive is produced lazily in blocks of at most CHUNK_SIZE bytes of file
# data, so neither a large context nor a single large file is held in memory.
# Exclusions follow .dockerignore using the Docker SDK's own pattern matcher.
# -----------------------------------------------------------------------------

import os
import stat
import tarfile
import zlib
from collections.abc import Iterator
from pathlib import Path

from docker.utils.build import exclude_paths
from rich.console import Console

from dockyard.domain.errors import ArchiveError

console = Console()

DOCKERIGNORE = ".dockerignore"
CHUNK_SIZE = 64 * 1024

# zlib window bits for a gzip container
GZIP_WBITS = 16 + zlib.MAX_WBITS
GZIP_LEVEL = 6


def read_dockerignore(root: Path) -> list[str]:
    """Return the exclusion patterns from root/.dockerignore (empty if absent)."""
    path = root / DOCKERIGNORE
    if not path.is_file():
        return []
    patterns = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                patterns.append(line)
    return patterns


class BuildContext:
    """
    A build context ready to be streamed to the daemon.

    The stream can be consumed exactly once. The Dockerfile path is relative to
    the context root, as the build API expects.
    """

    def __init__(self, root: Path, dockerfile: str, members: list[str]) -> None:
        self.root = root
        self.dockerfile = dockerfile
        self.members = members
        self._consumed = False

    def __iter__(self) -> Iterator[bytes]:
        return self.stream()

    def stream(self) -> Iterator[bytes]:
        """Yield gzip-compressed tar chunks."""
        if self._consumed:
            raise ArchiveError(
                "build context stream was already consumed",
                operation="archive",
                target=str(self.root),
            )
        self._consumed = True
        return self._generate()

    def _generate(self) -> Iterator[bytes]:
        gz = zlib.compressobj(GZIP_LEVEL, zlib.DEFLATED, GZIP_WBITS)
        written = 0
        for member in self.members:
            for block in self._member_blocks(member):
                written += len(block)
                data = gz.compress(block)
                if data:
                    yield data

        # end-of-archive marker, padded to a full record
        trailer = 2 * tarfile.BLOCKSIZE
        trailer += -(written + trailer) % tarfile.RECORDSIZE
        yield gz.compress(tarfile.NUL * trailer) + gz.flush()

    def _error(self, arcname: str, reason: str) -> ArchiveError:
        return ArchiveError(f"cannot read '{arcname}': {reason}", operation="archive", target=str(self.root))

    def _member_blocks(self, member: str) -> Iterator[bytes]:
        """Tar header, then file data in CHUNK_SIZE blocks, then padding."""
        full_path = self.root / member
        arcname = member.replace(os.sep, "/")
        try:
            info = _tarinfo(full_path, arcname)
            if info is None:
                # sockets and other special files cannot be archived
                return
            yield info.tobuf(tarfile.PAX_FORMAT)
            if not info.isreg():
                return

            remaining = info.size
            with open(full_path, "rb") as f:
                while remaining:
                    block = f.read(min(CHUNK_SIZE, remaining))
                    if not block:
                        raise self._error(arcname, "file shrank while being archived")
                    remaining -= len(block)
                    yield block
        except OSError as e:
            raise self._error(arcname, e.strerror or str(e)) from e

        padding = -info.size % tarfile.BLOCKSIZE
        if padding:
            yield tarfile.NUL * padding


def _tarinfo(path: Path, arcname: str) -> tarfile.TarInfo | None:
    st = os.lstat(path)
    info = tarfile.TarInfo(arcname)
    info.mode = stat.S_IMODE(st.st_mode)
    info.mtime = int(st.st_mtime)
    if stat.S_ISREG(st.st_mode):
        info.size = st.st_size
    elif stat.S_ISDIR(st.st_mode):
        info.type = tarfile.DIRTYPE
    elif stat.S_ISLNK(st.st_mode):
        info.type = tarfile.SYMTYPE
        info.linkname = os.readlink(path)
    else:
        return None
    return info


def create_build_context(context_dir: str | Path, dockerfile: str = "Dockerfile") -> BuildContext:
    """
    Prepare a lazily streamed build context.

    Args:
        context_dir: Root directory of the build context ('~' allowed).
        dockerfile: Dockerfile path relative to the root.

    Returns:
        BuildContext whose stream yields the compressed archive.

    Raises:
        ArchiveError: If the root or the Dockerfile is missing.
    """
    root = Path(context_dir).expanduser()
    if not root.is_dir():
        raise ArchiveError(
            "build context directory does not exist", operation="archive", target=str(root)
        )

    if Path(dockerfile).is_absolute() or ".." in Path(dockerfile).parts:
        raise ArchiveError(
            f"Dockerfile '{dockerfile}' must be a path inside the build context",
            operation="archive",
            target=str(root),
        )
    if not (root / dockerfile).is_file():
        raise ArchiveError(
            f"no Dockerfile found at '{dockerfile}'", operation="archive", target=str(root)
        )

    patterns = read_dockerignore(root)
    # the Dockerfile is re-included by exclude_paths itself
    members = sorted(
        exclude_paths(str(root), [*patterns, f"!{DOCKERIGNORE}"], dockerfile=dockerfile)
    )
    console.print(
        f"[cyan][ARCHIVE] Build context: {root} ({len(members)} entries, "
        f"{len(patterns)} ignore patterns)[/cyan]"
    )
    return BuildContext(root, dockerfile, members)
