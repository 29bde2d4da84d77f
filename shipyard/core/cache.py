"""Path-addressed dependency cache for release builds.

The export-artifacts stage of the image build holds the compiled ``target``
directory and cargo's registry caches. After a successful release its ``/usr``
tree is stored here under a key derived from (source hash, target triple) and
restored into ``target/cache/usr`` of the build context before the next build,
where the builder stage picks it up.

A cache miss is never an error: the destination is created empty and the
build proceeds cold.
"""

import hashlib
import json
import os
import shutil
import tempfile
from collections.abc import Collection
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console

console = Console()

# Top-level directories of the workspace that never feed the source hash
IGNORED_TOP_LEVEL = frozenset({"target", "dist", "releases"})
IGNORED_ANYWHERE = frozenset({".git"})

TREE_DIR = "tree"
MANIFEST_FILE = "manifest.json"


class CacheError(Exception):
    """Raised when a cache entry cannot be written or restored."""

    pass


@dataclass(frozen=True)
class CacheInputs:
    source_hash: str
    target_triple: str


def cache_key(inputs: CacheInputs) -> str:
    canonical = json.dumps(asdict(inputs), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_source_tree(root: str | Path, exclude: Collection[str] = ()) -> str:
    """
    Digest of every source file under `root`, in a stable order.

    Build outputs (target/, dist/, releases/), VCS metadata and the
    `exclude` paths (relative, posix) are skipped. Symlinks are hashed by
    their target, not followed.
    """
    root = Path(root)
    excluded = set(exclude)
    digest = hashlib.sha256()

    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        at_top = current == root
        dirnames[:] = sorted(
            d
            for d in dirnames
            if d not in IGNORED_ANYWHERE and not (at_top and d in IGNORED_TOP_LEVEL)
        )
        for name in sorted(filenames):
            path = current / name
            rel = path.relative_to(root).as_posix()
            if rel in excluded:
                continue
            if path.is_symlink():
                content = os.readlink(path).encode("utf-8")
                file_digest = hashlib.sha256(b"link:" + content).hexdigest()
            else:
                file_digest = _file_digest(path)
            digest.update(f"{rel}\0{file_digest}\n".encode("utf-8"))

    return digest.hexdigest()


def _file_digest(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


class ArtifactCache:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheError(f"Could not create cache directory {self.root}: {e}") from e

    def entry(self, key: str) -> Path:
        return self.root / key

    def lookup(self, inputs: CacheInputs) -> Path | None:
        """Tree of the exact entry for `inputs`, if present."""
        tree = self.entry(cache_key(inputs)) / TREE_DIR
        return tree if tree.is_dir() else None

    def store(self, inputs: CacheInputs, tree: str | Path) -> str:
        """
        Copy `tree` into the cache under the key of `inputs`.

        The entry is assembled in a temporary directory and renamed into place,
        replacing any previous entry for the same key.
        """
        key = cache_key(inputs)
        staging = Path(tempfile.mkdtemp(prefix=f".{key[:12]}.", dir=self.root))
        try:
            shutil.copytree(tree, staging / TREE_DIR, symlinks=True)
            manifest = {
                "key": key,
                "inputs": asdict(inputs),
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            (staging / MANIFEST_FILE).write_text(
                json.dumps(manifest, indent=2, sort_keys=True) + "\n", encoding="utf-8"
            )
            entry = self.entry(key)
            if entry.exists():
                shutil.rmtree(entry)
            os.replace(staging, entry)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise CacheError(f"Could not store cache entry {key[:12]}: {e}") from e

        console.print(f"[green][CACHE] Stored {key[:12]} ({inputs.target_triple})[/green]")
        return key

    def newest_for_triple(self, target_triple: str) -> Path | None:
        """Tree of the most recently stored entry built for `target_triple`."""
        best: tuple[str, Path] | None = None
        for manifest_path in self.root.glob(f"*/{MANIFEST_FILE}"):
            try:
                manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                console.print(f"[yellow][CACHE] Ignoring unreadable {manifest_path}[/yellow]")
                continue
            if manifest.get("inputs", {}).get("target_triple") != target_triple:
                continue
            tree = manifest_path.parent / TREE_DIR
            created = str(manifest.get("created_at", ""))
            if tree.is_dir() and (best is None or created > best[0]):
                best = (created, tree)
        return best[1] if best else None

    def restore(self, inputs: CacheInputs, dest: str | Path) -> Path | None:
        """
        Populate `dest` from the cache, best effort.

        Tries the exact key first, then the newest entry for the same target
        triple. `dest` exists afterwards either way.

        Returns:
            The cache tree that was restored, or None on a miss.
        """
        dest = Path(dest)
        tree = self.lookup(inputs)
        if tree is None:
            tree = self.newest_for_triple(inputs.target_triple)
            if tree is not None:
                console.print("[yellow][CACHE] No exact entry, warming from newest build[/yellow]")

        try:
            if dest.exists():
                shutil.rmtree(dest)
            if tree is None:
                dest.mkdir(parents=True, exist_ok=True)
            else:
                shutil.copytree(tree, dest, symlinks=True)
        except OSError as e:
            raise CacheError(f"Could not restore cache into {dest}: {e}") from e

        if tree is None:
            console.print("[yellow][CACHE] Miss - building cold[/yellow]")
            return None

        console.print(f"[green][CACHE] Restored {tree.parent.name[:12]} into {dest}[/green]")
        return tree
