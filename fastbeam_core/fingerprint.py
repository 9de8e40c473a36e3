"""
Fingerprinter - Content hashes for change detection and cache keys

A unit fingerprint combines:
- the unit's own source bytes and kind
- the preamble fingerprint (so a preamble edit invalidates every unit)
- the current content hash of every file the unit includes, following
  nested \\input/\\include chains

The preamble fingerprint itself covers the preamble text, the files the
preamble includes, and the build signature (engine command and options).

Fingerprints are pure functions of byte content: same inputs, same hash.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import hashlib
import logging
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .parsing import find_dependencies, find_graphics_paths
from .types import Document, Unit
from .version import FINGERPRINT_FORMAT

logger = logging.getLogger(__name__)


# Extensions tried, in order, when an include omits one
_EXTENSIONS: Dict[str, Tuple[str, ...]] = {
    "input": (".tex",),
    "include": (".tex",),
    "includegraphics": (".pdf", ".png", ".jpg", ".jpeg", ".eps", ".svg"),
    "includepdf": (".pdf",),
    "usepackage": (".sty",),
    "RequirePackage": (".sty",),
    "usetheme": (".sty",),
    "usecolortheme": (".sty",),
    "usefonttheme": (".sty",),
    "useinnertheme": (".sty",),
    "useoutertheme": (".sty",),
}

# Packages and themes only count as dependencies when found locally
_LOCAL_ONLY = {
    "usepackage", "RequirePackage",
    "usetheme", "usecolortheme", "usefonttheme", "useinnertheme", "useoutertheme",
}

_THEME_PREFIX = {
    "usetheme": "beamertheme",
    "usecolortheme": "beamercolortheme",
    "usefonttheme": "beamerfonttheme",
    "useinnertheme": "beamerinnertheme",
    "useoutertheme": "beameroutertheme",
}


def sha256_bytes(data: bytes) -> str:
    """Compute SHA256 hash of bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    """Compute SHA256 hash of string data."""
    return sha256_bytes(text.encode("utf-8"))


def _combine(parts: Iterable[str]) -> str:
    """Hash a sequence of fields with unambiguous framing."""
    hasher = hashlib.sha256()
    for part in parts:
        data = part.encode("utf-8")
        hasher.update(str(len(data)).encode("ascii"))
        hasher.update(b":")
        hasher.update(data)
    return hasher.hexdigest()


def preamble_fingerprint(
    preamble_text: str,
    dependency_hashes: Sequence[str] = (),
    build_signature: str = "",
) -> str:
    """
    Fingerprint of the shared compilation environment.

    Args:
        preamble_text: Exact preamble source
        dependency_hashes: Hashes of files included by the preamble
        build_signature: Engine command/options that shape every artifact

    Returns:
        Hex digest
    """
    return _combine([
        FINGERPRINT_FORMAT,
        "preamble",
        build_signature,
        preamble_text,
        *sorted(dependency_hashes),
    ])


def fingerprint(unit: Unit, preamble_fp: str, dependency_hashes: Sequence[str] = ()) -> str:
    """
    Fingerprint of one unit.

    Args:
        unit: The unit (its kind and source text are hashed)
        preamble_fp: Fingerprint of the preamble it compiles against
        dependency_hashes: Hashes of files the unit includes

    Returns:
        Hex digest
    """
    return _combine([
        FINGERPRINT_FORMAT,
        "unit",
        preamble_fp,
        unit.kind.value,
        unit.text,
        *sorted(dependency_hashes),
    ])


# Declarations whose target is LaTeX source that may include further files
_NESTED = {"input", "include"} | _LOCAL_ONLY


class DependencyResolver:
    """
    Resolve include declarations to files and hash their content.

    The hash of a LaTeX source dependency (``\\input``, ``\\include``, a
    local ``.sty``) also covers the files it includes in turn, so an edit
    anywhere down an include chain changes it. ``\\includegraphics`` names
    are looked up in the ``\\graphicspath`` directories as well.

    Hashes are memoised for the lifetime of the resolver, which is one
    build cycle: edits between cycles are always seen.
    """

    def __init__(self, base_dir: Path, graphics_paths: Sequence[str] = ()):
        self.base_dir = Path(base_dir)
        self.graphics_paths = tuple(graphics_paths)
        self._memo: Dict[Tuple[str, str], Optional[str]] = {}

    def _search_dirs(self, command: str) -> List[Path]:
        dirs = [self.base_dir]
        if command == "includegraphics":
            dirs += [self.base_dir / d for d in self.graphics_paths]
        return dirs

    def resolve(self, command: str, name: str) -> Optional[Path]:
        """Find the file an include refers to, or None."""
        if command in _THEME_PREFIX:
            name = f"{_THEME_PREFIX[command]}{name}"

        for directory in self._search_dirs(command):
            path = Path(name)
            if not path.is_absolute():
                path = directory / path
            if path.suffix and path.is_file():
                return path
            for ext in _EXTENSIONS.get(command, ()):
                with_ext = path.with_name(path.name + ext)
                if with_ext.is_file():
                    return with_ext
            if path.is_file():
                return path
        return None

    def dependency_hash(self, command: str, name: str) -> Optional[str]:
        """
        Hash of one dependency, including what it includes itself.

        Returns:
            Content hash; a stable marker for missing files; None for
            packages/themes that are not local (installed system-wide)
        """
        return self._hash(command, name, frozenset())

    def _hash(self, command: str, name: str, chain: FrozenSet[Path]) -> Optional[str]:
        key = (command, name)
        if key in self._memo:
            return self._memo[key]

        path = self.resolve(command, name)
        if path is None:
            result = None if command in _LOCAL_ONLY else sha256_text(f"missing:{name}")
        else:
            real = path.resolve()
            if real in chain:
                # include cycle: the file is already being hashed further up
                return sha256_text(f"cycle:{name}")
            try:
                data = path.read_bytes()
            except OSError as e:
                logger.warning(f"Cannot read dependency {path}: {e}")
                result = sha256_text(f"unreadable:{name}")
            else:
                result = sha256_bytes(data)
                if command in _NESTED:
                    nested = self._nested_hashes(data, chain | {real})
                    if nested:
                        result = _combine([result, *nested])
        self._memo[key] = result
        return result

    def _nested_hashes(self, data: bytes, chain: FrozenSet[Path]) -> List[str]:
        hashes: List[str] = []
        for command, name in find_dependencies(data.decode("utf-8", errors="replace")):
            h = self._hash(command, name, chain)
            if h is not None:
                hashes.append(h)
        return hashes

    def hashes_for(self, dependencies: Iterable[Tuple[str, str]]) -> Tuple[str, ...]:
        """Hashes of all resolvable dependencies, in declaration order."""
        hashes: List[str] = []
        for command, name in dependencies:
            h = self.dependency_hash(command, name)
            if h is not None:
                hashes.append(h)
        return tuple(hashes)


def fingerprint_document(
    document: Document,
    build_signature: str = "",
    resolver: Optional[DependencyResolver] = None,
) -> Document:
    """
    Compute the preamble fingerprint and every unit fingerprint in place.

    Args:
        document: Freshly parsed document
        build_signature: See ``preamble_fingerprint``
        resolver: Dependency resolver (defaults to the document directory)

    Returns:
        The same document, fingerprinted
    """
    resolver = resolver or DependencyResolver(
        document.source_dir, find_graphics_paths(document.text)
    )

    preamble_deps = document.preamble.dependencies if document.preamble else ()
    document.preamble_fingerprint = preamble_fingerprint(
        document.preamble_text,
        resolver.hashes_for(preamble_deps),
        build_signature,
    )

    for unit in document.units:
        unit.dependency_hashes = resolver.hashes_for(unit.span.dependencies)
        unit.fingerprint = fingerprint(unit, document.preamble_fingerprint, unit.dependency_hashes)

    logger.debug(
        f"Fingerprinted {len(document.units)} units "
        f"(preamble {document.preamble_fingerprint[:12]})"
    )
    return document
