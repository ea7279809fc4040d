"""Backend-relative path rules: rooted, forward-slash, no escape above root"""

import posixpath


def normalize(path: str | None) -> str:
    """
    Normalize a caller-supplied path to the rooted forward-slash form.

    ``..`` segments are clamped at the root, so the result never points above it.

    >>> normalize("../../etc/passwd")
    '/etc/passwd'
    """
    if not path:
        return "/"
    parts: list[str] = []
    for segment in path.replace("\\", "/").split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if parts:
                parts.pop()
            continue
        parts.append(segment)
    return "/" + "/".join(parts)


def join(base: str, *names: str) -> str:
    return normalize(posixpath.join(normalize(base), *(n.lstrip("/") for n in names)))


def parent(path: str) -> str:
    return posixpath.dirname(normalize(path)) or "/"


def basename(path: str) -> str:
    return posixpath.basename(normalize(path))


def relative(path: str) -> str:
    """Rooted path without the leading slash (object keys, remote paths)."""
    return normalize(path).lstrip("/")


def is_root(path: str) -> bool:
    return normalize(path) == "/"


def is_within(path: str, base: str) -> bool:
    path, base = normalize(path), normalize(base)
    return base == "/" or path == base or path.startswith(base + "/")


def rebase(path: str, old_base: str, new_base: str) -> str:
    """Move ``path`` from under ``old_base`` to the same place under ``new_base``."""
    path, old_base = normalize(path), normalize(old_base)
    suffix = path[len(old_base):] if old_base != "/" else path
    return join(new_base, suffix)


def splitext_lower(path: str) -> str:
    """Lowercase archive-aware extension (``.tar.gz`` counts as one)."""
    name = basename(path).lower()
    for double in (".tar.gz", ".tar.bz2", ".tar.xz"):
        if name.endswith(double):
            return double
    return posixpath.splitext(name)[1]


def segments(path: str) -> list[str]:
    rel = relative(path)
    return rel.split("/") if rel else []
