from __future__ import annotations

from pathlib import Path


class PathSafetyError(ValueError):
    pass


def validate_library_relative_path(raw_path: str) -> Path:
    if not raw_path.strip():
        raise PathSafetyError("Path cannot be blank")
    if raw_path.startswith("/"):
        raise PathSafetyError("Path must be relative to the libraries root")
    if ".." in Path(raw_path).parts:
        raise PathSafetyError("Path traversal is not allowed")
    if "~" in raw_path:
        raise PathSafetyError("Home expansion is not allowed")
    if "$" in raw_path:
        raise PathSafetyError("Environment variable expansion is not allowed")
    return Path(raw_path)


def resolve_under_libraries(libraries_root: Path, raw_path: str) -> Path:
    rel = validate_library_relative_path(raw_path)
    root = libraries_root.resolve(strict=False)
    candidate = (root / rel).resolve(strict=False)

    if candidate != root and root in candidate.parents:
        return candidate

    raise PathSafetyError("Path escapes libraries root")


def relative_to_libraries(libraries_root: Path, path: Path) -> str:
    root = libraries_root.resolve(strict=False)
    candidate = path.resolve(strict=False)
    if candidate == root or root not in candidate.parents:
        raise PathSafetyError("Path is outside the libraries root")
    return candidate.relative_to(root).as_posix()
