"""Application version metadata helpers.

Resolves the version string used by the startup log, Sentry releases and the
version endpoints.
"""

from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple


VERSION_FILE_CANDIDATES: Tuple[Path, ...] = (
    Path("/app/VERSION"),
    Path(__file__).resolve().parent.parent / "VERSION",
)


def _first_version(candidates: Iterable[Path]) -> Optional[Tuple[str, Path]]:
    for candidate in candidates:
        if not candidate.exists():
            continue
        try:
            version = candidate.read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if version:
            return version, candidate
    return None


def read_app_version(version_file_candidates: Optional[Iterable[Path]] = None) -> str:
    """Read the application version from the first readable VERSION file.

    Returns:
        Version string when found; otherwise ``"unknown"``.
    """
    found = _first_version(version_file_candidates or VERSION_FILE_CANDIDATES)
    return found[0] if found else "unknown"


def get_app_version_info(
    version_file_candidates: Optional[Iterable[Path]] = None,
) -> Dict[str, str]:
    """Get version metadata for API responses (``version`` and ``source``)."""
    found = _first_version(version_file_candidates or VERSION_FILE_CANDIDATES)
    if found is None:
        return {"version": "unknown", "source": "unknown"}
    return {"version": found[0], "source": str(found[1])}
